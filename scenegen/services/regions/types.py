"""Data types for character placement regions."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

OFF_SCREEN = "off-screen"


class UnknownRegionError(KeyError):
    """Raised when a region id is not in the catalog.

    Recoverable: callers fall back to the full-canvas region and record a
    warning instead of aborting the job.
    """

    def __init__(self, region_id: str):
        super().__init__(region_id)
        self.region_id = region_id

    def __str__(self) -> str:
        return f"Unknown region {self.region_id!r}"


@dataclass(frozen=True)
class RegionPreset:
    """A named rectangle over the canvas, all bounds as fractions in [0, 1]."""
    id: str
    x: float
    y: float
    w: float
    h: float
    family: str = ""

    def __post_init__(self) -> None:
        eps = 1e-9
        if min(self.x, self.y) < 0 or min(self.w, self.h) <= 0:
            raise ValueError(f"Region {self.id!r} has negative origin or empty size")
        if self.x + self.w > 1 + eps or self.y + self.h > 1 + eps:
            raise ValueError(f"Region {self.id!r} extends past the canvas")


@dataclass
class CharacterPlacement:
    """A character name paired with the region it will occupy."""
    name: str
    region: str
    explicit: bool = False      # True when the caller supplied the region


@dataclass
class RegionRequest:
    """Input to auto-assignment: a name and an optional caller-chosen region."""
    name: str
    region: Optional[str] = None
