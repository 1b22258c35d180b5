"""Region Registry — static catalog of character placement rectangles."""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from scenegen.services.regions.types import (
    OFF_SCREEN,
    CharacterPlacement,
    RegionPreset,
    RegionRequest,
    UnknownRegionError,
)

logger = logging.getLogger("scenegen.regions.registry")

FULL_CANVAS = RegionPreset("full", 0.0, 0.0, 1.0, 1.0, family="fallback")

_PRESETS: Tuple[RegionPreset, ...] = (
    # Standing
    RegionPreset("left",              0.00, 0.00, 0.40, 1.00, family="standing"),
    RegionPreset("center",            0.25, 0.00, 0.50, 1.00, family="standing"),
    RegionPreset("right",             0.60, 0.00, 0.40, 1.00, family="standing"),
    # Seated: lower portion, slightly wider
    RegionPreset("left-seated",       0.00, 0.30, 0.45, 0.70, family="seated"),
    RegionPreset("center-seated",     0.20, 0.30, 0.60, 0.70, family="seated"),
    RegionPreset("right-seated",      0.55, 0.30, 0.45, 0.70, family="seated"),
    # Background: smaller, upper area
    RegionPreset("left-background",   0.05, 0.05, 0.25, 0.50, family="background"),
    RegionPreset("center-background", 0.35, 0.05, 0.30, 0.50, family="background"),
    RegionPreset("right-background",  0.70, 0.05, 0.25, 0.50, family="background"),
    # Two-character split
    RegionPreset("left-half",         0.00, 0.00, 0.50, 1.00, family="halves"),
    RegionPreset("right-half",        0.50, 0.00, 0.50, 1.00, family="halves"),
    # Three-character split
    RegionPreset("left-third",        0.00, 0.00, 0.35, 1.00, family="thirds"),
    RegionPreset("center-third",      0.30, 0.00, 0.40, 1.00, family="thirds"),
    RegionPreset("right-third",       0.65, 0.00, 0.35, 1.00, family="thirds"),
)

# Positional defaults keyed by character count.
DEFAULT_SPLITS: Dict[int, Tuple[str, ...]] = {
    1: ("center",),
    2: ("left-half", "right-half"),
    3: ("left-third", "center-third", "right-third"),
}


def normalize_region_id(region_id: str) -> str:
    """Canonicalize a loosely written region id.

    ``"Left_Seated"``, ``" left seated "`` and ``"leftseated"`` all map to
    ``"left-seated"``; ``"offscreen"`` maps to ``"off-screen"``.  Ids that do
    not match any known form come back lower-cased and dash-separated.
    """
    key = "-".join(region_id.strip().lower().replace("_", " ").replace("-", " ").split())
    return _COMPACT_ALIASES.get(key.replace("-", ""), key)


def is_off_screen(region_id: Optional[str]) -> bool:
    return bool(region_id) and normalize_region_id(region_id) == OFF_SCREEN


class RegionRegistry:
    """Catalog of region presets plus deterministic auto-assignment.

    Usage::

        reg = RegionRegistry()
        preset = reg.resolve("left-seated")
        placements = reg.auto_assign([RegionRequest("Elena"), RegionRequest("Sophie")])
        # → left-half, right-half
    """

    def __init__(self, presets: Iterable[RegionPreset] = _PRESETS):
        self._presets: Dict[str, RegionPreset] = {p.id: p for p in presets}

    # ── lookup ────────────────────────────────────────────────────────────────

    def resolve(self, region_id: str) -> RegionPreset:
        """Return the preset for ``region_id``.

        Raises:
            UnknownRegionError: If the id (after normalization) is not in the
                catalog.  ``"off-screen"`` is not a drawable region either.
        """
        preset = self._presets.get(normalize_region_id(region_id))
        if preset is None:
            raise UnknownRegionError(region_id)
        return preset

    def resolve_or_full_canvas(self, region_id: str) -> Tuple[RegionPreset, Optional[str]]:
        """Resolve ``region_id``, falling back to the full canvas.

        Returns the preset and a warning string (None when the id resolved).
        """
        try:
            return self.resolve(region_id), None
        except UnknownRegionError as exc:
            warning = f"{exc}; using full canvas"
            logger.warning(warning)
            return FULL_CANVAS, warning

    def list_ids(self) -> List[str]:
        return list(self._presets)

    def families(self) -> Dict[str, List[str]]:
        """Group preset ids by family, in catalog order."""
        grouped: Dict[str, List[str]] = {}
        for preset in self._presets.values():
            grouped.setdefault(preset.family, []).append(preset.id)
        return grouped

    # ── assignment ────────────────────────────────────────────────────────────

    def auto_assign(self, characters: Sequence[RegionRequest]) -> List[CharacterPlacement]:
        """Fill in regions for characters without an on-screen placement.

        If every character already names a region other than off-screen, the
        caller's choices are returned unchanged.  Otherwise the default split
        for the character count is used: characters with their own on-screen
        region keep it, the rest take the default at their index.
        """
        explicit = [bool(c.region) and not is_off_screen(c.region) for c in characters]
        if all(explicit):
            return [
                CharacterPlacement(c.name, normalize_region_id(c.region), explicit=True)
                for c in characters
            ]

        defaults = DEFAULT_SPLITS.get(len(characters), DEFAULT_SPLITS[3])
        placements = []
        for i, (char, keep) in enumerate(zip(characters, explicit)):
            if keep:
                placements.append(
                    CharacterPlacement(char.name, normalize_region_id(char.region), explicit=True)
                )
            else:
                region = defaults[i] if i < len(defaults) else "center"
                placements.append(CharacterPlacement(char.name, region))
        logger.debug(
            "Auto-assigned regions: %s",
            ", ".join(f"{p.name}={p.region}" for p in placements),
        )
        return placements


_COMPACT_ALIASES: Dict[str, str] = {
    p.id.replace("-", ""): p.id for p in _PRESETS
}
_COMPACT_ALIASES[OFF_SCREEN.replace("-", "")] = OFF_SCREEN
