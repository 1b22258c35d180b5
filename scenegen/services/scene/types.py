"""Data types for the scene generation pipeline."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class CharacterSlot:
    """One character in one generation request."""
    name: str
    reference_image_path: str
    region: Optional[str] = None        # preset id, "off-screen", or None for auto


@dataclass
class SceneGenOptions:
    """Per-request overrides.  ``None`` means "use the configured default"."""
    seed: Optional[int] = None
    steps: Optional[int] = None
    cfg: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    negative_prompt: Optional[str] = None
    feather_px: Optional[int] = None
    timeout_sec: Optional[float] = None
    sampler: Dict[str, Any] = field(default_factory=dict)   # other SamplerSettings fields


@dataclass
class SceneGenRequest:
    """A validated request with regions already assigned."""
    positive_prompt: str
    characters: List[CharacterSlot]
    width: int
    height: int
    options: SceneGenOptions = field(default_factory=SceneGenOptions)


@dataclass
class SceneGenResult:
    """What the caller gets back.  Storage of the outputs is the caller's concern."""
    output_paths: List[str]
    job_id: str
    seed: int
    output_urls: List[str] = field(default_factory=list)
    regions: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "output_paths": list(self.output_paths),
            "job_id": self.job_id,
            "seed": self.seed,
            "output_urls": list(self.output_urls),
            "regions": dict(self.regions),
            "warnings": list(self.warnings),
        }
