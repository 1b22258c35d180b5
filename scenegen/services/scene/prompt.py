"""Scene prompt assembly from parsed character details.

Assembly order:
    quality tags → scene description → lighting → mood → per-character clauses → closing tags
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

_QUALITY_TAGS = "(masterpiece, best quality, highly detailed)"
_FACE_TAGS = "detailed eyes, clear eyes, realistic eyes, perfect teeth"
_CLOSING_TAGS = "looking at camera, natural expression"


@dataclass
class SceneCharacter:
    """What the scene text says about one character."""
    name: str
    region: Optional[str] = None
    expression: str = ""
    clothing: str = ""
    action: str = ""

    def clause(self) -> str:
        details = [d for d in (self.expression, self.clothing, self.action) if d]
        if not details:
            return ""
        return " ".join(p for p in ("person", self.region or "", ", ".join(details)) if p)


def build_scene_prompt(
    description: str,
    characters: Sequence[SceneCharacter] = (),
    mood: Optional[str] = None,
    lighting: Optional[str] = None,
) -> str:
    """Compose the positive prompt for a multi-character scene.

    Characters without any expression, clothing or action contribute nothing;
    their identity comes from the reference image, not the text.
    """
    parts: List[str] = [_QUALITY_TAGS, _FACE_TAGS]
    if description:
        parts.append(description.strip())
    if lighting:
        parts.append(lighting)
    if mood:
        parts.append(f"{mood} atmosphere")
    parts.extend(c for c in (char.clause() for char in characters) if c)
    parts.append(_CLOSING_TAGS)
    return ", ".join(parts)
