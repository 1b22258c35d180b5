"""Mask Rasterizer — per-character attention masks for IP-Adapter FaceID.

White (255) marks the region a character's identity module may influence,
black (0) everything else.  Feathered edges ramp linearly so neighbouring
masks blend instead of meeting at a hard seam.
"""
from __future__ import annotations

import base64
import io
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image

from scenegen.services.regions.registry import FULL_CANVAS, RegionRegistry
from scenegen.services.regions.types import CharacterPlacement, RegionPreset

logger = logging.getLogger("scenegen.masks.rasterizer")

MAX_CANVAS_SIDE = 4096

# Colour per character index for the composite preview mask.
COMPOSITE_COLORS: Tuple[Tuple[int, int, int], ...] = (
    (255, 0, 0),    # character 0
    (0, 0, 255),    # character 1
    (0, 255, 0),    # character 2
)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def validate_canvas(width: int, height: int) -> None:
    """Raise ValueError unless both sides are within 1..4096 pixels."""
    if not (1 <= width <= MAX_CANVAS_SIDE and 1 <= height <= MAX_CANVAS_SIDE):
        raise ValueError(
            f"Invalid canvas {width}x{height} (each side must be 1-{MAX_CANVAS_SIDE})"
        )


def pixel_rect(region: RegionPreset, width: int, height: int) -> Tuple[int, int, int, int]:
    """Scale a fractional region to a pixel ``(x, y, w, h)`` clipped to the canvas."""
    x = _round_half_up(region.x * width)
    y = _round_half_up(region.y * height)
    w = _round_half_up(region.w * width)
    h = _round_half_up(region.h * height)
    x, y = min(x, width), min(y, height)
    return x, y, max(0, min(w, width - x)), max(0, min(h, height - y))


def encode_png(pixels: np.ndarray) -> bytes:
    """Encode a uint8 array (HxW grayscale or HxWx3 RGB) as PNG bytes."""
    buf = io.BytesIO()
    Image.fromarray(np.ascontiguousarray(pixels, dtype=np.uint8)).save(buf, format="PNG")
    return buf.getvalue()


@dataclass
class AttentionMask:
    """A rendered grayscale mask owned by one character for one job."""
    owner_name: str
    region_id: str
    width: int
    height: int
    pixels: np.ndarray
    feather_px: int = 0
    warnings: List[str] = field(default_factory=list)

    def to_png_bytes(self) -> bytes:
        return encode_png(self.pixels)

    def to_base64(self) -> str:
        return base64.b64encode(self.to_png_bytes()).decode("ascii")

    def save(self, directory: Path, filename: str) -> Path:
        """Write the PNG into a staging directory and return its path."""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / filename
        path.write_bytes(self.to_png_bytes())
        return path

    def white_pixel_count(self) -> int:
        return int(np.count_nonzero(self.pixels == 255))

    def bounding_box(self, threshold: int = 0) -> Optional[Tuple[int, int, int, int]]:
        """Pixel ``(x, y, w, h)`` of all pixels brighter than ``threshold``."""
        rows = np.flatnonzero((self.pixels > threshold).any(axis=1))
        cols = np.flatnonzero((self.pixels > threshold).any(axis=0))
        if rows.size == 0:
            return None
        return (
            int(cols[0]), int(rows[0]),
            int(cols[-1] - cols[0] + 1), int(rows[-1] - rows[0] + 1),
        )


def _edge_ramp(length: int, feather: int) -> np.ndarray:
    """Intensity along one axis: 0 at both edges, 255 from ``feather`` inwards."""
    idx = np.arange(length)
    distance = np.minimum(idx, length - 1 - idx)
    ramp = np.floor(255.0 * distance / feather + 0.5)
    return np.clip(ramp, 0, 255).astype(np.uint8)


class MaskRasterizer:
    """Renders region masks.

    Usage::

        raster = MaskRasterizer()
        mask = raster.render(registry.resolve("left-half"), 1024, 576, feather_px=20)
        png = mask.to_png_bytes()
    """

    def __init__(self, registry: Optional[RegionRegistry] = None):
        self._registry = registry or RegionRegistry()

    # ── public ────────────────────────────────────────────────────────────────

    def render(
        self,
        region: RegionPreset,
        canvas_w: int,
        canvas_h: int,
        feather_px: int = 0,
        owner_name: str = "",
    ) -> AttentionMask:
        """Rasterize ``region`` onto a black canvas.

        ``feather_px`` is capped at half the rectangle's shorter side so the
        two opposing ramps never overlap.
        """
        validate_canvas(canvas_w, canvas_h)
        if feather_px < 0:
            raise ValueError(f"feather_px must be >= 0, got {feather_px}")

        pixels = np.zeros((canvas_h, canvas_w), dtype=np.uint8)
        x, y, w, h = pixel_rect(region, canvas_w, canvas_h)
        feather = min(feather_px, min(w, h) // 2)
        if feather != feather_px:
            logger.debug(
                "Feather %dpx clamped to %dpx for region %s (%dx%d)",
                feather_px, feather, region.id, w, h,
            )

        if w and h:
            if feather > 0:
                block = np.minimum.outer(_edge_ramp(h, feather), _edge_ramp(w, feather))
            else:
                block = np.full((h, w), 255, dtype=np.uint8)
            pixels[y:y + h, x:x + w] = block

        return AttentionMask(
            owner_name=owner_name,
            region_id=region.id,
            width=canvas_w,
            height=canvas_h,
            pixels=pixels,
            feather_px=feather,
        )

    def render_for(
        self,
        region_id: str,
        canvas_w: int,
        canvas_h: int,
        feather_px: int = 0,
        owner_name: str = "",
    ) -> AttentionMask:
        """Resolve ``region_id`` and render it.

        An unknown id renders a full-canvas solid white mask (no restriction)
        with the warning attached; it never raises for the region itself.
        """
        preset, warning = self._registry.resolve_or_full_canvas(region_id)
        if warning is None:
            return self.render(preset, canvas_w, canvas_h, feather_px, owner_name)
        mask = self.render(FULL_CANVAS, canvas_w, canvas_h, 0, owner_name)
        mask.warnings.append(f"{owner_name or 'character'}: {warning}")
        return mask

    def render_all(
        self,
        placements: Sequence[CharacterPlacement],
        canvas_w: int,
        canvas_h: int,
        feather_px: int = 0,
    ) -> List[AttentionMask]:
        """Render one mask per placement, in placement order."""
        if not placements:
            return []
        with ThreadPoolExecutor(max_workers=len(placements)) as pool:
            futures = [
                pool.submit(self.render_for, p.region, canvas_w, canvas_h, feather_px, p.name)
                for p in placements
            ]
            return [f.result() for f in futures]

    def render_composite(
        self,
        placements: Sequence[CharacterPlacement],
        canvas_w: int,
        canvas_h: int,
    ) -> np.ndarray:
        """RGB preview with one solid colour per character (red, blue, green).

        Unresolvable regions are skipped; later characters paint over earlier
        ones where regions overlap.
        """
        validate_canvas(canvas_w, canvas_h)
        rgb = np.zeros((canvas_h, canvas_w, 3), dtype=np.uint8)
        for index, placement in enumerate(placements[:len(COMPOSITE_COLORS)]):
            try:
                preset = self._registry.resolve(placement.region)
            except KeyError:
                logger.warning("Composite mask: skipping %s (%s)", placement.name, placement.region)
                continue
            x, y, w, h = pixel_rect(preset, canvas_w, canvas_h)
            rgb[y:y + h, x:x + w] = COMPOSITE_COLORS[index]
        return rgb
