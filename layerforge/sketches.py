"""
Sketch-style procedural layers drawn with Pillow.

Presets mirror the editor's sketch library: parameters use the same names and
defaults (grey levels 0-255 for colours, pixel units for sizes). Every preset
draws from a PRNG seeded by the token seed so renders are reproducible.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from .selector import seeded_stream
from .shaders import lattice_noise
from .surface import from_pil, parse_color

LOG = logging.getLogger("layerforge.sketches")

RGBA = Tuple[int, int, int, int]
SketchFn = Callable[[ImageDraw.ImageDraw, int, int, Mapping[str, Any], np.random.Generator], None]

DEFAULT_BACKGROUNDS: Dict[str, Any] = {
    "ribbon_text": 240,
    "circle_pack": 255,
    "particles": 20,
    "flow_field": 10,
    "chromatic_aberration": "transparent",
}


def _color(value: Any, alpha: float = 255) -> Optional[RGBA]:
    """Grey level, hex string or RGB triple → RGBA tuple (None for transparent)."""
    if value is None or value == "transparent":
        return None
    a = int(np.clip(alpha, 0, 255))
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        level = int(np.clip(value, 0, 255))
        return (level, level, level, a)
    rgb = (parse_color(value, (0.5, 0.5, 0.5)) * 255.0 + 0.5).astype(int)
    return (int(rgb[0]), int(rgb[1]), int(rgb[2]), a)


def _param(params: Mapping[str, Any], key: str, default: float) -> float:
    return float(params.get(key, default))


def ribbon_text(draw, width, height, params, rng) -> None:
    amplitude = _param(params, "amplitude", 50)
    noise_scale = _param(params, "noiseScale", 20)
    ribbon_width = max(1, int(_param(params, "ribbonWidth", 3)))
    ribbon_color = _color(params.get("ribbonColor", 200))
    noise = lattice_noise(width, 5, max(width / 100.0, 1.0), rng)

    for band in range(5):
        points: List[Tuple[float, float]] = []
        for x in range(0, width, 10):
            y = height / 2 + math.sin((x + band * 50) * 0.01) * amplitude
            points.append((x, y + float(noise[band, x]) * noise_scale))
        if len(points) > 1 and ribbon_color is not None:
            draw.line(points, fill=ribbon_color, width=ribbon_width)

    text = str(params.get("text") or "LAYERFORGE")
    text_color = _color(params.get("textColor", 0))
    if text_color is not None:
        font = ImageFont.load_default(size=int(_param(params, "textSize", 48)))
        left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
        origin = ((width - (right - left)) / 2 - left, (height - (bottom - top)) / 2 - top)
        draw.text(origin, text, fill=text_color, font=font)


def circle_pack(draw, width, height, params, rng) -> None:
    attempts = int(_param(params, "attempts", 500))
    min_radius = _param(params, "minRadius", 5)
    max_radius = max(_param(params, "maxRadius", 40), min_radius)
    spacing = _param(params, "spacing", 2)
    fill = _color(params.get("fillColor", 100), _param(params, "opacity", 200))
    outline = _color(params.get("strokeColor", 0))
    stroke_width = int(_param(params, "strokeWidth", 2))

    circles: List[Tuple[float, float, float]] = []
    for _ in range(attempts):
        x = float(rng.uniform(0, width))
        y = float(rng.uniform(0, height))
        r = float(rng.uniform(min_radius, max_radius))
        if all(math.hypot(x - cx, y - cy) >= r + cr + spacing for cx, cy, cr in circles):
            circles.append((x, y, r))

    for x, y, r in circles:
        draw.ellipse(
            (x - r, y - r, x + r, y + r),
            fill=fill,
            outline=outline if stroke_width > 0 else None,
            width=max(stroke_width, 1),
        )


def particles(draw, width, height, params, rng) -> None:
    count = int(_param(params, "count", 200))
    min_size = _param(params, "minSize", 2)
    max_size = max(_param(params, "maxSize", 8), min_size)
    min_alpha = _param(params, "minAlpha", 50)
    max_alpha = max(_param(params, "maxAlpha", 200), min_alpha)
    base = params.get("particleColor", 100)

    for _ in range(count):
        x = float(rng.uniform(0, width))
        y = float(rng.uniform(0, height))
        radius = float(rng.uniform(min_size, max_size)) / 2.0
        fill = _color(base, float(rng.uniform(min_alpha, max_alpha)))
        draw.ellipse((x - radius, y - radius, x + radius, y + radius), fill=fill)


def flow_field(draw, width, height, params, rng) -> None:
    count = int(_param(params, "count", 300))
    steps = int(_param(params, "steps", 40))
    step_length = _param(params, "stepLength", 3)
    field_scale = _param(params, "noiseScale", 3)
    line_color = _color(params.get("lineColor", 220), _param(params, "opacity", 120))
    angles = lattice_noise(width, height, field_scale, rng) * (4.0 * math.pi)

    for _ in range(count):
        x = float(rng.uniform(0, width))
        y = float(rng.uniform(0, height))
        path = [(x, y)]
        for _ in range(steps):
            ix, iy = int(x), int(y)
            if not (0 <= ix < width and 0 <= iy < height):
                break
            angle = float(angles[iy, ix])
            x += math.cos(angle) * step_length
            y += math.sin(angle) * step_length
            path.append((x, y))
        if len(path) > 1:
            draw.line(path, fill=line_color, width=1)


def chromatic_aberration(draw, width, height, params, rng) -> None:
    count = int(_param(params, "count", 12))
    size = _param(params, "shapeSize", min(width, height) / 4)
    base = _color(params.get("shapeColor", 230))

    for _ in range(count):
        cx = float(rng.uniform(0, width))
        cy = float(rng.uniform(0, height))
        r = float(rng.uniform(size * 0.3, size))
        kind = int(rng.integers(0, 3))
        box = (cx - r, cy - r, cx + r, cy + r)
        if kind == 0:
            draw.ellipse(box, outline=base, width=3)
        elif kind == 1:
            draw.rectangle(box, outline=base, width=3)
        else:
            draw.polygon([(cx, cy - r), (cx + r, cy + r), (cx - r, cy + r)], outline=base, width=3)


SKETCH_PRESETS: Dict[str, SketchFn] = {
    "ribbon_text": ribbon_text,
    "circle_pack": circle_pack,
    "particles": particles,
    "flow_field": flow_field,
    "chromatic_aberration": chromatic_aberration,
}


def _split_channels(surface: np.ndarray, offset: int) -> np.ndarray:
    # Offset red and blue in opposite directions; alpha follows the widest extent.
    if offset <= 0:
        return surface
    shifted = surface.copy()
    shifted[..., 0] = np.roll(surface[..., 0], offset, axis=1)
    shifted[..., 2] = np.roll(surface[..., 2], -offset, axis=1)
    shifted[..., 3] = np.maximum.reduce(
        [surface[..., 3], np.roll(surface[..., 3], offset, axis=1), np.roll(surface[..., 3], -offset, axis=1)]
    )
    return shifted


class SketchAdapter:
    """Render `p5:` trait sources."""

    def __init__(self, presets: Mapping[str, SketchFn] | None = None) -> None:
        self.presets = dict(presets or SKETCH_PRESETS)

    def render(
        self,
        preset_id: str,
        params: Mapping[str, Any],
        width: int,
        height: int,
        seed: str,
    ) -> np.ndarray:
        try:
            sketch = self.presets[preset_id]
        except KeyError:
            raise ValueError(
                f"Unknown sketch preset '{preset_id}'. Available: {', '.join(sorted(self.presets))}"
            ) from None

        width, height = int(width), int(height)
        background = _color(params.get("bgColor", DEFAULT_BACKGROUNDS.get(preset_id, "transparent")))
        image = Image.new("RGBA", (width, height), background or (0, 0, 0, 0))
        draw = ImageDraw.Draw(image, "RGBA")
        rng = seeded_stream(f"{seed}:p5:{preset_id}")
        LOG.debug("Rendering sketch '%s' at %dx%d", preset_id, width, height)
        sketch(draw, width, height, params, rng)

        surface = from_pil(image)
        if preset_id == "chromatic_aberration":
            surface = _split_channels(surface, int(_param(params, "offset", 6)))
        return surface


__all__ = ["SKETCH_PRESETS", "SketchAdapter"]
