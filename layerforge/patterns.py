"""
Piano-roll visualisation of mini-notation note patterns.

A pattern is a whitespace separated list of cells: notes such as `c3` or
`f#4`, rests (`~`), and repeats (`e3*4`). Each cell occupies one step; the
note's pitch class picks one of twelve lanes. Rendering is a pure function of
the pattern parameters and the token seed.
"""

from __future__ import annotations

import colorsys
import logging
import re
from typing import Any, List, Mapping, Tuple

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from .surface import from_pil

LOG = logging.getLogger("layerforge.patterns")

DEFAULT_PATTERN = "c3 ~ e3 g3 ~ c3 ~ e3 g3"
STEPS_PER_BAR = 16
LANES = 12
BACKGROUND = (11, 13, 16, 255)
GRID_COLOR = (255, 255, 255, 20)
GHOST_COLOR = (255, 255, 255, 38)
ACCENT_COLOR = (0, 0, 0, 77)
LEGEND_COLOR = (255, 255, 255, 191)

PITCH_CLASSES = {
    "c": 0, "c#": 1, "d": 2, "d#": 3, "e": 4, "f": 5,
    "f#": 6, "g": 7, "g#": 8, "a": 9, "a#": 10, "b": 11,
}

_REPEAT = re.compile(r"^([a-g][#b]?\d)(?:\*(\d+))?$")
_NOTE = re.compile(r"^([a-g][#b]?)(\d)$")


def parse_cells(pattern: str) -> List[str]:
    """Expand `note*N` repeats; every other token is kept verbatim."""
    cells: List[str] = []
    for token in pattern.split():
        match = _REPEAT.match(token)
        if not match:
            cells.append(token)
            continue
        times = max(1, int(match.group(2))) if match.group(2) else 1
        cells.extend([match.group(1)] * times)
    return cells


def note_lane(token: str) -> int | None:
    """Lane index (0 = top) for a note token, or None if it is not a note."""
    match = _NOTE.match(token)
    if not match:
        return None
    name, octave = match.group(1), int(match.group(2))
    degree = PITCH_CLASSES.get(name, 0)
    # Even octaves run top-down, odd octaves bottom-up.
    return LANES - 1 - degree if octave % 2 == 0 else degree


def seed_hue(seed: str) -> int:
    """FNV-1a hash of the seed folded to a hue in [0, 360)."""
    h = 2166136261
    for ch in seed:
        h ^= ord(ch)
        h = (h * 16777619) & 0xFFFFFFFF
    signed = h - (1 << 32) if h & 0x80000000 else h
    return signed % 360


def seed_color(seed: str, alpha: float = 0.9) -> Tuple[int, int, int, int]:
    r, g, b = colorsys.hls_to_rgb(seed_hue(seed) / 360.0, 0.6, 0.9)
    return (round(r * 255), round(g * 255), round(b * 255), round(alpha * 255))


def render_piano_roll(params: Mapping[str, Any], width: int, height: int, seed: str) -> np.ndarray:
    pattern = str(params.get("pattern") or DEFAULT_PATTERN)
    root = str(params.get("root") or "c")
    mode = str(params.get("mode") or "dorian")
    bars = max(1, int(params.get("bars") or 1))
    columns = STEPS_PER_BAR * bars

    image = Image.new("RGBA", (width, height), BACKGROUND)
    draw = ImageDraw.Draw(image, "RGBA")

    for step in range(columns):
        x = int(step / columns * width)
        draw.line([(x, 0), (x, height)], fill=GRID_COLOR, width=1)
    for lane in range(LANES):
        y = int(lane / LANES * height)
        draw.line([(0, y), (width, y)], fill=GRID_COLOR, width=1)

    cell_w = width / columns
    lane_h = height / LANES
    note_color = seed_color(seed)
    radius = int(max(0.0, min(8.0, cell_w / 2 - 1, lane_h / 2 - 1)))

    for index, token in enumerate(parse_cells(pattern)[:columns]):
        x = index * cell_w
        if token == "~":
            ghost_w = max(1.0, cell_w - 2)
            y0 = height - lane_h * 2
            draw.rectangle((x + 1, y0, x + ghost_w, y0 + 1), fill=GHOST_COLOR)
            continue
        lane = note_lane(token)
        if lane is None:
            continue
        y = lane * lane_h
        x2 = max(x, x + cell_w - 1)
        y2 = max(y, y + lane_h - 2)
        draw.rounded_rectangle((x, y, x2, y2), radius=radius, fill=note_color)
        draw.rectangle((x + 2, y + 2, x + 3, y + max(2.0, lane_h - 5)), fill=ACCENT_COLOR)

    legend = f"{root} {mode} · {STEPS_PER_BAR}stp x {bars}bar"
    font = ImageFont.load_default()
    _, top, _, bottom = draw.textbbox((0, 0), legend, font=font)
    draw.text((10, height - 10 - (bottom - top)), legend, fill=LEGEND_COLOR, font=font)
    return from_pil(image)


class PatternAdapter:
    """
    Render `strudel:` trait sources.

    Every preset id shares the piano-roll visualiser; the preset only selects
    the default parameters layered under the descriptor's own params.
    """

    def __init__(self, presets: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self.presets = {key: dict(value) for key, value in (presets or {}).items()}

    def render(
        self,
        preset_id: str,
        params: Mapping[str, Any],
        width: int,
        height: int,
        seed: str,
    ) -> np.ndarray:
        merged = {**self.presets.get(preset_id, {}), **params}
        LOG.debug("Rendering pattern '%s' at %dx%d", preset_id, width, height)
        return render_piano_roll(merged, int(width), int(height), seed)


__all__ = [
    "DEFAULT_PATTERN",
    "PatternAdapter",
    "note_lane",
    "parse_cells",
    "render_piano_roll",
    "seed_color",
    "seed_hue",
]
