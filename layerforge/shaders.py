"""
Fragment-shader style procedural layers rendered on the CPU.

Each preset maps `(width, height, params, rng)` to an RGBA float32 surface.
Parameter names follow the uniform names used by the editor presets
(`uScale`, `uColor`, `uDotSize`, `uIntensity`, `uLineHeight`, ...).
"""

from __future__ import annotations

import logging
import math
from typing import Any, Callable, Dict, Mapping

import numpy as np

from .selector import seeded_stream
from .surface import parse_color, rgba

LOG = logging.getLogger("layerforge.shaders")

ShaderFn = Callable[[int, int, Mapping[str, Any], np.random.Generator], np.ndarray]


def _fade(t: np.ndarray) -> np.ndarray:
    return t * t * t * (t * (t * 6.0 - 15.0) + 10.0)


def lattice_noise(width: int, height: int, frequency: float, rng: np.random.Generator) -> np.ndarray:
    span = float(max(width, height))
    xs = np.arange(width, dtype=np.float32) * frequency / span
    ys = np.arange(height, dtype=np.float32) * frequency / span
    x0 = np.floor(xs).astype(np.int64)
    y0 = np.floor(ys).astype(np.int64)
    tx = _fade(xs - x0)
    ty = _fade(ys - y0)[:, None]
    lattice = rng.random((int(y0.max()) + 2, int(x0.max()) + 2), dtype=np.float32)
    top = lattice[y0][:, x0] * (1.0 - tx) + lattice[y0][:, x0 + 1] * tx
    bottom = lattice[y0 + 1][:, x0] * (1.0 - tx) + lattice[y0 + 1][:, x0 + 1] * tx
    return top * (1.0 - ty) + bottom * ty


def perlin_noise(width: int, height: int, params: Mapping[str, Any], rng: np.random.Generator) -> np.ndarray:
    scale = max(float(params.get("uScale", 4.0)), 0.5)
    octaves = max(1, min(int(params.get("uOctaves", 4)), 8))
    color = parse_color(params.get("uColor"), (0.55, 0.75, 1.0))

    total = np.zeros((height, width), dtype=np.float32)
    norm = 0.0
    for octave in range(octaves):
        amplitude = 0.5**octave
        total += lattice_noise(width, height, scale * 2**octave, rng) * amplitude
        norm += amplitude
    value = total / norm
    return rgba(value[..., None] * color, np.ones_like(value))


def voronoi(width: int, height: int, params: Mapping[str, Any], rng: np.random.Generator) -> np.ndarray:
    cells = max(1, min(int(params.get("uScale", 6)), 16))
    color = parse_color(params.get("uColor"), (1.0, 0.45, 0.7))
    points = rng.random((cells * cells, 2), dtype=np.float32) * np.array([width, height], dtype=np.float32)

    yy, xx = np.mgrid[0:height, 0:width].astype(np.float32)
    nearest = np.full((height, width), np.inf, dtype=np.float32)
    for px, py in points:
        np.minimum(nearest, np.hypot(xx - px, yy - py), out=nearest)
    cell_size = max(width, height) / cells
    value = 1.0 - np.clip(nearest / cell_size, 0.0, 1.0)
    return rgba(value[..., None] * color, np.ones_like(value))


def halftone(width: int, height: int, params: Mapping[str, Any], rng: np.random.Generator) -> np.ndarray:
    dot = max(2.0, float(params.get("uDotSize", 8.0)))
    color = parse_color(params.get("uColor"), (0.0, 0.0, 0.0))
    angle = float(rng.random()) * 2.0 * math.pi

    yy, xx = np.mgrid[0:height, 0:width].astype(np.float32)
    # Tone ramps along a seeded direction; dot radius follows the tone.
    tone = (xx / max(width - 1, 1)) * math.cos(angle) + (yy / max(height - 1, 1)) * math.sin(angle)
    tone = (tone - tone.min()) / max(float(tone.max() - tone.min()), 1e-6)
    cx = (np.floor(xx / dot) + 0.5) * dot
    cy = (np.floor(yy / dot) + 0.5) * dot
    radius = np.sqrt(tone) * dot * 0.5
    inside = np.hypot(xx - cx, yy - cy) <= radius
    return rgba(color, inside.astype(np.float32))


def scanlines(width: int, height: int, params: Mapping[str, Any], rng: np.random.Generator) -> np.ndarray:
    line_height = max(1, int(params.get("uLineHeight", 2)))
    intensity = float(np.clip(params.get("uIntensity", 0.5), 0.0, 1.0))
    rows = (np.arange(height) // line_height) % 2 == 1
    alpha = np.repeat(rows[:, None], width, axis=1).astype(np.float32) * intensity
    return rgba(np.zeros(3, dtype=np.float32), alpha)


def gradient(width: int, height: int, params: Mapping[str, Any], rng: np.random.Generator) -> np.ndarray:
    start = parse_color(params.get("uColorA"), (0.1, 0.1, 0.18))
    end = parse_color(params.get("uColorB"), (0.91, 0.27, 0.38))
    angle = math.radians(float(params.get("uAngle", 45.0)))

    yy, xx = np.mgrid[0:height, 0:width].astype(np.float32)
    t = (xx / max(width - 1, 1)) * math.cos(angle) + (yy / max(height - 1, 1)) * math.sin(angle)
    t = (t - t.min()) / max(float(t.max() - t.min()), 1e-6)
    colour = start * (1.0 - t[..., None]) + end * t[..., None]
    return rgba(colour, np.ones_like(t))


def grid(width: int, height: int, params: Mapping[str, Any], rng: np.random.Generator) -> np.ndarray:
    cell = max(2, int(params.get("uCellSize", 32)))
    line_width = max(1, int(params.get("uLineWidth", 1)))
    color = parse_color(params.get("uColor"), (1.0, 1.0, 1.0))
    opacity = float(np.clip(params.get("uOpacity", 0.6), 0.0, 1.0))

    cols = (np.arange(width) % cell) < line_width
    rows = (np.arange(height) % cell) < line_width
    mask = rows[:, None] | cols[None, :]
    return rgba(color, mask.astype(np.float32) * opacity)


SHADER_PRESETS: Dict[str, ShaderFn] = {
    "perlin_noise": perlin_noise,
    "voronoi": voronoi,
    "halftone": halftone,
    "scanlines": scanlines,
    "gradient": gradient,
    "grid": grid,
}


class ShaderAdapter:
    """Render `webgl:` trait sources."""

    def __init__(self, presets: Mapping[str, ShaderFn] | None = None) -> None:
        self.presets = dict(presets or SHADER_PRESETS)

    def render(
        self,
        preset_id: str,
        params: Mapping[str, Any],
        width: int,
        height: int,
        seed: str,
    ) -> np.ndarray:
        try:
            shader = self.presets[preset_id]
        except KeyError:
            raise ValueError(
                f"Unknown shader preset '{preset_id}'. Available: {', '.join(sorted(self.presets))}"
            ) from None
        rng = seeded_stream(f"{seed}:webgl:{preset_id}")
        LOG.debug("Rendering shader '%s' at %dx%d", preset_id, width, height)
        return shader(int(width), int(height), params, rng)


__all__ = ["SHADER_PRESETS", "ShaderAdapter", "lattice_noise"]
