"""
Collection-wide post effects applied to each composite.

Effects are implemented with NumPy and run in declaration order. Randomised
effects (glitch) draw from a PRNG derived from the token seed, so the same
token always receives the same treatment.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import math
from typing import Mapping, Sequence, Tuple

import numpy as np

from .project_schema import FXConfig
from .selector import seeded_stream

LOG = logging.getLogger("layerforge.postfx")

LUMA = np.array([0.2126, 0.7152, 0.0722], dtype=np.float32)


def _log_debug(message: str, **payload: object) -> None:
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("%s | %s", message, payload)


def _apply_scanlines(rgb: np.ndarray, params: Mapping[str, float]) -> np.ndarray:
    intensity = float(params.get("intensity", 0.5))
    line_width = max(1, int(params.get("lineWidth", 1)))
    brightness = float(params.get("brightness", 1.0))
    height = rgb.shape[0]
    dark_rows = (np.arange(height) // line_width) % 2 == 0
    factor = np.where(dark_rows, 1.0 - intensity, 1.0).astype(np.float32) * brightness
    return rgb * factor[:, None, None]


def _apply_halftone(rgb: np.ndarray, params: Mapping[str, float]) -> np.ndarray:
    dot = max(2.0, float(params.get("dotSize", 3.0)))
    angle = math.radians(float(params.get("angle", 22.5)))
    contrast = float(params.get("contrast", 1.0))
    mix = float(np.clip(params.get("intensity", 1.0), 0.0, 1.0))

    height, width = rgb.shape[:2]
    yy, xx = np.mgrid[0:height, 0:width].astype(np.float32)
    u = xx * math.cos(angle) + yy * math.sin(angle)
    v = -xx * math.sin(angle) + yy * math.cos(angle)
    du = u - (np.floor(u / dot) + 0.5) * dot
    dv = v - (np.floor(v / dot) + 0.5) * dot

    luma = np.clip((rgb @ LUMA - 0.5) * contrast + 0.5, 0.0, 1.0)
    # Darker regions get larger dots; the diagonal factor lets dots merge in shadows.
    radius = np.sqrt(1.0 - luma) * dot * 0.5 * math.sqrt(2.0)
    inside = np.hypot(du, dv) <= radius
    screened = np.where(inside[..., None], rgb, 1.0)
    return rgb * (1.0 - mix) + screened * mix


def _apply_glitch(surface: np.ndarray, params: Mapping[str, float], rng: np.random.Generator) -> np.ndarray:
    intensity = float(params.get("intensity", 0.3))
    frequency = float(params.get("frequency", 0.05))
    height, width = surface.shape[:2]
    output = surface.copy()

    max_shift = max(1, int(intensity * width * 0.1))
    band = max(1, height // 32)
    for start in range(0, height, band):
        if rng.random() >= frequency:
            continue
        shift = int(rng.integers(-max_shift, max_shift + 1))
        output[start : start + band] = np.roll(surface[start : start + band], shift, axis=1)

    offset = int(round(intensity * width * 0.02))
    if offset:
        output[..., 0] = np.roll(output[..., 0], offset, axis=1)
        output[..., 2] = np.roll(output[..., 2], -offset, axis=1)
    return output


@dataclass
class PostFXProcessor:
    effects: Sequence[FXConfig]
    resolution: Tuple[int, int]
    seed: str
    applied: list = field(default_factory=list, init=False)

    def __post_init__(self) -> None:
        self._rng = seeded_stream(f"{self.seed}:fx")

    def process(self, surface: np.ndarray) -> np.ndarray:
        """
        Apply enabled effects to an RGBA float32 surface of `resolution`.
        Returns a new array; the input is never modified.
        """
        width, height = self.resolution
        if surface.shape != (height, width, 4):
            raise ValueError(f"Surface must have shape ({height}, {width}, 4).")

        output = np.array(surface, dtype=np.float32, copy=True)
        for fx in self.effects:
            if not fx.enabled:
                continue
            if fx.type == "crt":
                output[..., :3] = _apply_scanlines(output[..., :3], fx.params)
            elif fx.type == "halftone":
                output[..., :3] = _apply_halftone(output[..., :3], fx.params)
            elif fx.type == "glitch":
                output = _apply_glitch(output, fx.params, self._rng)
            else:
                LOG.warning("Skipping unknown effect type '%s' (%s).", fx.type, fx.id)
                continue
            self.applied.append(fx.id)
            _log_debug("Applied effect", fx=fx.id, type=fx.type, seed=self.seed)
        return np.clip(output, 0.0, 1.0)


__all__ = ["PostFXProcessor"]
