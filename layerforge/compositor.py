"""
Layer compositing for generated tokens.

Operations are implemented with NumPy on straight-alpha RGBA float32
surfaces of shape (height, width, 4). Layers are drawn bottom-up in ascending
z-index using the separable blend modes of the W3C compositing model, with
each layer's alpha scaled by its opacity.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable, Dict, Iterable, Optional, Sequence, Tuple

import numpy as np

LOG = logging.getLogger("layerforge.compositor")

BlendFn = Callable[[np.ndarray, np.ndarray], np.ndarray]


def _normal(backdrop: np.ndarray, source: np.ndarray) -> np.ndarray:
    return source


def _add(backdrop: np.ndarray, source: np.ndarray) -> np.ndarray:
    return np.minimum(1.0, backdrop + source)


def _multiply(backdrop: np.ndarray, source: np.ndarray) -> np.ndarray:
    return backdrop * source


def _screen(backdrop: np.ndarray, source: np.ndarray) -> np.ndarray:
    return backdrop + source - backdrop * source


def _hard_light(backdrop: np.ndarray, source: np.ndarray) -> np.ndarray:
    return np.where(
        source <= 0.5,
        _multiply(backdrop, 2.0 * source),
        _screen(backdrop, 2.0 * source - 1.0),
    )


def _overlay(backdrop: np.ndarray, source: np.ndarray) -> np.ndarray:
    return _hard_light(source, backdrop)


def _darken(backdrop: np.ndarray, source: np.ndarray) -> np.ndarray:
    return np.minimum(backdrop, source)


def _lighten(backdrop: np.ndarray, source: np.ndarray) -> np.ndarray:
    return np.maximum(backdrop, source)


def _color_dodge(backdrop: np.ndarray, source: np.ndarray) -> np.ndarray:
    with np.errstate(divide="ignore", invalid="ignore"):
        dodged = np.minimum(1.0, backdrop / np.maximum(1.0 - source, 1e-6))
    return np.where(backdrop <= 0.0, 0.0, np.where(source >= 1.0, 1.0, dodged))


def _color_burn(backdrop: np.ndarray, source: np.ndarray) -> np.ndarray:
    with np.errstate(divide="ignore", invalid="ignore"):
        burned = 1.0 - np.minimum(1.0, (1.0 - backdrop) / np.maximum(source, 1e-6))
    return np.where(backdrop >= 1.0, 1.0, np.where(source <= 0.0, 0.0, burned))


def _soft_light(backdrop: np.ndarray, source: np.ndarray) -> np.ndarray:
    d = np.where(
        backdrop <= 0.25,
        ((16.0 * backdrop - 12.0) * backdrop + 4.0) * backdrop,
        np.sqrt(backdrop),
    )
    return np.where(
        source <= 0.5,
        backdrop - (1.0 - 2.0 * source) * backdrop * (1.0 - backdrop),
        backdrop + (2.0 * source - 1.0) * (d - backdrop),
    )


def _difference(backdrop: np.ndarray, source: np.ndarray) -> np.ndarray:
    return np.abs(backdrop - source)


def _exclusion(backdrop: np.ndarray, source: np.ndarray) -> np.ndarray:
    return backdrop + source - 2.0 * backdrop * source


_BLEND_FUNCTIONS: Dict[str, BlendFn] = {
    "normal": _normal,
    "add": _add,
    "multiply": _multiply,
    "screen": _screen,
    "overlay": _overlay,
    "darken": _darken,
    "lighten": _lighten,
    "color-dodge": _color_dodge,
    "color-burn": _color_burn,
    "hard-light": _hard_light,
    "soft-light": _soft_light,
    "difference": _difference,
    "exclusion": _exclusion,
}

BLEND_MODES: Tuple[str, ...] = tuple(_BLEND_FUNCTIONS)


@dataclass(frozen=True)
class Layer:
    """One surface to draw, with its draw settings and stacking position."""

    surface: np.ndarray
    blend_mode: str = "normal"
    opacity: float = 1.0
    z_index: int = 0
    order: int = 0


def blank_surface(width: int, height: int) -> np.ndarray:
    return np.zeros((int(height), int(width), 4), dtype=np.float32)


def blend_onto(
    backdrop: np.ndarray,
    source: np.ndarray,
    *,
    blend_mode: str = "normal",
    opacity: float = 1.0,
) -> np.ndarray:
    """
    Draw `source` over `backdrop` and return the new surface.

    Both inputs are straight-alpha RGBA float arrays of identical shape.
    """
    if backdrop.shape != source.shape:
        raise ValueError(
            f"Layer shape {source.shape} does not match canvas shape {backdrop.shape}."
        )
    blend = _BLEND_FUNCTIONS.get(blend_mode)
    if blend is None:
        LOG.warning("Unknown blend mode '%s'; drawing as normal.", blend_mode)
        blend = _normal

    cb = backdrop[..., :3]
    ab = backdrop[..., 3:4]
    cs = source[..., :3]
    as_ = source[..., 3:4] * float(np.clip(opacity, 0.0, 1.0))

    mixed = (1.0 - ab) * cs + ab * np.clip(blend(cb, cs), 0.0, 1.0)
    alpha_out = as_ + ab * (1.0 - as_)
    premultiplied = as_ * mixed + (1.0 - as_) * ab * cb
    with np.errstate(divide="ignore", invalid="ignore"):
        color_out = np.where(alpha_out > 1e-8, premultiplied / alpha_out, 0.0)

    out = np.empty_like(backdrop, dtype=np.float32)
    out[..., :3] = np.clip(color_out, 0.0, 1.0)
    out[..., 3:4] = np.clip(alpha_out, 0.0, 1.0)
    return out


def stacking_order(layers: Iterable[Layer]) -> list[Layer]:
    """Return layers sorted by ascending z-index, declaration order breaking ties."""
    return sorted(layers, key=lambda layer: (layer.z_index, layer.order))


def compose(
    layers: Sequence[Layer],
    width: int,
    height: int,
    *,
    background: Optional[Tuple[float, float, float, float]] = None,
) -> np.ndarray:
    """
    Composite `layers` into one surface of `width` x `height`.

    Layers are drawn in ascending `(z_index, order)`; input order is irrelevant.
    """
    canvas = blank_surface(width, height)
    if background is not None:
        canvas[...] = np.asarray(background, dtype=np.float32)
    for layer in stacking_order(layers):
        surface = np.asarray(layer.surface, dtype=np.float32)
        if surface.shape != canvas.shape:
            raise ValueError(
                f"Layer at z={layer.z_index} has shape {surface.shape}; "
                f"expected {canvas.shape}."
            )
        canvas = blend_onto(
            canvas,
            surface,
            blend_mode=layer.blend_mode,
            opacity=layer.opacity,
        )
    return canvas


def flatten(surface: np.ndarray, background: Tuple[float, float, float] = (0.0, 0.0, 0.0)) -> np.ndarray:
    """Drop alpha by compositing over an opaque background colour (returns HxWx3)."""
    bg = np.asarray(background, dtype=np.float32)
    alpha = surface[..., 3:4]
    return np.clip(surface[..., :3] * alpha + bg * (1.0 - alpha), 0.0, 1.0)


__all__ = [
    "BLEND_MODES",
    "Layer",
    "blank_surface",
    "blend_onto",
    "compose",
    "flatten",
    "stacking_order",
]
