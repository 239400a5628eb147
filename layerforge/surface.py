"""
Raster surface helpers: conversion between RGBA float32 buffers, Pillow
images, and encoded PNG bytes.
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
from pathlib import Path
from typing import Any, Optional, Sequence

import httpx
import imageio.v3 as imageio
import numpy as np
from PIL import Image

LOG = logging.getLogger("layerforge.surface")

URL_PREFIXES = ("http://", "https://")


class ImageDecodeError(ValueError):
    """Raised when an embedded or linked image cannot be decoded."""


def to_uint8(surface: np.ndarray) -> np.ndarray:
    return np.clip(surface * 255.0 + 0.5, 0, 255).astype(np.uint8)


def from_pil(image: Image.Image) -> np.ndarray:
    converted = image.convert("RGBA")
    return np.asarray(converted, dtype=np.float32) / 255.0


def to_pil(surface: np.ndarray) -> Image.Image:
    return Image.fromarray(to_uint8(surface))


def encode_png(surface: np.ndarray) -> bytes:
    """Encode an RGBA or RGB float surface as PNG bytes."""
    if surface.ndim != 3 or surface.shape[2] not in (3, 4):
        raise ValueError("Surface must have shape (height, width, 3|4).")
    return imageio.imwrite("<bytes>", to_uint8(surface), extension=".png")


def decode_image_bytes(data: bytes) -> np.ndarray:
    try:
        with Image.open(io.BytesIO(data)) as image:
            return from_pil(image)
    except (OSError, ValueError) as exc:
        raise ImageDecodeError(f"Unable to decode image data: {exc}") from exc


def fetch_image_bytes(
    url: str,
    *,
    timeout: float = 30.0,
    transport: Optional[httpx.BaseTransport] = None,
) -> bytes:
    """Download a linked image. Transport errors and 4xx/5xx responses raise `ImageDecodeError`."""
    try:
        with httpx.Client(timeout=timeout, transport=transport, follow_redirects=True) as client:
            response = client.get(url)
    except httpx.HTTPError as exc:
        raise ImageDecodeError(f"Image download failed for {url}: {exc}") from exc
    if response.status_code >= 400:
        LOG.error("Image host returned %d for %s", response.status_code, url)
        raise ImageDecodeError(f"Image download failed with status {response.status_code}: {url}")
    return response.content


def load_image_reference(
    reference: str,
    *,
    assets_root: Optional[Path] = None,
    timeout: float = 30.0,
    transport: Optional[httpx.BaseTransport] = None,
) -> np.ndarray:
    """
    Decode an image reference: a data URI, an http(s) URL, a file path or a
    bare base64 payload.

    Relative paths resolve against `assets_root`. `timeout` and `transport`
    apply to URL downloads only.
    """
    if reference.startswith("data:"):
        _, _, payload = reference.partition(",")
        return decode_image_bytes(_b64decode(payload))
    if reference.startswith(URL_PREFIXES):
        return decode_image_bytes(fetch_image_bytes(reference, timeout=timeout, transport=transport))

    path = Path(reference)
    if not path.is_absolute() and assets_root is not None:
        path = assets_root / path
    try:
        is_file = path.is_file()
    except (OSError, ValueError):
        is_file = False
    if is_file:
        return decode_image_bytes(path.read_bytes())

    try:
        raw = _b64decode(reference)
    except ImageDecodeError:
        raise ImageDecodeError(f"Image reference not found: {reference[:80]}") from None
    return decode_image_bytes(raw)


def _b64decode(payload: str) -> bytes:
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ImageDecodeError(f"Invalid base64 image payload: {exc}") from exc


def place_unscaled(image: np.ndarray, width: int, height: int) -> np.ndarray:
    """Draw `image` at the origin of a transparent canvas, cropping any overflow."""
    canvas = np.zeros((int(height), int(width), 4), dtype=np.float32)
    h = min(int(height), image.shape[0])
    w = min(int(width), image.shape[1])
    canvas[:h, :w] = image[:h, :w]
    return canvas


def parse_color(value: Any, default: Sequence[float] = (1.0, 1.0, 1.0)) -> np.ndarray:
    """
    Parse a colour parameter into an RGB float32 triple in [0, 1].

    Accepts `#rgb` / `#rrggbb` hex strings and 3/4-element sequences (either
    0-1 floats or 0-255 integers). Anything else yields `default`.
    """
    if isinstance(value, str):
        text = value.strip().lstrip("#")
        if len(text) == 3:
            text = "".join(ch * 2 for ch in text)
        if len(text) in (6, 8):
            try:
                channels = [int(text[i : i + 2], 16) / 255.0 for i in (0, 2, 4)]
            except ValueError:
                LOG.debug("Unparseable colour '%s'; using default.", value)
            else:
                return np.asarray(channels, dtype=np.float32)
    elif isinstance(value, (list, tuple)) and len(value) in (3, 4):
        try:
            channels = [float(v) for v in value[:3]]
        except (TypeError, ValueError):
            channels = []
        if channels:
            if max(channels) > 1.0:
                channels = [c / 255.0 for c in channels]
            return np.clip(np.asarray(channels, dtype=np.float32), 0.0, 1.0)
    return np.asarray(default, dtype=np.float32)


def rgba(rgb: np.ndarray, alpha: np.ndarray) -> np.ndarray:
    """Stack an (H, W, 3) colour plane and (H, W) alpha plane into a surface."""
    surface = np.empty(alpha.shape + (4,), dtype=np.float32)
    surface[..., :3] = np.broadcast_to(rgb, alpha.shape + (3,))
    surface[..., 3] = alpha
    return np.clip(surface, 0.0, 1.0)


__all__ = [
    "ImageDecodeError",
    "decode_image_bytes",
    "encode_png",
    "fetch_image_bytes",
    "from_pil",
    "load_image_reference",
    "parse_color",
    "place_unscaled",
    "rgba",
    "to_pil",
    "to_uint8",
]
