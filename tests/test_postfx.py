from __future__ import annotations

import numpy as np
import pytest

from layerforge.postfx import PostFXProcessor
from layerforge.project_schema import FXConfig


def _make_surface(size: int = 32) -> np.ndarray:
    coords = np.linspace(0.0, 1.0, size * size * 3, dtype=np.float32)
    surface = np.ones((size, size, 4), dtype=np.float32)
    surface[..., :3] = coords.reshape(size, size, 3)
    return surface


def test_postfx_processor_deterministic_seed() -> None:
    effects = [
        FXConfig(id="crt", type="crt", params={"intensity": 0.3}),
        FXConfig(id="dots", type="halftone", params={"dotSize": 4, "intensity": 0.5}),
        FXConfig(id="glitch", type="glitch", params={"intensity": 0.8, "frequency": 0.5}),
    ]
    surface = _make_surface()

    out_a = PostFXProcessor(effects, (32, 32), "token-1").process(surface)
    out_b = PostFXProcessor(effects, (32, 32), "token-1").process(surface)

    assert out_a.shape == surface.shape
    assert np.allclose(out_a, out_b)
    assert np.all(out_a >= 0.0)
    assert np.all(out_a <= 1.0)


def test_postfx_rejects_invalid_shape() -> None:
    processor = PostFXProcessor([], resolution=(16, 16), seed="s")
    with pytest.raises(ValueError):
        processor.process(np.zeros((16, 16, 3), dtype=np.float32))


def test_crt_darkens_alternate_rows() -> None:
    surface = np.ones((4, 2, 4), dtype=np.float32)
    processor = PostFXProcessor([FXConfig(id="crt", type="crt", params={"intensity": 0.25})], (2, 4), "s")

    out = processor.process(surface)

    np.testing.assert_allclose(out[:, 0, 0], [0.75, 1.0, 0.75, 1.0])
    np.testing.assert_allclose(out[..., 3], 1.0)
    assert processor.applied == ["crt"]
    assert surface.min() == 1.0


def test_disabled_and_unknown_effects_are_skipped(caplog: pytest.LogCaptureFixture) -> None:
    effects = [
        FXConfig(id="off", type="crt", enabled=False),
        FXConfig(id="odd", type="bloom"),
    ]
    surface = _make_surface(8)
    processor = PostFXProcessor(effects, (8, 8), "s")

    with caplog.at_level("WARNING", logger="layerforge.postfx"):
        out = processor.process(surface)

    np.testing.assert_allclose(out, surface)
    assert processor.applied == []
    assert "unknown effect type 'bloom'" in caplog.text
