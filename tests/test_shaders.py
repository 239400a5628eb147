from __future__ import annotations

import numpy as np
import pytest

from layerforge.shaders import SHADER_PRESETS, ShaderAdapter


@pytest.mark.parametrize("preset_id", sorted(SHADER_PRESETS))
def test_presets_render_deterministic_surfaces(preset_id: str) -> None:
    adapter = ShaderAdapter()
    first = adapter.render(preset_id, {}, 24, 16, "seed-a")
    second = adapter.render(preset_id, {}, 24, 16, "seed-a")

    assert first.shape == (16, 24, 4)
    assert first.dtype == np.float32
    assert first.min() >= 0.0 and first.max() <= 1.0
    np.testing.assert_array_equal(first, second)


def test_seed_changes_noise_output() -> None:
    adapter = ShaderAdapter()
    a = adapter.render("perlin_noise", {"uScale": 3}, 32, 32, "seed-a")
    b = adapter.render("perlin_noise", {"uScale": 3}, 32, 32, "seed-b")
    assert not np.array_equal(a, b)


def test_scanlines_darken_alternate_bands() -> None:
    surface = ShaderAdapter().render("scanlines", {"uLineHeight": 2, "uIntensity": 0.4}, 4, 8, "s")
    alpha = surface[:, 0, 3]
    np.testing.assert_allclose(alpha, [0, 0, 0.4, 0.4, 0, 0, 0.4, 0.4], atol=1e-6)
    assert not surface[..., :3].any()


def test_grid_uses_colour_param() -> None:
    surface = ShaderAdapter().render("grid", {"uCellSize": 4, "uColor": "#ff0000", "uOpacity": 1}, 8, 8, "s")
    np.testing.assert_allclose(surface[0, 0], [1, 0, 0, 1])
    assert surface[1, 1, 3] == 0.0


def test_unknown_preset_raises() -> None:
    with pytest.raises(ValueError, match="Unknown shader preset"):
        ShaderAdapter().render("plasma", {}, 8, 8, "s")
