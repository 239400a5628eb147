from __future__ import annotations

import numpy as np
import pytest

from layerforge.sketches import SKETCH_PRESETS, SketchAdapter


@pytest.mark.parametrize("preset_id", sorted(SKETCH_PRESETS))
def test_presets_are_deterministic(preset_id: str) -> None:
    adapter = SketchAdapter()
    params = {"count": 20, "attempts": 60}
    first = adapter.render(preset_id, params, 48, 32, "edition-1")
    second = adapter.render(preset_id, params, 48, 32, "edition-1")

    assert first.shape == (32, 48, 4)
    assert first.dtype == np.float32
    np.testing.assert_array_equal(first, second)


def test_background_colour_param() -> None:
    surface = SketchAdapter().render("particles", {"count": 0, "bgColor": "#0000ff"}, 8, 8, "s")
    np.testing.assert_allclose(surface[4, 4], [0, 0, 1, 1])


def test_transparent_default_background() -> None:
    surface = SketchAdapter().render("chromatic_aberration", {"count": 0}, 8, 8, "s")
    assert not surface[..., 3].any()


def test_circle_pack_varies_with_seed() -> None:
    adapter = SketchAdapter()
    a = adapter.render("circle_pack", {"attempts": 50}, 64, 64, "a")
    b = adapter.render("circle_pack", {"attempts": 50}, 64, 64, "b")
    assert not np.array_equal(a, b)


def test_unknown_preset_raises() -> None:
    with pytest.raises(ValueError, match="Unknown sketch preset"):
        SketchAdapter().render("spirograph", {}, 8, 8, "s")
