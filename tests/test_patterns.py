from __future__ import annotations

import numpy as np

from layerforge.patterns import (
    BACKGROUND,
    PatternAdapter,
    note_lane,
    parse_cells,
    seed_color,
    seed_hue,
)


def test_parse_cells_expands_repeats() -> None:
    assert parse_cells("c3*3 ~ e3") == ["c3", "c3", "c3", "~", "e3"]
    assert parse_cells("  ") == []


def test_note_lane_alternates_by_octave() -> None:
    assert note_lane("c3") == 0
    assert note_lane("c4") == 11
    assert note_lane("e3") == 4
    assert note_lane("~") is None
    assert note_lane("hello") is None


def test_seed_hue_is_stable() -> None:
    assert seed_hue("alpha") == seed_hue("alpha")
    assert 0 <= seed_hue("alpha") < 360
    assert seed_color("alpha")[3] == round(0.9 * 255)


def test_piano_roll_renders_opaque_background() -> None:
    adapter = PatternAdapter()
    surface = adapter.render("piano_roll", {"pattern": "c3 e3 g3"}, 64, 48, "seed")
    again = adapter.render("piano_roll", {"pattern": "c3 e3 g3"}, 64, 48, "seed")

    assert surface.shape == (48, 64, 4)
    np.testing.assert_array_equal(surface, again)
    np.testing.assert_allclose(surface[..., 3], 1.0)
    # Top-right corner holds no notes, grid lines or legend.
    np.testing.assert_allclose(surface[2, 62, :3], np.asarray(BACKGROUND[:3]) / 255.0, atol=0.02)


def test_preset_defaults_merge_under_params() -> None:
    adapter = PatternAdapter({"bassline": {"pattern": "c3*16"}})
    from_preset = adapter.render("bassline", {}, 32, 24, "s")
    explicit = PatternAdapter().render("bassline", {"pattern": "c3*16"}, 32, 24, "s")
    np.testing.assert_array_equal(from_preset, explicit)
