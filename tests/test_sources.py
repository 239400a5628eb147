from __future__ import annotations

import json
from urllib.parse import quote

import pytest

from layerforge.sources import (
    AIImageSource,
    ImageSource,
    PatternSource,
    ShaderSource,
    SketchSource,
    modality,
    resolve,
    to_descriptor,
)


def _encode(params: dict) -> str:
    return quote(json.dumps(params), safe="")


def test_resolve_procedural_descriptors_with_aliases() -> None:
    shader = resolve(f"webgl:perlin-noise:{_encode({'uScale': 3})}")
    assert shader == ShaderSource(preset_id="perlin_noise", params={"uScale": 3})

    sketch = resolve("p5:circle-pack:")
    assert sketch == SketchSource(preset_id="circle_pack", params={})

    assert resolve("webgl:crt").preset_id == "scanlines"
    assert resolve("p5:geometric-shapes:").preset_id == "chromatic_aberration"

    pattern = resolve(f"strudel:piano_roll:{_encode({'pattern': 'c3 e3'})}")
    assert isinstance(pattern, PatternSource)
    assert pattern.params == {"pattern": "c3 e3"}


def test_params_segment_may_contain_colons() -> None:
    sketch = resolve('p5:ribbon_text:{"text": "a:b:c"}')
    assert sketch == SketchSource(preset_id="ribbon_text", params={"text": "a:b:c"})


def test_resolve_canonical_ai_descriptor() -> None:
    descriptor = "sd:" + json.dumps(
        {"graphId": "portrait", "seed": 42, "prompt": "a fox", "params": {"style": "ink"}}
    )
    source = resolve(descriptor)
    assert source == AIImageSource(graph_id="portrait_nft", seed=42, prompt="a fox", params={"style": "ink"})


def test_resolve_legacy_ai_descriptor() -> None:
    source = resolve(f"sd:abstract_bg:1234:{_encode({'customPrompt': 'neon'})}")
    assert source == AIImageSource(graph_id="abstract_bg", seed=1234, prompt="neon", params={})


def test_ai_descriptor_defaults_are_deterministic() -> None:
    descriptor = 'sd:{"prompt": "no seed"}'
    first = resolve(descriptor)
    second = resolve(descriptor)
    assert first.graph_id == "portrait_nft"
    assert first.seed == second.seed
    assert 0 <= first.seed < 1_000_000

    legacy = resolve("sd:abstract_bg:not-a-number:")
    assert 0 <= legacy.seed < 1_000_000
    assert legacy.seed == resolve("sd:abstract_bg:not-a-number:").seed


@pytest.mark.parametrize(
    "descriptor",
    [
        "webgl:noise:%7Bbroken",
        "p5::",
        "sd:{not json",
        "strudel:roll:%5B1%2C2%5D",
    ],
)
def test_malformed_descriptors_resolve_to_empty_image(descriptor: str, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level("WARNING", logger="layerforge.sources"):
        assert resolve(descriptor) == ImageSource("")
    assert "Malformed trait source" in caplog.text


def test_plain_references_are_images() -> None:
    assert resolve("assets/hat.png") == ImageSource("assets/hat.png")
    assert resolve("https://example.com/x.png") == ImageSource("https://example.com/x.png")
    assert resolve("data:image/png;base64,AAAA") == ImageSource("data:image/png;base64,AAAA")
    assert modality("https://example.com/x.png") == "image"
    assert modality("webgl:grid:") == "webgl"


def test_to_descriptor_produces_resolvable_canonical_form() -> None:
    source = ShaderSource(preset_id="voronoi", params={"uScale": 5, "uColor": "#ff00ff"})
    assert resolve(to_descriptor(source)) == source

    ai = AIImageSource(graph_id="texture_overlay", seed=7, prompt="moss", params={})
    assert resolve(to_descriptor(ai)) == ai
