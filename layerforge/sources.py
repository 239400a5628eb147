"""
Trait source descriptor parsing.

A trait's `source` is an opaque string written by the editors. It is resolved
once, here, into a typed variant; downstream code dispatches on the variant
type and never inspects the raw string again.

Grammar::

    webgl:<presetId>:<percent-encoded JSON params>
    p5:<presetId>:<percent-encoded JSON params>
    strudel:<presetId>:<percent-encoded JSON params>
    sd:{"graphId": ..., "seed": ..., "prompt": ..., "params": {...}}
    sd:<graphId>:<seed>:<percent-encoded JSON params>      (legacy)
    anything else                                           (image reference)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from hashlib import sha256
import json
import logging
from typing import Any, Dict, Mapping, Union
from urllib.parse import quote, unquote

LOG = logging.getLogger("layerforge.sources")

DEFAULT_AI_GRAPH = "portrait_nft"
AI_SEED_RANGE = 1_000_000

SHADER_ALIASES: Dict[str, str] = {
    "crt": "scanlines",
    "perlin-noise": "perlin_noise",
}
SKETCH_ALIASES: Dict[str, str] = {
    "circle-pack": "circle_pack",
    "flow-field": "flow_field",
    "geometric-shapes": "chromatic_aberration",
}
PATTERN_ALIASES: Dict[str, str] = {}
AI_GRAPH_ALIASES: Dict[str, str] = {
    "portrait": "portrait_nft",
}


class DescriptorError(ValueError):
    """Raised internally for malformed descriptors; never escapes `resolve`."""


@dataclass(frozen=True)
class ImageSource:
    src: str
    tag = "image"


@dataclass(frozen=True)
class ShaderSource:
    preset_id: str
    params: Dict[str, Any] = field(default_factory=dict)
    tag = "webgl"


@dataclass(frozen=True)
class SketchSource:
    preset_id: str
    params: Dict[str, Any] = field(default_factory=dict)
    tag = "p5"


@dataclass(frozen=True)
class PatternSource:
    preset_id: str
    params: Dict[str, Any] = field(default_factory=dict)
    tag = "strudel"


@dataclass(frozen=True)
class AIImageSource:
    graph_id: str
    seed: int
    prompt: str = ""
    params: Dict[str, Any] = field(default_factory=dict)
    tag = "sd"


SourceVariant = Union[ImageSource, ShaderSource, SketchSource, PatternSource, AIImageSource]

_PROCEDURAL_TAGS = {
    "webgl": (ShaderSource, SHADER_ALIASES),
    "p5": (SketchSource, SKETCH_ALIASES),
    "strudel": (PatternSource, PATTERN_ALIASES),
}


def modality(descriptor: str) -> str:
    """Return the descriptor's type tag (`image` for plain image references)."""
    head, sep, _ = descriptor.partition(":")
    if sep and (head in _PROCEDURAL_TAGS or head == "sd"):
        return head
    return "image"


def _parse_params(blob: str) -> Dict[str, Any]:
    if not blob:
        return {}
    params = json.loads(unquote(blob))
    if not isinstance(params, dict):
        raise DescriptorError("Descriptor params must be a JSON object.")
    return params


def _fallback_seed(descriptor: str) -> int:
    digest = sha256(descriptor.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % AI_SEED_RANGE


def _coerce_seed(value: Any, descriptor: str) -> int:
    try:
        seed = int(value)
    except (TypeError, ValueError):
        return _fallback_seed(descriptor)
    return seed if seed else _fallback_seed(descriptor)


def _parse_procedural(tag: str, rest: str) -> SourceVariant:
    variant_cls, aliases = _PROCEDURAL_TAGS[tag]
    preset_id, _, blob = rest.partition(":")
    if not preset_id:
        raise DescriptorError(f"'{tag}' descriptor is missing a preset id.")
    return variant_cls(preset_id=aliases.get(preset_id, preset_id), params=_parse_params(blob))


def _parse_ai_image(rest: str, descriptor: str) -> AIImageSource:
    if rest.startswith("{"):
        config = json.loads(rest)
        if not isinstance(config, dict):
            raise DescriptorError("'sd' descriptor JSON must be an object.")
        graph_id = config.get("graphId")
        seed = config.get("seed")
        prompt = config.get("prompt") or ""
        params = config.get("params") or {}
    else:
        graph_id, _, remainder = rest.partition(":")
        seed, _, blob = remainder.partition(":")
        legacy = _parse_params(blob)
        prompt = legacy.get("customPrompt") or ""
        params = {}

    if not isinstance(params, dict):
        raise DescriptorError("'sd' params must be a JSON object.")
    graph_id = str(graph_id) if graph_id else DEFAULT_AI_GRAPH
    return AIImageSource(
        graph_id=AI_GRAPH_ALIASES.get(graph_id, graph_id),
        seed=_coerce_seed(seed, descriptor),
        prompt=str(prompt),
        params=params,
    )


def resolve(descriptor: str) -> SourceVariant:
    """
    Parse `descriptor` into a source variant.

    Malformed descriptors resolve to an empty `ImageSource` so that a single
    corrupt trait cannot block a collection run.
    """
    if not isinstance(descriptor, str):
        LOG.warning("Trait source is not a string (%r); using an empty image.", type(descriptor))
        return ImageSource("")
    tag = modality(descriptor)
    if tag == "image":
        return ImageSource(descriptor)

    rest = descriptor[len(tag) + 1 :]
    try:
        if tag == "sd":
            return _parse_ai_image(rest, descriptor)
        return _parse_procedural(tag, rest)
    except (DescriptorError, ValueError, TypeError) as exc:
        LOG.warning("Malformed trait source '%s': %s", descriptor[:120], exc)
        return ImageSource("")


def to_descriptor(variant: SourceVariant) -> str:
    """Encode a variant in its canonical descriptor form."""
    if isinstance(variant, ImageSource):
        return variant.src
    if isinstance(variant, AIImageSource):
        payload = {
            "graphId": variant.graph_id,
            "seed": variant.seed,
            "prompt": variant.prompt,
            "params": variant.params,
        }
        return "sd:" + json.dumps(payload, sort_keys=True, separators=(",", ":"))
    blob = quote(json.dumps(variant.params, sort_keys=True, separators=(",", ":")), safe="")
    return f"{variant.tag}:{variant.preset_id}:{blob}"


__all__ = [
    "AIImageSource",
    "ImageSource",
    "PatternSource",
    "ShaderSource",
    "SketchSource",
    "SourceVariant",
    "modality",
    "resolve",
    "to_descriptor",
]
