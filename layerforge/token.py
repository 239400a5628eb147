"""
Single-token generation.

`generate_token` covers one edition end to end: seeded selection, rule
repair, per-class rendering, compositing, post effects, PNG encoding and the
metadata document written next to the image.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .compositor import Layer, compose
from .dispatcher import RenderDispatcher, RenderError, RenderRequest
from .postfx import PostFXProcessor
from .project_schema import ProjectConfig, Rule, Trait, TraitClass
from .rules import prune_dangling_rules, repair
from .selector import encode_dna, select_weighted, selection_attributes
from .sources import modality
from .surface import encode_png

LOG = logging.getLogger("layerforge.token")

RENDERED_MODES = ("static", "hybrid")
DESCRIBED_MODES = ("procedural", "hybrid")


def token_seed_for(base_seed: str, edition: int) -> str:
    return f"{base_seed}-{edition}"


class TokenFailure(RuntimeError):
    """A token could not be produced (a required trait failed to render)."""

    def __init__(self, edition: int, seed: str, trait_id: str, message: str) -> None:
        super().__init__(f"Edition {edition} (seed '{seed}') failed on trait '{trait_id}': {message}")
        self.edition = edition
        self.seed = seed
        self.trait_id = trait_id
        self.reason = message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "edition": self.edition,
            "seed": self.seed,
            "trait_id": self.trait_id,
            "message": self.reason,
        }


@dataclass(frozen=True)
class GenerationRecord:
    edition: int
    seed: str
    selection: Mapping[str, Trait]
    attributes: Tuple[Tuple[str, str], ...]
    dna: str
    composite_image: Optional[bytes]
    violations_repaired: int
    metadata: Dict[str, Any] = field(default_factory=dict)


def build_metadata(
    project: ProjectConfig,
    *,
    edition: int,
    seed: str,
    attributes: Sequence[Tuple[str, str]],
    dna: str,
    has_image: bool,
    violations_repaired: int,
    timestamp: int,
    traits: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    metadata: Dict[str, Any] = {
        "name": f"{project.name} #{edition}",
        "description": project.export.description,
        "image": f"images/{edition}.png" if has_image else "procedural",
        "edition": edition,
        "attributes": [{"trait_type": trait_type, "value": value} for trait_type, value in attributes],
        "dna": dna,
        "seed": seed,
        "compiler": project.export.compiler,
        "date": timestamp,
        "violations_repaired": violations_repaired,
    }
    if traits:
        metadata["traits"] = traits
    return metadata


def export_mode_for(project: ProjectConfig, trait_class: TraitClass, trait: Trait) -> str:
    """Export mode for one selected trait; raw images have no descriptor form and are always static."""
    if modality(trait.source) == "image":
        return "static"
    return project.export.mode_for(trait_class.id)


def _select_and_repair(
    project: ProjectConfig, seed: str, rules: Sequence[Rule]
) -> Tuple[Dict[str, Trait], int]:
    selection = select_weighted(seed, project.classes)
    ordered = [selection[cls.id] for cls in project.classes if cls.id in selection]
    result = repair(ordered, rules)
    kept = {trait.id for trait in result.traits}
    repaired = {class_id: trait for class_id, trait in selection.items() if trait.id in kept}
    if result.remaining:
        LOG.warning(
            "Seed '%s' still violates %d rule(s) after auto-fix: %s",
            seed,
            len(result.remaining),
            ", ".join(v.rule_id for v in result.remaining),
        )
    return repaired, result.violations_repaired


def _render_surfaces(
    project: ProjectConfig,
    edition: int,
    seed: str,
    rendered: Sequence[Tuple[int, TraitClass, Trait]],
    dispatcher: RenderDispatcher,
) -> List[Layer]:
    width, height = project.export.width, project.export.height
    requests = [RenderRequest(trait, width, height, seed) for _, _, trait in rendered]
    outcomes = dispatcher.render_layers(requests, return_exceptions=True)

    layers: List[Layer] = []
    for (order, trait_class, trait), outcome in zip(rendered, outcomes):
        if isinstance(outcome, RenderError):
            if project.export.on_render_error == "fail":
                raise TokenFailure(edition, seed, outcome.trait_id, outcome.reason) from outcome
            LOG.warning("Edition %d: substituting a blank layer for %s", edition, outcome)
            outcome = np.zeros((height, width, 4), dtype=np.float32)
        layers.append(
            Layer(
                surface=outcome,
                blend_mode=trait_class.blend_mode,
                opacity=trait_class.opacity,
                z_index=trait_class.z_index,
                order=order,
            )
        )
    return layers


def generate_token(
    project: ProjectConfig,
    edition: int,
    *,
    dispatcher: RenderDispatcher,
    timestamp: int,
    rules: Optional[Sequence[Rule]] = None,
    seed: Optional[str] = None,
) -> GenerationRecord:
    """
    Generate edition `edition` of `project`.

    `rules` defaults to the project's rules with dangling references pruned;
    `seed` overrides the derived `<project seed>-<edition>` token seed (used
    for previews). Raises `TokenFailure` when a trait fails to render under
    the `fail` error policy.
    """
    if edition < 1:
        raise ValueError("edition must be >= 1.")
    token_seed = seed if seed is not None else token_seed_for(project.seed, edition)
    if rules is None:
        rules = prune_dangling_rules(project.rules, project.trait_index())

    selection, violations_repaired = _select_and_repair(project, token_seed, rules)

    rendered: List[Tuple[int, TraitClass, Trait]] = []
    described: List[Dict[str, Any]] = []
    for order, trait_class in enumerate(project.classes):
        trait = selection.get(trait_class.id)
        if trait is None:
            continue
        mode = export_mode_for(project, trait_class, trait)
        if mode in RENDERED_MODES:
            rendered.append((order, trait_class, trait))
        if mode in DESCRIBED_MODES:
            described.append(
                {
                    "class_id": trait_class.id,
                    "trait_id": trait.id,
                    "mode": mode,
                    "source": trait.source,
                }
            )

    image_bytes: Optional[bytes] = None
    if rendered:
        width, height = project.export.width, project.export.height
        layers = _render_surfaces(project, edition, token_seed, rendered, dispatcher)
        composite = compose(layers, width, height)
        if project.fx:
            processor = PostFXProcessor(project.fx, (width, height), token_seed)
            composite = processor.process(composite)
        image_bytes = encode_png(composite)

    attributes = tuple(selection_attributes(selection, project.classes))
    dna = encode_dna(selection, project.classes)
    metadata = build_metadata(
        project,
        edition=edition,
        seed=token_seed,
        attributes=attributes,
        dna=dna,
        has_image=image_bytes is not None,
        violations_repaired=violations_repaired,
        timestamp=timestamp,
        traits=described,
    )
    LOG.debug("Generated edition %d (seed=%s dna=%s)", edition, token_seed, dna)
    return GenerationRecord(
        edition=edition,
        seed=token_seed,
        selection=selection,
        attributes=attributes,
        dna=dna,
        composite_image=image_bytes,
        violations_repaired=violations_repaired,
        metadata=metadata,
    )


__all__ = [
    "GenerationRecord",
    "TokenFailure",
    "build_metadata",
    "export_mode_for",
    "generate_token",
    "token_seed_for",
]
