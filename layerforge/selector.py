"""Seeded weighted trait selection."""

from __future__ import annotations

from hashlib import sha256
import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .project_schema import Trait, TraitClass

LOG = logging.getLogger("layerforge.selector")

SelectionResult = Dict[str, Trait]


def seed_to_int(seed: str) -> int:
    """Map a seed string to a 256-bit integer (stable across processes and runs)."""
    return int.from_bytes(sha256(seed.encode("utf-8")).digest(), "big")


def seeded_stream(seed: str) -> np.random.Generator:
    """Return a fresh PRNG stream that depends only on `seed`."""
    return np.random.default_rng(seed_to_int(seed))


def pick_weighted(traits: Sequence[Trait], draw: float) -> Optional[Trait]:
    """
    Cumulative-weight linear scan over `traits` for a uniform `draw` in [0, 1).

    Declaration order is the tie-break. Zero-weight traits are never chosen.
    """
    total = float(sum(trait.weight for trait in traits))
    if total <= 0:
        return None
    remainder = draw * total
    chosen: Optional[Trait] = None
    for trait in traits:
        if trait.weight <= 0:
            continue
        remainder -= trait.weight
        chosen = trait
        if remainder <= 0:
            return trait
    # Float rounding can leave a sliver of remainder; fall back to the last candidate.
    return chosen


def select_weighted(seed: str, classes: Sequence[TraitClass]) -> SelectionResult:
    """
    Select one trait per class from a single stream seeded by `seed`.

    Classes are visited in declaration order and each contributing class
    consumes exactly one draw, so appending classes never changes the outcome
    of earlier ones. Empty and zero-weight classes are skipped without a draw.
    """
    rng = seeded_stream(seed)
    selection: SelectionResult = {}
    for trait_class in classes:
        if not trait_class.traits or trait_class.total_weight <= 0:
            LOG.debug("Skipping class '%s' (no selectable traits).", trait_class.id)
            continue
        draw = float(rng.random())
        trait = pick_weighted(trait_class.traits, draw)
        if trait is not None:
            selection[trait_class.id] = trait
    return selection


def selection_attributes(
    selection: Mapping[str, Trait], classes: Sequence[TraitClass]
) -> List[Tuple[str, str]]:
    """(trait_type, value) pairs in class declaration order."""
    return [
        (trait_class.name, selection[trait_class.id].name)
        for trait_class in classes
        if trait_class.id in selection
    ]


def encode_dna(selection: Mapping[str, Trait], classes: Sequence[TraitClass]) -> str:
    """Stable `classId:traitId|...` encoding in class declaration order."""
    return "|".join(
        f"{trait_class.id}:{selection[trait_class.id].id}"
        for trait_class in classes
        if trait_class.id in selection
    )


__all__ = [
    "SelectionResult",
    "encode_dna",
    "pick_weighted",
    "seed_to_int",
    "seeded_stream",
    "select_weighted",
    "selection_attributes",
]
