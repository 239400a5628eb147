"""
Trait rule validation and bounded auto-repair.

Rules reference trait ids. `validate` reports every violated rule in
declaration order; `auto_fix` repeatedly removes one trait for the first
violation until the selection validates or the iteration bound is reached.
The repair is a heuristic, not a solver: cyclic or contradictory rule sets
can leave violations behind.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Iterable, List, Sequence

from .project_schema import Rule, Trait

LOG = logging.getLogger("layerforge.rules")

MAX_FIX_ITERATIONS = 10


@dataclass(frozen=True)
class Violation:
    rule_id: str
    type: str
    condition: str
    target: str
    message: str


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    violations: List[Violation] = field(default_factory=list)


@dataclass(frozen=True)
class RepairResult:
    traits: List[Trait]
    removed: List[Trait]
    remaining: List[Violation]

    @property
    def violations_repaired(self) -> int:
        return len(self.removed)


def _trait_name(traits: Sequence[Trait], trait_id: str) -> str:
    for trait in traits:
        if trait.id == trait_id:
            return trait.name
    return trait_id


def _violation_message(rule: Rule, traits: Sequence[Trait]) -> str:
    condition = _trait_name(traits, rule.condition)
    target = _trait_name(traits, rule.target)
    if rule.type == "require":
        return f'Trait "{condition}" requires "{target}" but it\'s missing'
    if rule.type == "exclude":
        return f'Trait "{condition}" excludes "{target}"'
    return f'Traits "{condition}" and "{target}" are mutually exclusive'


def validate(selection: Sequence[Trait], rules: Sequence[Rule]) -> ValidationResult:
    """Check `selection` against every rule, in rule declaration order."""
    present = {trait.id for trait in selection}
    violations: List[Violation] = []
    for rule in rules:
        has_condition = rule.condition in present
        has_target = rule.target in present
        if rule.type == "require":
            violated = has_condition and not has_target
        elif rule.type in ("exclude", "mutex"):
            violated = has_condition and has_target
        else:
            LOG.warning("Ignoring rule '%s' with unknown type '%s'.", rule.id, rule.type)
            violated = False
        if violated:
            violations.append(
                Violation(
                    rule_id=rule.id,
                    type=rule.type,
                    condition=rule.condition,
                    target=rule.target,
                    message=_violation_message(rule, selection),
                )
            )
    return ValidationResult(valid=not violations, violations=violations)


def _removal_for(violation: Violation) -> str:
    # A require violation means the target is absent; dropping the condition
    # is the only single removal that satisfies the rule.
    if violation.type == "require":
        return violation.condition
    return violation.target


def auto_fix(selection: Sequence[Trait], rules: Sequence[Rule]) -> List[Trait]:
    """Return a repaired copy of `selection` (best effort, bounded)."""
    return repair(selection, rules).traits


def repair(
    selection: Sequence[Trait],
    rules: Sequence[Rule],
    *,
    max_iterations: int = MAX_FIX_ITERATIONS,
) -> RepairResult:
    """
    Remove traits until `selection` satisfies `rules` or `max_iterations` runs out.

    Each pass fixes the first violation only. `exclude` and `mutex` drop the
    target trait. A `require` violation drops the condition trait, never the
    (missing) target, so the repaired selection validates.
    Violations still present afterwards are reported in `remaining`.
    """
    fixed = list(selection)
    removed: List[Trait] = []
    result = validate(fixed, rules)
    for _ in range(max_iterations):
        if result.valid:
            break
        violation = result.violations[0]
        drop_id = _removal_for(violation)
        kept = [trait for trait in fixed if trait.id != drop_id]
        removed.extend(trait for trait in fixed if trait.id == drop_id)
        LOG.debug("Rule '%s' violated; removing trait '%s'.", violation.rule_id, drop_id)
        fixed = kept
        result = validate(fixed, rules)
    if not result.valid:
        LOG.warning(
            "Auto-fix stopped after %d iterations with %d violation(s) remaining.",
            max_iterations,
            len(result.violations),
        )
    return RepairResult(traits=fixed, removed=removed, remaining=list(result.violations))


def can_add_trait(
    trait: Trait, current: Sequence[Trait], rules: Sequence[Rule]
) -> ValidationResult:
    """Validate `current` plus `trait` without mutating either."""
    return validate([*current, trait], rules)


def rules_for_trait(trait_id: str, rules: Iterable[Rule]) -> List[Rule]:
    return [rule for rule in rules if trait_id in (rule.condition, rule.target)]


def prune_dangling_rules(rules: Iterable[Rule], known_trait_ids: Iterable[str]) -> List[Rule]:
    """Drop rules referencing traits that no longer exist (they can never fire usefully)."""
    known = set(known_trait_ids)
    kept: List[Rule] = []
    for rule in rules:
        if rule.condition in known and rule.target in known:
            kept.append(rule)
        else:
            LOG.debug("Dropping rule '%s' referencing an unknown trait.", rule.id)
    return kept


__all__ = [
    "MAX_FIX_ITERATIONS",
    "RepairResult",
    "ValidationResult",
    "Violation",
    "auto_fix",
    "can_add_trait",
    "prune_dangling_rules",
    "repair",
    "rules_for_trait",
    "validate",
]
