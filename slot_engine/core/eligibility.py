"""
Eligibility predicates - template eligibility as data

Responsibilities:
- Parse the JSON predicate form used in the template catalog
- Evaluate a parsed predicate against SlotState

Supported predicates (closed set):
    "always" / {} / null                      always eligible
    {"needs_slot": "X"}                       X still needs a question
    {"any_needs_slot": ["X", "Y"]}            at least one needs a question
    {"all_need_slots": ["X", "Y"]}            every one needs a question
    {"confidence_below": ["X", 0.8]}          held confidence of X < 0.8
    {"coverage_at_least": 5}                  at least 5 slots are ready
    {"all_of": [<predicate>, ...]}            conjunction
    {"any_of": [<predicate>, ...]}            disjunction

Design principles:
- No arbitrary code in templates; anything outside the closed set is a
  CatalogError at load time
- Evaluation is pure (reads SlotState, never mutates it)
"""

import logging
from typing import Any, Iterator

from slot_engine.contracts import ALWAYS_ELIGIBLE, EligibilityPredicate, PredicateKind
from slot_engine.errors import CatalogError

logger = logging.getLogger(__name__)


def parse_predicate(raw: Any, context: str = "template") -> EligibilityPredicate:
    """
    Build an EligibilityPredicate from its JSON form.

    Args:
        raw: JSON value (see module docstring)
        context: Label used in error messages (e.g. template id)

    Returns:
        EligibilityPredicate

    Raises:
        CatalogError: If the predicate is malformed or unknown
    """
    if raw is None or raw == {} or raw == PredicateKind.ALWAYS.value:
        return ALWAYS_ELIGIBLE

    if not isinstance(raw, dict) or len(raw) != 1:
        raise CatalogError(
            f"{context}: eligibility must be 'always' or a single-key object, got {raw!r}"
        )

    name, arg = next(iter(raw.items()))
    try:
        kind = PredicateKind(name)
    except ValueError:
        raise CatalogError(f"{context}: unknown eligibility predicate '{name}'")

    if kind == PredicateKind.ALWAYS:
        return ALWAYS_ELIGIBLE

    if kind == PredicateKind.NEEDS_SLOT:
        if not isinstance(arg, str) or not arg:
            raise CatalogError(f"{context}: needs_slot takes a slot name")
        return EligibilityPredicate(kind=kind, slots=(arg,))

    if kind in (PredicateKind.ANY_NEEDS_SLOT, PredicateKind.ALL_NEED_SLOTS):
        if isinstance(arg, str):
            arg = [arg]
        if not isinstance(arg, list) or not arg or not all(isinstance(s, str) for s in arg):
            raise CatalogError(f"{context}: {name} takes a non-empty list of slot names")
        return EligibilityPredicate(kind=kind, slots=tuple(arg))

    if kind == PredicateKind.CONFIDENCE_BELOW:
        if (not isinstance(arg, list) or len(arg) != 2
                or not isinstance(arg[0], str)
                or isinstance(arg[1], bool) or not isinstance(arg[1], (int, float))):
            raise CatalogError(f"{context}: confidence_below takes [slot_name, threshold]")
        threshold = float(arg[1])
        if not 0.0 <= threshold <= 1.0:
            raise CatalogError(f"{context}: confidence_below threshold must be in [0,1]")
        return EligibilityPredicate(kind=kind, slots=(arg[0],), threshold=threshold)

    if kind == PredicateKind.COVERAGE_AT_LEAST:
        if isinstance(arg, bool) or not isinstance(arg, int) or arg < 0:
            raise CatalogError(f"{context}: coverage_at_least takes a non-negative integer")
        return EligibilityPredicate(kind=kind, count=arg)

    # all_of / any_of
    if not isinstance(arg, list) or not arg:
        raise CatalogError(f"{context}: {name} takes a non-empty list of predicates")
    children = tuple(parse_predicate(child, context) for child in arg)
    return EligibilityPredicate(kind=kind, children=children)


def predicate_to_json(predicate: EligibilityPredicate) -> Any:
    """Inverse of parse_predicate"""
    kind = predicate.kind
    if kind == PredicateKind.ALWAYS:
        return PredicateKind.ALWAYS.value
    if kind == PredicateKind.NEEDS_SLOT:
        return {kind.value: predicate.slots[0]}
    if kind in (PredicateKind.ANY_NEEDS_SLOT, PredicateKind.ALL_NEED_SLOTS):
        return {kind.value: list(predicate.slots)}
    if kind == PredicateKind.CONFIDENCE_BELOW:
        return {kind.value: [predicate.slots[0], predicate.threshold]}
    if kind == PredicateKind.COVERAGE_AT_LEAST:
        return {kind.value: predicate.count}
    return {kind.value: [predicate_to_json(child) for child in predicate.children]}


def referenced_slots(predicate: EligibilityPredicate) -> Iterator[str]:
    """Yield every slot name a predicate (and its children) mentions"""
    yield from predicate.slots
    for child in predicate.children:
        yield from referenced_slots(child)


def evaluate_predicate(predicate: EligibilityPredicate, state) -> bool:
    """
    Evaluate a predicate against SlotState.

    Args:
        predicate: Parsed predicate
        state: SlotState (needs needs_question, confidence_of, ready_count)

    Returns:
        bool: True if the template is eligible on this predicate
    """
    kind = predicate.kind

    if kind == PredicateKind.ALWAYS:
        return True

    if kind == PredicateKind.NEEDS_SLOT:
        return state.needs_question(predicate.slots[0])

    if kind == PredicateKind.ANY_NEEDS_SLOT:
        return any(state.needs_question(s) for s in predicate.slots)

    if kind == PredicateKind.ALL_NEED_SLOTS:
        return all(state.needs_question(s) for s in predicate.slots)

    if kind == PredicateKind.CONFIDENCE_BELOW:
        return state.confidence_of(predicate.slots[0]) < predicate.threshold

    if kind == PredicateKind.COVERAGE_AT_LEAST:
        return state.ready_count() >= predicate.count

    if kind == PredicateKind.ALL_OF:
        return all(evaluate_predicate(child, state) for child in predicate.children)

    if kind == PredicateKind.ANY_OF:
        return any(evaluate_predicate(child, state) for child in predicate.children)

    logger.warning(f"Unknown eligibility predicate: {kind}")
    return False
