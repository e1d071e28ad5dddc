"""
Shared fixtures: a small interview schema and catalog used across tests

Slots:
    Problem       scalar, required, min 0.8
    Process       scalar, required, depends on Problem
    Stakeholders  list, required, no_inference, at least 2 items
    Requirements  list, required, explicit_only
    Risks         list, optional
    ROI           structured, required, high stakes
"""

from pathlib import Path

import pytest

from slot_engine.contracts import Question
from slot_engine.core.schema import build_catalog, build_schema
from slot_engine.core.slot_state import SlotState

DATA_DIR = Path(__file__).resolve().parent.parent / "data"

SMALL_SLOTS = [
    {
        "name": "Problem",
        "kind": "scalar",
        "required": True,
        "min_confidence": 0.8,
        "description": "Core problem being solved",
        "fallback_prompt": "What problem are you trying to solve?",
    },
    {
        "name": "Process",
        "kind": "scalar",
        "required": True,
        "min_confidence": 0.7,
        "depends_on": ["Problem"],
        "description": "How the work is done today",
        "fallback_prompt": "How is this handled today?",
    },
    {
        "name": "Stakeholders",
        "kind": "list",
        "required": True,
        "min_confidence": 0.7,
        "min_items": 2,
        "inference_policy": "no_inference",
        "description": "People and teams affected",
        "fallback_prompt": "Who is affected by this?",
    },
    {
        "name": "Requirements",
        "kind": "list",
        "required": True,
        "min_confidence": 0.7,
        "inference_policy": "explicit_only",
        "description": "Capabilities a solution needs",
    },
    {
        "name": "Risks",
        "kind": "list",
        "required": False,
        "min_confidence": 0.7,
        "description": "What could go wrong",
    },
    {
        "name": "ROI",
        "kind": "structured",
        "required": True,
        "min_confidence": 0.6,
        "high_stakes": True,
        "properties": ["hours_saved", "cost_reduction_pct"],
        "description": "Quantified return on investment",
    },
]

SMALL_TEMPLATES = [
    {
        "id": "problem",
        "prompt": "What problem are you solving?",
        "target_slots": ["Problem"],
        "priority": 10,
        "eligibility": {"needs_slot": "Problem"},
    },
    {
        "id": "process",
        "prompt": "How do you handle it today?",
        "target_slots": ["Process"],
        "dependency_slots": ["Problem"],
        "priority": 8,
        "eligibility": {"needs_slot": "Process"},
    },
    {
        "id": "stakeholders",
        "prompt": "Who is affected?",
        "target_slots": ["Stakeholders"],
        "priority": 5,
        "eligibility": {"needs_slot": "Stakeholders"},
    },
    {
        "id": "wrap_up",
        "prompt": "So far: {summary}. Anything else?",
        "target_slots": ["Risks"],
        "priority": 1,
        "closing": True,
        "eligibility": {"all_of": [{"coverage_at_least": 1}, {"needs_slot": "Risks"}]},
    },
]


@pytest.fixture
def schema():
    return build_schema({"version": "1", "slots": SMALL_SLOTS})


@pytest.fixture
def catalog(schema):
    return build_catalog({"templates": SMALL_TEMPLATES}, schema)


@pytest.fixture
def state(schema):
    return SlotState(schema, "test-session")


def ask(state, template_id, answer, target_slots=("Problem",), text=None):
    """Record one asked question and its answer"""
    question = Question(
        template_id=template_id,
        text=text or f"Question {template_id}?",
        target_slots=tuple(target_slots),
        explicit_slots=tuple(target_slots),
    )
    state.record_question_asked(question)
    return state.record_turn(answer)
