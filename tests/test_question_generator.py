"""
Test FallbackQuestionGenerator - model questions, stop sentinel and the
deterministic fallback
"""

import pytest

from conftest import ask
from slot_engine.contracts import GENERATED_TEMPLATE_ID, Question
from slot_engine.core.question_generator import (
    GENERIC_QUESTION,
    SOURCE_FALLBACK,
    FallbackQuestionGenerator,
)
from slot_engine.core.schema import build_schema
from slot_engine.core.slot_state import SlotState
from slot_engine.errors import SchemaViolation


class MockTextClient:
    """Mock client for free-text generation"""

    def __init__(self, response="", error=None):
        self.response = response
        self.error = error
        self.call_count = 0
        self.last_prompt = None

    def generate(self, prompt, max_tokens, temperature, timeout=None):
        self.call_count += 1
        self.last_prompt = prompt
        if self.error is not None:
            raise self.error
        return self.response


# ========== Model path ==========

def test_model_question_targets_requested_slots(state):
    client = MockTextClient('"Which teams feel this the most?"\nI asked because...')
    generator = FallbackQuestionGenerator(client)

    question = generator.generate(state, ["Stakeholders", "Risks"])

    assert question.text == "Which teams feel this the most?"
    assert question.template_id == GENERATED_TEMPLATE_ID
    assert question.is_generated
    assert question.target_slots == ("Stakeholders", "Risks")
    assert question.explicit_slots == ("Stakeholders", "Risks")
    assert question.source == "model"


@pytest.mark.parametrize("output", ["SKIP", "skip.", "", "   \n  "])
def test_stop_sentinel_and_empty_output_return_none(state, output):
    generator = FallbackQuestionGenerator(MockTextClient(output))
    assert generator.generate(state, ["Stakeholders"]) is None


def test_prompt_shows_recent_questions_and_gathered_values(state):
    state.update_slot("Problem", "Slow onboarding", 0.9, "answer")
    ask(state, "problem", "Onboarding is slow", text="What problem are you solving?")
    client = MockTextClient("Who approves new tools?")

    FallbackQuestionGenerator(client).generate(state, ["Stakeholders"])

    prompt = client.last_prompt
    assert "- Stakeholders: People and teams affected" in prompt
    assert "- What problem are you solving?" in prompt
    assert "- Problem: Slow onboarding" in prompt
    assert "SKIP" in prompt


def test_no_targets_returns_none(state):
    client = MockTextClient("Anything?")
    assert FallbackQuestionGenerator(client).generate(state, []) is None
    assert client.call_count == 0


def test_unknown_target_raises(state):
    with pytest.raises(SchemaViolation):
        FallbackQuestionGenerator(MockTextClient("?")).generate(state, ["Budget"])


# ========== Deterministic fallback ==========

def test_model_failure_uses_fallback_prompt(state):
    generator = FallbackQuestionGenerator(MockTextClient(error=RuntimeError("CUDA out of memory")))

    question = generator.generate(state, ["Stakeholders"])

    assert question.text == "Who is affected by this?"
    assert question.source == SOURCE_FALLBACK
    assert question.target_slots == ("Stakeholders",)
    assert question.explicit_slots == ("Stakeholders",)


def test_fallback_skips_recently_asked_prompt(state):
    state.record_question_asked(Question(
        GENERATED_TEMPLATE_ID, "What problem are you trying to solve?", ("Problem",)
    ))
    generator = FallbackQuestionGenerator(None)

    question = generator.generate(state, ["Problem", "Process"])

    assert question.text == "How is this handled today?"
    assert question.target_slots == ("Process",)


def test_fallback_returns_none_when_everything_was_just_asked(state):
    ask(state, GENERATED_TEMPLATE_ID, "no", target_slots=["Problem"],
        text="What problem are you trying to solve?")
    generator = FallbackQuestionGenerator(None)

    assert generator.generate(state, ["Problem"]) is None


def test_fallback_uses_description_then_generic_text():
    schema = build_schema({"slots": [
        {"name": "Budget", "description": "Money available for the project"},
        {"name": "Notes"},
    ]})
    state = SlotState(schema, "s")
    generator = FallbackQuestionGenerator(None)

    assert generator.generate(state, ["Budget"]).text == (
        "Could you tell me more about this: Money available for the project"
    )
    assert generator.generate(state, ["Notes"]).text == GENERIC_QUESTION


def test_client_without_generate_rejected():
    with pytest.raises(TypeError):
        FallbackQuestionGenerator(object())
