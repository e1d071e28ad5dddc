"""
Test ExtractionAdapter - scope containment, calibration, policy and
soft failure handling

Uses a mock model client; no model is loaded.
"""

import json

import pytest

from slot_engine.contracts import InferencePolicy, SlotDefinition
from slot_engine.core.extraction_adapter import (
    FALLBACK_RAW_CONFIDENCE,
    FREE_TEXT_FIELD,
    SOURCE_FALLBACK,
    ExtractionAdapter,
    calibrate,
    parse_key_values,
    unreachable_slots,
)
from slot_engine.core.schema import build_schema
from slot_engine.values import ListValue, ScalarValue, StructValue


class MockModelClient:
    """Mock client returning a fixed output or raising"""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.call_count = 0
        self.last_prompt = None
        self.last_timeout = None

    def generate_json(self, prompt, max_tokens, temperature, timeout=None):
        self.call_count += 1
        self.last_prompt = prompt
        self.last_timeout = timeout
        if self.error is not None:
            raise self.error
        if isinstance(self.response, dict):
            return json.dumps(self.response)
        return self.response


def entry(value, confidence, reasoning="stated"):
    return {"value": value, "confidence": confidence, "reasoning": reasoning}


# ========== Scope and calibration ==========

def test_untargeted_slots_are_discarded(schema):
    client = MockModelClient({
        "Problem": entry("Slow onboarding", 0.9),
        "Risks": entry(["Vendor delay"], 0.9),
    })
    adapter = ExtractionAdapter(client)

    result = adapter.extract("Onboarding is slow", "What problem?", ["Problem"], schema)

    assert set(result) == {"Problem"}
    assert adapter.last_metadata["unexpected_slots"] == ["Risks"]
    assert adapter.last_metadata["outcome"] == "success"


def test_standard_discount(schema):
    adapter = ExtractionAdapter(MockModelClient({"Problem": entry("Slow onboarding", 0.9)}))
    extraction = adapter.extract("Onboarding is slow", "What problem?", ["Problem"], schema)["Problem"]

    assert extraction.raw_confidence == 0.9
    assert extraction.confidence == pytest.approx(0.75)
    assert extraction.value == ScalarValue(text="Slow onboarding")
    assert extraction.reasoning == "stated"
    assert extraction.source == "model"


def test_standard_floor(schema):
    adapter = ExtractionAdapter(MockModelClient({
        "Problem": entry("maybe onboarding", 0.5),
        "Process": entry("email", 0.55),
    }))
    result = adapter.extract(
        "Probably onboarding, and we handle it by email", "What?", ["Problem", "Process"], schema
    )

    assert "Problem" not in result
    assert result["Process"].confidence == pytest.approx(0.40)
    assert adapter.last_metadata["rejected"][0]["slot"] == "Problem"


def test_high_stakes_discount_and_floor(schema):
    adapter = ExtractionAdapter(MockModelClient({"ROI": entry({"hours_saved": 10}, 0.85)}))
    assert adapter.extract("About ten hours a week", "ROI?", ["ROI"], schema) == {}

    adapter = ExtractionAdapter(MockModelClient({"ROI": entry({"hours_saved": 10}, 0.95)}))
    extraction = adapter.extract("About ten hours a week", "ROI?", ["ROI"], schema)["ROI"]
    assert extraction.confidence == pytest.approx(0.65)
    assert extraction.value == StructValue(fields=(("hours_saved", "10"),))


def test_confidence_clamped_before_calibration(schema):
    adapter = ExtractionAdapter(MockModelClient({"Problem": entry("Slow onboarding", 1.7)}))
    extraction = adapter.extract("Onboarding is slow", "What?", ["Problem"], schema)["Problem"]
    assert extraction.raw_confidence == 1.0
    assert extraction.confidence == pytest.approx(0.85)


def test_calibrate_policy_mapping():
    explicit = SlotDefinition(name="Req", inference_policy=InferencePolicy.EXPLICIT_ONLY)
    plain = SlotDefinition(name="Problem")
    assert calibrate(explicit, 1.0) == (0.7, 0.60)
    assert calibrate(plain, 1.0) == (0.85, 0.40)
    assert calibrate(plain, 0.1) == (0.0, 0.40)


def test_unreachable_slots_reported():
    schema = build_schema({"slots": [
        {"name": "ROI", "kind": "structured", "high_stakes": True, "min_confidence": 0.9},
        {"name": "Problem", "min_confidence": 0.85},
    ]})
    assert unreachable_slots(schema) == ["ROI"]


# ========== Inference policy ==========

def test_no_inference_slot_needs_explicit_question(schema):
    client = MockModelClient({"Stakeholders": entry(["HR", "IT"], 1.0)})
    adapter = ExtractionAdapter(client)

    assert adapter.extract("HR and IT", "Who?", ["Stakeholders"], schema) == {}
    assert "explicitly asked" in adapter.last_metadata["rejected"][0]["reason"]

    result = adapter.extract("HR and IT", "Who?", ["Stakeholders"], schema,
                             explicit_slots=["Stakeholders"])
    assert result["Stakeholders"].value == ListValue(items=("HR", "IT"))
    assert result["Stakeholders"].confidence == pytest.approx(0.7)


# ========== Soft failures ==========

@pytest.mark.parametrize("output", ["{invalid json", "[1, 2]", "Sure! Here you go."])
def test_unparseable_output_means_no_information(schema, output):
    adapter = ExtractionAdapter(MockModelClient(output))
    assert adapter.extract("Onboarding is slow", "What?", ["Problem"], schema) == {}
    assert adapter.last_metadata["outcome"] == "parse_failed"
    assert adapter.last_metadata["error_type"] == "ExtractionParseError"


def test_bad_entries_rejected_individually(schema):
    adapter = ExtractionAdapter(MockModelClient({
        "Problem": "just a string",
        "Process": entry("email", "high"),
        "ROI": entry("saves time", 0.99),
        "Risks": entry(["Vendor delay"], 0.9),
    }))
    result = adapter.extract("answer", "What?", ["Problem", "Process", "ROI", "Risks"], schema)

    assert set(result) == {"Risks"}
    rejected = {r["slot"] for r in adapter.last_metadata["rejected"]}
    assert rejected == {"Problem", "Process", "ROI"}


def test_extractions_wrapper_accepted(schema):
    adapter = ExtractionAdapter(MockModelClient(
        {"extractions": {"Problem": entry("Slow onboarding", 0.9)}}
    ))
    assert set(adapter.extract("answer", "What?", ["Problem"], schema)) == {"Problem"}


def test_model_timeout_falls_back_to_deterministic(schema):
    client = MockModelClient(error=TimeoutError("generation exceeded 30s"))
    adapter = ExtractionAdapter(client, timeout_seconds=30)

    result = adapter.extract("Onboarding takes two weeks", "What?", ["Problem"], schema)

    assert client.last_timeout == 30
    extraction = result["Problem"]
    assert extraction.source == SOURCE_FALLBACK
    assert extraction.raw_confidence == FALLBACK_RAW_CONFIDENCE
    assert extraction.confidence == pytest.approx(0.45)
    assert adapter.last_metadata["outcome"] == "model_failed"
    assert adapter.last_metadata["error_type"] == "TimeoutError"


def test_deterministic_path_without_model(schema):
    adapter = ExtractionAdapter(None)
    result = adapter.extract(
        "Vendor delay; budget cut", "Risks?", ["Risks", "ROI", "Stakeholders"], schema
    )

    # Nothing was asked directly: ROI calibrates below the high-stakes floor
    # and Stakeholders only takes answers to an explicit question
    assert set(result) == {"Risks"}
    assert result["Risks"].value.items == ("Vendor delay", "budget cut")
    assert result["Risks"].confidence == pytest.approx(0.45)
    assert adapter.last_metadata["source"] == SOURCE_FALLBACK


def test_deterministic_path_accepts_directly_asked_slots_at_their_floor(schema):
    adapter = ExtractionAdapter(MockModelClient(error=TimeoutError("generation exceeded 30s")))

    result = adapter.extract(
        "Alice the PM; Bob from finance, Carol in ops",
        "Who is affected?",
        ["Stakeholders", "Problem"],
        schema,
        explicit_slots=["Stakeholders"],
    )

    stakeholders = result["Stakeholders"]
    assert stakeholders.value == ListValue(items=("Alice the PM", "Bob from finance", "Carol in ops"))
    assert stakeholders.confidence == pytest.approx(0.7)
    # Picked up incidentally, so it keeps the calibrated fallback confidence
    assert result["Problem"].confidence == pytest.approx(0.45)


def test_deterministic_structured_answer_reads_key_value_pairs(schema):
    adapter = ExtractionAdapter(None)

    result = adapter.extract(
        "Hours saved: 12, cost-reduction-pct = 30; owner: finance",
        "Can you estimate the savings?",
        ["ROI"],
        schema,
        explicit_slots=["ROI"],
    )

    roi = result["ROI"]
    assert roi.value == StructValue(fields=(("cost_reduction_pct", "30"), ("hours_saved", "12")))
    assert roi.confidence == pytest.approx(0.6)


# ========== Key/value parsing ==========

def test_parse_key_values_matches_declared_properties():
    fields = parse_key_values(
        "Hours Saved: 10,000; cost reduction pct=15", ["hours_saved", "cost_reduction_pct"]
    )
    assert fields == {"hours_saved": "10,000", "cost_reduction_pct": "15"}


def test_parse_key_values_comma_separated_pairs():
    fields = parse_key_values("team: ops, budget: 5k")
    assert fields == {"team": "ops", "budget": "5k"}


def test_parse_key_values_without_pairs_keeps_text():
    assert parse_key_values("  about ten hours a week  ", ["hours_saved"]) == {
        FREE_TEXT_FIELD: "about ten hours a week"
    }


def test_parse_key_values_unknown_keys_only():
    assert parse_key_values("owner: finance", ["hours_saved"]) == {FREE_TEXT_FIELD: "owner: finance"}


def test_pure_unclear_answer_skips_model(schema):
    client = MockModelClient({"Problem": entry("x", 0.9)})
    adapter = ExtractionAdapter(client)

    assert adapter.extract("I don't know.", "What?", ["Problem"], schema) == {}
    assert client.call_count == 0
    assert adapter.last_metadata["outcome"] == "unclear"


def test_long_hedged_answer_still_extracted(schema):
    client = MockModelClient({"Problem": entry("Slow onboarding", 0.9)})
    adapter = ExtractionAdapter(client)

    result = adapter.extract(
        "Not sure how to put it but onboarding new hires takes weeks", "What?", ["Problem"], schema
    )
    assert client.call_count == 1
    assert "Problem" in result


@pytest.mark.parametrize("answer", ["", "   "])
def test_empty_answer(schema, answer):
    client = MockModelClient({"Problem": entry("x", 0.9)})
    adapter = ExtractionAdapter(client)
    assert adapter.extract(answer, "What?", ["Problem"], schema) == {}
    assert client.call_count == 0


def test_prompt_lists_targets_and_answer(schema, state):
    state.update_slot("Problem", "Slow onboarding", 0.6, "earlier")
    client = MockModelClient({})
    adapter = ExtractionAdapter(client)

    adapter.extract("It takes two weeks", "What problem?", ["Problem", "Risks"], schema, state=state)

    assert "- Problem (text): Core problem being solved" in client.last_prompt
    assert "- Risks (list): What could go wrong" in client.last_prompt
    assert "Current value: Slow onboarding (confidence 0.60)" in client.last_prompt
    assert 'Answer: "It takes two weeks"' in client.last_prompt
    assert adapter.last_metadata["outcome"] == "empty"


def test_client_without_generate_json_rejected():
    with pytest.raises(TypeError):
        ExtractionAdapter(object())


def test_non_string_answer_rejected(schema):
    with pytest.raises(TypeError):
        ExtractionAdapter(None).extract(42, "What?", ["Problem"], schema)
