"""
Test Schema and TemplateCatalog loading and validation
"""

import pytest

from conftest import DATA_DIR, SMALL_SLOTS, SMALL_TEMPLATES
from slot_engine.contracts import InferencePolicy, PredicateKind, SlotKind
from slot_engine.core.extraction_adapter import calibrate, unreachable_slots
from slot_engine.core.schema import (
    build_catalog,
    build_schema,
    load_catalog,
    load_schema,
)
from slot_engine.errors import CatalogError, DependencyCycle, SchemaViolation


def slot(name, **extra):
    entry = {"name": name, "description": f"{name} description"}
    entry.update(extra)
    return entry


# ========== Schema ==========

def test_small_schema_loads_in_declaration_order(schema):
    assert schema.slot_names == tuple(s["name"] for s in SMALL_SLOTS)
    assert len(schema) == 6
    assert "Problem" in schema
    assert "Budget" not in schema


def test_slot_fields_parsed(schema):
    stakeholders = schema.get("Stakeholders")
    assert stakeholders.kind == SlotKind.LIST
    assert stakeholders.min_items == 2
    assert stakeholders.inference_policy == InferencePolicy.NO_INFERENCE
    assert stakeholders.requires_explicit_question

    roi = schema.get("ROI")
    assert roi.high_stakes
    assert roi.properties == ("hours_saved", "cost_reduction_pct")

    assert not schema.get("Problem").requires_explicit_question


def test_required_slots(schema):
    names = [s.name for s in schema.required_slots()]
    assert "Risks" not in names
    assert names[0] == "Problem"


def test_unknown_slot_lookup_raises(schema):
    with pytest.raises(SchemaViolation) as exc_info:
        schema.get("Budget")
    assert exc_info.value.slot_name == "Budget"


def test_topological_order_puts_dependencies_first():
    schema = build_schema({"slots": [
        slot("Summary", depends_on=["Outcomes", "Problem"]),
        slot("Outcomes", depends_on=["Problem"]),
        slot("Problem"),
    ]})
    order = schema.topological_order
    assert order.index("Problem") < order.index("Outcomes") < order.index("Summary")


def test_two_slot_cycle_reported_with_path():
    with pytest.raises(DependencyCycle) as exc_info:
        build_schema({"slots": [
            slot("A", depends_on=["B"]),
            slot("B", depends_on=["A"]),
        ]})
    assert exc_info.value.cycle == ["A", "B", "A"]
    assert "A -> B -> A" in str(exc_info.value)


def test_self_dependency_is_a_cycle():
    with pytest.raises(DependencyCycle) as exc_info:
        build_schema({"slots": [slot("A", depends_on=["A"])]})
    assert exc_info.value.cycle == ["A", "A"]


def test_undefined_dependency_raises_schema_violation():
    with pytest.raises(SchemaViolation, match="undefined slot 'Ghost'"):
        build_schema({"slots": [slot("A", depends_on=["Ghost"])]})


def test_duplicate_slot_name_rejected():
    with pytest.raises(CatalogError, match="Duplicate slot"):
        build_schema({"slots": [slot("A"), slot("A")]})


@pytest.mark.parametrize("entry,message", [
    (slot("_hidden"), "reserved"),
    (slot("A", kind="matrix"), "unknown kind"),
    (slot("A", min_items=2), "only applies to list"),
    (slot("A", min_confidence=1.5), "min_confidence"),
    (slot("A", inference_policy="sometimes"), "inference_policy"),
    ({"kind": "scalar"}, "missing 'name'"),
])
def test_malformed_slot_rejected(entry, message):
    with pytest.raises(CatalogError, match=message):
        build_schema({"slots": [entry]})


def test_all_slot_errors_reported_together():
    with pytest.raises(CatalogError) as exc_info:
        build_schema({"slots": [slot("_a"), slot("B", kind="matrix")]})
    assert "'_a'" in str(exc_info.value)
    assert "'B'" in str(exc_info.value)


def test_legacy_policy_flags():
    schema = build_schema({"slots": [
        slot("A", explicit_only=True),
        slot("B", explicit_only=True, no_inference=True),
        slot("C"),
    ]})
    assert schema.get("A").inference_policy == InferencePolicy.EXPLICIT_ONLY
    assert schema.get("B").inference_policy == InferencePolicy.NO_INFERENCE
    assert schema.get("C").inference_policy == InferencePolicy.INFERABLE


def test_schema_must_have_slots_list():
    with pytest.raises(CatalogError):
        build_schema({"fields": []})


# ========== Template catalog ==========

def test_catalog_keeps_declaration_order(catalog):
    assert [t.id for t in catalog] == [t["id"] for t in SMALL_TEMPLATES]
    assert "process" in catalog
    assert catalog.get("process").dependency_slots == ("Problem",)
    assert catalog.get("missing") is None


def test_catalog_defaults_and_closing(catalog):
    stakeholders = catalog.get("stakeholders")
    assert stakeholders.max_answer_tokens == 120
    assert catalog.closing_template_ids == frozenset({"wrap_up"})
    assert catalog.get("wrap_up").eligibility.kind == PredicateKind.ALL_OF


def test_template_targeting_undefined_slot(schema):
    raw = {"templates": [{"id": "t", "prompt": "?", "target_slots": ["Budget"]}]}
    with pytest.raises(SchemaViolation, match="targets undefined slot 'Budget'"):
        build_catalog(raw, schema)


def test_predicate_referencing_undefined_slot(schema):
    raw = {"templates": [{
        "id": "t",
        "prompt": "?",
        "target_slots": ["Problem"],
        "eligibility": {"needs_slot": "Budget"},
    }]}
    with pytest.raises(SchemaViolation, match="eligibility references"):
        build_catalog(raw, schema)


def test_duplicate_template_id(schema):
    entry = {"id": "t", "prompt": "?", "target_slots": ["Problem"]}
    with pytest.raises(CatalogError, match="Duplicate template id"):
        build_catalog({"templates": [entry, dict(entry)]}, schema)


@pytest.mark.parametrize("entry", [
    {"id": "t", "prompt": "?", "target_slots": []},
    {"id": "t", "prompt": "  ", "target_slots": ["Problem"]},
    {"prompt": "?", "target_slots": ["Problem"]},
    {"id": "t", "prompt": "?", "target_slots": ["Problem"], "priority": "high"},
    {"id": "t", "prompt": "?", "target_slots": ["Problem"], "eligibility": {"when": "always"}},
])
def test_malformed_template_rejected(schema, entry):
    with pytest.raises(CatalogError):
        build_catalog({"templates": [entry]}, schema)


# ========== Bundled data ==========

def test_bundled_brief_schema_and_catalog_load():
    schema = load_schema(str(DATA_DIR / "brief_slot_schema.json"))
    catalog = load_catalog(str(DATA_DIR / "brief_question_templates.json"), schema)

    assert len(schema) == 11
    assert len(catalog) == 12
    order = schema.topological_order
    assert order.index("ProblemStatement") < order.index("ExecutiveSummary")
    assert order.index("OutcomesAndMetrics") < order.index("ExecutiveSummary")
    assert catalog.closing_template_ids == frozenset({"confirmation_summary"})


def test_bundled_schema_slots_are_reachable():
    """Every bundled min_confidence can be met after calibration"""
    schema = load_schema(str(DATA_DIR / "brief_slot_schema.json"))
    assert unreachable_slots(schema) == []


def confidence_below_rules(predicate):
    if predicate.kind == PredicateKind.CONFIDENCE_BELOW:
        yield predicate.slots[0], predicate.threshold
    for child in predicate.children:
        yield from confidence_below_rules(child)


def test_bundled_confidence_below_rules_can_turn_false():
    """A confidence_below threshold above the slot's best calibrated
    confidence would keep its template eligible for the whole session"""
    schema = load_schema(str(DATA_DIR / "brief_slot_schema.json"))
    catalog = load_catalog(str(DATA_DIR / "brief_question_templates.json"), schema)

    checked = 0
    for template in catalog:
        for name, threshold in confidence_below_rules(template.eligibility):
            definition = schema.get(name)
            best, _ = calibrate(definition, 1.0)
            assert threshold <= best, f"{template.id}: {name} tops out at {best}"
            # Without a model a directly asked slot lands exactly on its floor
            assert threshold <= definition.min_confidence, template.id
            checked += 1
    assert checked == 2


def test_missing_schema_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_schema(str(tmp_path / "nope.json"))
