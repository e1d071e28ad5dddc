"""
Schema and Template Catalog - static interview definitions

Responsibilities:
- Load slot definitions from JSON into an immutable Schema
- Load question templates from JSON into an ordered TemplateCatalog
- Validate both on load (collect every problem, then raise once)
- Reject cyclic depends_on graphs before any session starts

Design principles:
- Fail fast: a schema or catalog that loads is safe for the selector
- Declaration order is preserved (it is the selector's tie-break)
- Pure data: no reference to SlotState or any session

Error mapping:
- Malformed entries (missing id, bad kind, bad predicate) -> CatalogError
- References to slots the schema does not define -> SchemaViolation
- depends_on cycle -> DependencyCycle (with the cycle path)
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from slot_engine.contracts import (
    DEFAULT_MIN_CONFIDENCE,
    InferencePolicy,
    QuestionTemplate,
    SlotDefinition,
    SlotKind,
)
from slot_engine.core.eligibility import parse_predicate, referenced_slots
from slot_engine.errors import CatalogError, DependencyCycle, SchemaViolation

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA_PATH = "data/brief_slot_schema.json"
DEFAULT_TEMPLATES_PATH = "data/brief_question_templates.json"


class Schema:
    """
    Immutable, ordered set of slot definitions for one interview type.

    Iteration yields SlotDefinitions in declaration order.
    """

    def __init__(self, slots: Sequence[SlotDefinition], version: str = "1"):
        self.version = str(version)
        self._slots: Dict[str, SlotDefinition] = {}
        for slot in slots:
            if slot.name in self._slots:
                raise CatalogError(f"Duplicate slot name '{slot.name}'")
            self._slots[slot.name] = slot

        self._validate_references()
        self.topological_order: Tuple[str, ...] = tuple(self._topological_sort())

        logger.info(f"Schema v{self.version} loaded with {len(self._slots)} slots")

    # ========================
    # Lookup
    # ========================

    def __contains__(self, name: str) -> bool:
        return name in self._slots

    def __iter__(self) -> Iterator[SlotDefinition]:
        return iter(self._slots.values())

    def __len__(self) -> int:
        return len(self._slots)

    @property
    def slot_names(self) -> Tuple[str, ...]:
        return tuple(self._slots)

    def get(self, name: str) -> SlotDefinition:
        """
        Get a slot definition by name.

        Raises:
            SchemaViolation: If slot is not in the schema
        """
        try:
            return self._slots[name]
        except KeyError:
            raise SchemaViolation(f"Unknown slot '{name}'", slot_name=name)

    def required_slots(self) -> List[SlotDefinition]:
        return [slot for slot in self._slots.values() if slot.required]

    # ========================
    # Validation
    # ========================

    def _validate_references(self) -> None:
        errors = []
        for slot in self._slots.values():
            for dep in sorted(slot.depends_on):
                if dep not in self._slots:
                    errors.append(f"Slot '{slot.name}' depends on undefined slot '{dep}'")
        if errors:
            raise SchemaViolation("Schema validation failed:\n  - " + "\n  - ".join(errors))

    def _topological_sort(self) -> List[str]:
        """
        Order slots so every dependency precedes its dependents.

        Depth-first search with an explicit path so a cycle can be
        reported as the exact loop of slot names.

        Raises:
            DependencyCycle: If depends_on is not a DAG
        """
        order: List[str] = []
        done = set()
        path: List[str] = []
        on_path = set()

        def visit(name: str) -> None:
            if name in done:
                return
            if name in on_path:
                start = path.index(name)
                raise DependencyCycle(path[start:] + [name])
            on_path.add(name)
            path.append(name)
            for dep in sorted(self._slots[name].depends_on):
                visit(dep)
            path.pop()
            on_path.discard(name)
            done.add(name)
            order.append(name)

        for name in self._slots:
            visit(name)
        return order


class TemplateCatalog:
    """
    Ordered, immutable set of question templates validated against a Schema.

    Iteration yields templates in declaration order.
    """

    def __init__(self, templates: Sequence[QuestionTemplate], schema: Schema):
        self.schema = schema
        self._templates: Tuple[QuestionTemplate, ...] = tuple(templates)
        self._by_id: Dict[str, QuestionTemplate] = {}

        errors = []
        for template in self._templates:
            if template.id in self._by_id:
                errors.append(f"Duplicate template id '{template.id}'")
            self._by_id[template.id] = template
        if errors:
            raise CatalogError("Template catalog validation failed:\n  - " + "\n  - ".join(errors))

        self._validate_references()
        logger.info(f"Template catalog loaded with {len(self._templates)} templates")

    def __iter__(self) -> Iterator[QuestionTemplate]:
        return iter(self._templates)

    def __len__(self) -> int:
        return len(self._templates)

    def __contains__(self, template_id: str) -> bool:
        return template_id in self._by_id

    def get(self, template_id: str) -> Optional[QuestionTemplate]:
        return self._by_id.get(template_id)

    @property
    def closing_template_ids(self) -> frozenset:
        return frozenset(t.id for t in self._templates if t.closing)

    def _validate_references(self) -> None:
        errors = []
        for template in self._templates:
            for name in template.target_slots:
                if name not in self.schema:
                    errors.append(f"Template '{template.id}' targets undefined slot '{name}'")
            for name in template.dependency_slots:
                if name not in self.schema:
                    errors.append(f"Template '{template.id}' depends on undefined slot '{name}'")
            for name in referenced_slots(template.eligibility):
                if name not in self.schema:
                    errors.append(
                        f"Template '{template.id}' eligibility references undefined slot '{name}'"
                    )
        if errors:
            raise SchemaViolation(
                "Template catalog validation failed:\n  - " + "\n  - ".join(errors)
            )


# =========================================================================
# JSON loading
# =========================================================================

def build_schema(raw: Dict[str, Any]) -> Schema:
    """
    Build a Schema from its JSON form.

    Expected shape:
        {"version": "2", "slots": [{"name": ..., "kind": ..., ...}, ...]}

    A slot may give its policy as "inference_policy" or with the legacy
    boolean flags "explicit_only" / "no_inference" (no_inference wins).

    Raises:
        CatalogError: If any slot entry is malformed
        SchemaViolation: If depends_on references an undefined slot
        DependencyCycle: If depends_on has a cycle
    """
    if not isinstance(raw, dict) or not isinstance(raw.get("slots"), list):
        raise CatalogError("Schema must be an object with a 'slots' list")

    errors = []
    slots = []
    for i, entry in enumerate(raw["slots"]):
        try:
            slots.append(_parse_slot(entry, i))
        except CatalogError as e:
            errors.append(str(e))

    if errors:
        raise CatalogError("Schema validation failed:\n  - " + "\n  - ".join(errors))

    return Schema(slots, version=raw.get("version", "1"))


def load_schema(schema_path: str = DEFAULT_SCHEMA_PATH) -> Schema:
    """
    Load a Schema from a JSON file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        (plus everything build_schema raises)
    """
    path = Path(schema_path)
    if not path.exists():
        raise FileNotFoundError(f"Slot schema not found: {schema_path}")
    with open(path, 'r') as f:
        return build_schema(json.load(f))


def build_catalog(raw: Dict[str, Any], schema: Schema) -> TemplateCatalog:
    """
    Build a TemplateCatalog from its JSON form.

    Expected shape:
        {"templates": [{"id": ..., "prompt": ..., "target_slots": [...], ...}, ...]}

    Raises:
        CatalogError: If any template entry is malformed
        SchemaViolation: If a template references an undefined slot
    """
    if not isinstance(raw, dict) or not isinstance(raw.get("templates"), list):
        raise CatalogError("Template catalog must be an object with a 'templates' list")

    errors = []
    templates = []
    for i, entry in enumerate(raw["templates"]):
        try:
            templates.append(_parse_template(entry, i))
        except CatalogError as e:
            errors.append(str(e))

    if errors:
        raise CatalogError("Template catalog validation failed:\n  - " + "\n  - ".join(errors))

    return TemplateCatalog(templates, schema)


def load_catalog(templates_path: str, schema: Schema) -> TemplateCatalog:
    """
    Load a TemplateCatalog from a JSON file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        (plus everything build_catalog raises)
    """
    path = Path(templates_path)
    if not path.exists():
        raise FileNotFoundError(f"Template catalog not found: {templates_path}")
    with open(path, 'r') as f:
        return build_catalog(json.load(f), schema)


# =========================================================================
# Entry parsing
# =========================================================================

def _parse_slot(entry: Any, index: int) -> SlotDefinition:
    if not isinstance(entry, dict):
        raise CatalogError(f"Slot at index {index} is not an object")
    name = entry.get("name")
    if not isinstance(name, str) or not name:
        raise CatalogError(f"Slot at index {index} missing 'name'")
    if name.startswith("_"):
        raise CatalogError(f"Slot '{name}': names starting with '_' are reserved")

    try:
        kind = SlotKind(entry.get("kind", SlotKind.SCALAR.value))
    except ValueError:
        raise CatalogError(f"Slot '{name}': unknown kind {entry.get('kind')!r}")

    if "inference_policy" in entry:
        try:
            policy = InferencePolicy(entry["inference_policy"])
        except ValueError:
            raise CatalogError(
                f"Slot '{name}': unknown inference_policy {entry['inference_policy']!r}"
            )
    elif entry.get("no_inference"):
        policy = InferencePolicy.NO_INFERENCE
    elif entry.get("explicit_only"):
        policy = InferencePolicy.EXPLICIT_ONLY
    else:
        policy = InferencePolicy.INFERABLE

    min_confidence = entry.get("min_confidence", DEFAULT_MIN_CONFIDENCE)
    if isinstance(min_confidence, bool) or not isinstance(min_confidence, (int, float)) \
            or not 0.0 <= min_confidence <= 1.0:
        raise CatalogError(f"Slot '{name}': min_confidence must be a number in [0,1]")

    min_items = entry.get("min_items", 0)
    if isinstance(min_items, bool) or not isinstance(min_items, int) or min_items < 0:
        raise CatalogError(f"Slot '{name}': min_items must be a non-negative integer")
    if min_items and kind != SlotKind.LIST:
        raise CatalogError(f"Slot '{name}': min_items only applies to list slots")

    depends_on = entry.get("depends_on", [])
    if not isinstance(depends_on, list):
        raise CatalogError(f"Slot '{name}': depends_on must be a list")

    return SlotDefinition(
        name=name,
        kind=kind,
        required=bool(entry.get("required", False)),
        min_confidence=float(min_confidence),
        depends_on=frozenset(depends_on),
        inference_policy=policy,
        min_items=min_items,
        description=entry.get("description", ""),
        high_stakes=bool(entry.get("high_stakes", False)),
        fallback_prompt=entry.get("fallback_prompt"),
        merged_from=tuple(entry.get("merged_from", ())),
        semantic_merge_with=tuple(entry.get("semantic_merge_with", ())),
        properties=tuple(entry.get("properties", ())),
    )


def _parse_template(entry: Any, index: int) -> QuestionTemplate:
    if not isinstance(entry, dict):
        raise CatalogError(f"Template at index {index} is not an object")
    template_id = entry.get("id")
    if not isinstance(template_id, str) or not template_id:
        raise CatalogError(f"Template at index {index} missing 'id'")

    prompt = entry.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise CatalogError(f"Template '{template_id}' missing 'prompt'")

    target_slots = entry.get("target_slots")
    if not isinstance(target_slots, list) or not target_slots:
        raise CatalogError(f"Template '{template_id}' must have non-empty 'target_slots'")

    dependency_slots = entry.get("dependency_slots", [])
    if not isinstance(dependency_slots, list):
        raise CatalogError(f"Template '{template_id}': dependency_slots must be a list")

    priority = entry.get("priority", 5)
    max_answer_tokens = entry.get("max_answer_tokens", 120)
    for label, value in (("priority", priority), ("max_answer_tokens", max_answer_tokens)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise CatalogError(f"Template '{template_id}': {label} must be an integer")

    return QuestionTemplate(
        id=template_id,
        prompt=prompt,
        target_slots=tuple(target_slots),
        dependency_slots=tuple(dependency_slots),
        priority=priority,
        max_answer_tokens=max_answer_tokens,
        eligibility=parse_predicate(entry.get("eligibility"), f"Template '{template_id}'"),
        topic=entry.get("topic"),
        closing=bool(entry.get("closing", False)),
    )
