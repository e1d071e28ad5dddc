"""
Semantic contracts for the slot-filling interview engine.

This module defines immutable data structures that serve as contracts
between modules. These are NOT validators - they define shape and
semantics. Validation lives in core/schema.py (load time) and
core/slot_state.py (write time).

Design principles:
- Frozen dataclasses (immutable after creation)
- Tuples / frozensets instead of lists / sets
- No dependencies on other engine modules

Contents:
- SlotKind, InferencePolicy, PredicateKind: closed enums
- SlotDefinition: one schema slot and its policy
- EligibilityPredicate: template eligibility as data, not code
- QuestionTemplate: one catalog entry
- ProvenanceEntry: audit record of an answer that touched a slot
- ConversationTurn: one question/answer pair
- Extraction: one calibrated, accepted candidate value
- Question: a question the engine actually emits
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, FrozenSet, Optional, Tuple

# Question id recorded for model-authored questions
GENERATED_TEMPLATE_ID = "generated"

DEFAULT_MIN_CONFIDENCE = 0.7


class SlotKind(str, Enum):
    """Shape of a slot's value"""
    SCALAR = "scalar"
    LIST = "list"
    STRUCTURED = "structured"


class InferencePolicy(str, Enum):
    """
    How a slot may be filled.

    INFERABLE: any answer mentioning it may fill it
    EXPLICIT_ONLY: may be filled by inference, but only counts as ready once
        a question explicitly targeting it was answered
    NO_INFERENCE: only writable from a question that explicitly targeted it
    """
    INFERABLE = "inferable"
    EXPLICIT_ONLY = "explicit_only"
    NO_INFERENCE = "no_inference"


class PredicateKind(str, Enum):
    """Closed set of template eligibility predicates"""
    ALWAYS = "always"
    NEEDS_SLOT = "needs_slot"
    ANY_NEEDS_SLOT = "any_needs_slot"
    ALL_NEED_SLOTS = "all_need_slots"
    CONFIDENCE_BELOW = "confidence_below"
    COVERAGE_AT_LEAST = "coverage_at_least"
    ALL_OF = "all_of"
    ANY_OF = "any_of"


@dataclass(frozen=True)
class SlotDefinition:
    """
    One field a completed interview must populate.

    Attributes:
        name: Unique slot key (e.g. 'ProblemStatement')
        kind: scalar | list | structured
        required: Must be ready before a brief can be generated
        min_confidence: Confidence floor for the slot to count as filled
        depends_on: Slots that must meet their own floor before this slot
            is actively asked about
        inference_policy: See InferencePolicy
        min_items: Minimum list length (list kind only)
        description: Human-readable meaning, used in model prompts
        high_stakes: Financial/ROI-like slot; extraction is discounted harder
        fallback_prompt: Deterministic question used when the model is down
        merged_from: Advisory only, for downstream consumers
        semantic_merge_with: Advisory only, for downstream consumers
        properties: Advisory key names for structured slots
    """
    name: str
    kind: SlotKind = SlotKind.SCALAR
    required: bool = False
    min_confidence: float = DEFAULT_MIN_CONFIDENCE
    depends_on: FrozenSet[str] = frozenset()
    inference_policy: InferencePolicy = InferencePolicy.INFERABLE
    min_items: int = 0
    description: str = ""
    high_stakes: bool = False
    fallback_prompt: Optional[str] = None
    merged_from: Tuple[str, ...] = ()
    semantic_merge_with: Tuple[str, ...] = ()
    properties: Tuple[str, ...] = ()

    @property
    def requires_explicit_question(self) -> bool:
        return self.inference_policy != InferencePolicy.INFERABLE


@dataclass(frozen=True)
class EligibilityPredicate:
    """
    Template eligibility as data.

    Evaluated by core/eligibility.py. Which attributes are meaningful
    depends on kind:
        ALWAYS:            none
        NEEDS_SLOT:        slots (exactly one)
        ANY_NEEDS_SLOT:    slots
        ALL_NEED_SLOTS:    slots
        CONFIDENCE_BELOW:  slots (exactly one), threshold
        COVERAGE_AT_LEAST: count
        ALL_OF / ANY_OF:   children
    """
    kind: PredicateKind
    slots: Tuple[str, ...] = ()
    threshold: Optional[float] = None
    count: Optional[int] = None
    children: Tuple["EligibilityPredicate", ...] = ()


ALWAYS_ELIGIBLE = EligibilityPredicate(kind=PredicateKind.ALWAYS)


@dataclass(frozen=True)
class QuestionTemplate:
    """
    One structured question in the catalog.

    Attributes:
        id: Unique template id (e.g. 'problem_and_impact')
        prompt: Question text; may contain '{summary}'
        target_slots: Slots this question is designed to fill (non-empty)
        dependency_slots: Slots that must meet their own floor first
        priority: Higher is preferred
        max_answer_tokens: Soft fatigue signal for long answers
        eligibility: Named predicate over SlotState
        topic: Free-form grouping label
        closing: Marks a wrap-up/confirmation question
    """
    id: str
    prompt: str
    target_slots: Tuple[str, ...]
    dependency_slots: Tuple[str, ...] = ()
    priority: int = 5
    max_answer_tokens: int = 120
    eligibility: EligibilityPredicate = ALWAYS_ELIGIBLE
    topic: Optional[str] = None
    closing: bool = False


@dataclass(frozen=True)
class ProvenanceEntry:
    """Audit record of one answer that contributed to a slot"""
    answer_text: str
    question_context: str
    timestamp: str
    reasoning: Optional[str] = None

    def to_json(self) -> dict:
        return {
            'answerText': self.answer_text,
            'questionContext': self.question_context,
            'timestamp': self.timestamp,
            'reasoning': self.reasoning,
        }

    @staticmethod
    def from_json(data: dict) -> "ProvenanceEntry":
        return ProvenanceEntry(
            answer_text=data.get('answerText', ''),
            question_context=data.get('questionContext', ''),
            timestamp=data.get('timestamp', ''),
            reasoning=data.get('reasoning'),
        )


@dataclass(frozen=True)
class ConversationTurn:
    """One question/answer pair"""
    question_template_id: str
    question_text: str
    answer_text: str
    timestamp: str

    def to_json(self) -> dict:
        return {
            'questionTemplateId': self.question_template_id,
            'questionText': self.question_text,
            'answerText': self.answer_text,
            'timestamp': self.timestamp,
        }

    @staticmethod
    def from_json(data: dict) -> "ConversationTurn":
        return ConversationTurn(
            question_template_id=data.get('questionTemplateId', GENERATED_TEMPLATE_ID),
            question_text=data.get('questionText', ''),
            answer_text=data.get('answerText', ''),
            timestamp=data.get('timestamp', ''),
        )


@dataclass(frozen=True)
class Extraction:
    """
    One accepted candidate value produced by the Extraction Adapter.

    Attributes:
        slot_name: Target slot (always one of the turn's target slots)
        value: TypedValue matching the slot kind
        raw_value: Value as the model returned it
        raw_confidence: Model-stated confidence, clamped to [0,1]
        confidence: Calibrated confidence (raw minus discount)
        reasoning: Model explanation, if any
        source: 'model' or 'deterministic_fallback'
    """
    slot_name: str
    value: Any
    raw_value: Any
    raw_confidence: float
    confidence: float
    reasoning: Optional[str] = None
    source: str = "model"


@dataclass(frozen=True)
class Question:
    """
    A question the engine emits to the respondent.

    template_id is GENERATED_TEMPLATE_ID for model-authored or deterministic
    fallback questions. explicit_slots are the slots an answer to this
    question may write with explicit=True.
    """
    template_id: str
    text: str
    target_slots: Tuple[str, ...]
    explicit_slots: Tuple[str, ...] = ()
    source: str = "template"
    metadata: dict = field(default_factory=dict, compare=False)

    @property
    def is_generated(self) -> bool:
        return self.template_id == GENERATED_TEMPLATE_ID

    def to_json(self) -> dict:
        return {
            'templateId': self.template_id,
            'text': self.text,
            'targetSlots': list(self.target_slots),
            'explicitSlots': list(self.explicit_slots),
            'source': self.source,
        }

    @staticmethod
    def from_json(data: dict) -> "Question":
        return Question(
            template_id=data.get('templateId', GENERATED_TEMPLATE_ID),
            text=data.get('text', ''),
            target_slots=tuple(data.get('targetSlots', ())),
            explicit_slots=tuple(data.get('explicitSlots', ())),
            source=data.get('source', 'template'),
        )
