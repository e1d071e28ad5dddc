"""
Slot State - per-session aggregate of everything learned so far

Responsibilities:
- Hold one SlotValue per schema slot (value, confidence, provenance, counters)
- Answer readiness questions (needs_question, is_ready, dependencies_satisfied)
- Apply extractions under the schema's inference policy
- Track session bookkeeping (questions asked, history, pending question)

Design principles:
- Schema is the whitelist: unknown slot names raise SchemaViolation and are
  never silently created
- Confidence never regresses: updates take max(existing, new)
- NoInference slots are only writable with explicit=True
- Dependencies gate question selection, not value assignment
- Terminal once completed: every mutator refuses to run

API Philosophy:
- SlotState = rule-enforcing container (schema + policy checks only)
- Extraction Adapter = decides what to write and at what confidence
- Question Selector = decides what to ask next
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from slot_engine.contracts import (
    GENERATED_TEMPLATE_ID,
    ConversationTurn,
    InferencePolicy,
    ProvenanceEntry,
    Question,
    SlotDefinition,
    SlotKind,
)
from slot_engine.errors import PolicyViolation, SchemaViolation, SlotEngineError
from slot_engine.values import TypedValue, coerce_value, merge_values

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class SlotValue:
    """
    Mutable per-slot record, owned by SlotState.

    Attributes:
        value: Typed value (None while unset)
        confidence: Belief in [0,1] that value is correct and complete
        provenance: Answers that contributed to value, oldest first
        attempts: Extraction attempts against this slot (successful or not)
        last_asked_at: ISO timestamp of the last question targeting this slot
        explicitly_asked: An explicit question for this slot has been answered
    """
    value: Optional[TypedValue] = None
    confidence: float = 0.0
    provenance: List[ProvenanceEntry] = field(default_factory=list)
    attempts: int = 0
    last_asked_at: Optional[str] = None
    explicitly_asked: bool = False

    @property
    def is_set(self) -> bool:
        return self.value is not None and not self.value.is_empty()


@dataclass(frozen=True)
class CompletionSummary:
    """Snapshot of readiness across the whole schema"""
    completed_count: int
    total_count: int
    ready_slots: Tuple[str, ...]
    missing_slots: Tuple[str, ...]
    percentage: float


class SlotState:
    """Aggregate root for one interview session"""

    def __init__(self, schema, session_id: str):
        """
        Initialize empty state with one SlotValue per schema slot.

        Args:
            schema: Schema the session runs against
            session_id: Caller-owned session identifier
        """
        self.schema = schema
        self.session_id = session_id
        self.schema_version = schema.version
        self.slots: Dict[str, SlotValue] = {slot.name: SlotValue() for slot in schema}
        self.history: List[ConversationTurn] = []
        self.asked_template_ids: List[str] = []
        self.total_questions = 0
        self.pending_question: Optional[Question] = None
        self.completed = False

        logger.debug(f"SlotState created for session {session_id} ({len(self.slots)} slots)")

    # ========================
    # Private Helpers
    # ========================

    def _definition(self, slot_name: str) -> SlotDefinition:
        if slot_name not in self.slots:
            raise SchemaViolation(f"Unknown slot '{slot_name}'", slot_name=slot_name)
        return self.schema.get(slot_name)

    def _ensure_mutable(self) -> None:
        if self.completed:
            raise SlotEngineError(f"Session {self.session_id} is completed and read-only")

    def _meets_floor(self, definition: SlotDefinition, record: SlotValue) -> bool:
        """Value present, confidence at floor, and list long enough"""
        if not record.is_set:
            return False
        if record.confidence < definition.min_confidence:
            return False
        if definition.kind == SlotKind.LIST and len(record.value.items) < definition.min_items:
            return False
        return True

    # ========================
    # Readiness
    # ========================

    def get_slot(self, slot_name: str) -> SlotValue:
        self._definition(slot_name)
        return self.slots[slot_name]

    def confidence_of(self, slot_name: str) -> float:
        return self.get_slot(slot_name).confidence

    def meets_min_confidence(self, slot_name: str) -> bool:
        """True if the slot holds a value at or above its own min_confidence"""
        definition = self._definition(slot_name)
        record = self.slots[slot_name]
        return record.is_set and record.confidence >= definition.min_confidence

    def needs_question(self, slot_name: str) -> bool:
        """
        Check whether a slot still needs to be asked about.

        True if the slot is unset, below its min_confidence, or (list kind)
        holds fewer than min_items; OR if its policy is not Inferable and no
        explicit question for it has been answered yet.

        Raises:
            SchemaViolation: If slot is not in the schema
        """
        definition = self._definition(slot_name)
        record = self.slots[slot_name]
        if not self._meets_floor(definition, record):
            return True
        if definition.requires_explicit_question and not record.explicitly_asked:
            return True
        return False

    def is_ready(self, slot_name: str) -> bool:
        return not self.needs_question(slot_name)

    def ready_count(self) -> int:
        return sum(1 for name in self.slots if self.is_ready(name))

    def dependencies_satisfied(self, slot_name: str) -> bool:
        """
        Check that every depends_on slot meets its own min_confidence.

        Raises:
            SchemaViolation: If slot is not in the schema
        """
        definition = self._definition(slot_name)
        return all(self.meets_min_confidence(dep) for dep in definition.depends_on)

    def completion_summary(self) -> CompletionSummary:
        ready = [name for name in self.slots if self.is_ready(name)]
        missing = [name for name in self.slots if name not in ready]
        total = len(self.slots)
        return CompletionSummary(
            completed_count=len(ready),
            total_count=total,
            ready_slots=tuple(ready),
            missing_slots=tuple(missing),
            percentage=round(100.0 * len(ready) / total, 1) if total else 100.0,
        )

    def required_ready(self) -> bool:
        return all(self.is_ready(slot.name) for slot in self.schema.required_slots())

    def ready_values(self) -> Dict[str, Any]:
        """
        JSON-ready values of every ready slot, in schema order.

        Intended for downstream brief builders and the {summary}
        placeholder in closing questions.
        """
        return {
            name: record.value.to_json()
            for name, record in self.slots.items()
            if self.is_ready(name)
        }

    # ========================
    # Mutation
    # ========================

    def update_slot(
        self,
        slot_name: str,
        value: Any,
        confidence: float,
        source: Union[str, ProvenanceEntry],
        explicit: bool = False,
        question_context: str = "",
        reasoning: Optional[str] = None
    ) -> SlotValue:
        """
        Write a value into a slot under the schema's policy.

        Args:
            slot_name: Target slot
            value: TypedValue or raw value coercible to the slot kind
            confidence: Calibrated confidence in [0,1]
            source: Answer text, or a ready-made ProvenanceEntry
            explicit: The answering question explicitly targeted this slot
            question_context: Question text (used when source is a string)
            reasoning: Model explanation (used when source is a string)

        Returns:
            SlotValue: The updated record

        Raises:
            SchemaViolation: Unknown slot, or value does not fit the slot kind
            PolicyViolation: NoInference slot written without explicit=True
            ValueError: confidence outside [0,1]
            SlotEngineError: Session already completed
        """
        definition = self._definition(slot_name)
        self._ensure_mutable()

        if definition.inference_policy == InferencePolicy.NO_INFERENCE and not explicit:
            raise PolicyViolation(
                f"Slot '{slot_name}' only accepts answers to an explicit question",
                slot_name=slot_name,
            )

        if isinstance(confidence, bool) or not 0.0 <= confidence <= 1.0:
            raise ValueError(f"confidence must be in [0,1], got {confidence}")

        try:
            typed = coerce_value(definition.kind, value)
        except ValueError as e:
            raise SchemaViolation(f"Slot '{slot_name}': {e}", slot_name=slot_name)

        record = self.slots[slot_name]
        record.value = merge_values(
            definition.kind, record.value, typed, record.confidence, confidence
        )
        record.confidence = max(record.confidence, confidence)

        if isinstance(source, ProvenanceEntry):
            entry = source
        else:
            entry = ProvenanceEntry(
                answer_text=str(source),
                question_context=question_context,
                timestamp=utc_now(),
                reasoning=reasoning,
            )
        record.provenance.append(entry)
        record.attempts += 1
        record.explicitly_asked = record.explicitly_asked or explicit

        logger.debug(
            f"Updated {slot_name}: confidence={record.confidence:.2f} "
            f"explicit={record.explicitly_asked} attempts={record.attempts}"
        )
        return record

    def record_attempt(self, slot_name: str) -> None:
        """Count an extraction attempt that produced nothing for this slot"""
        self._definition(slot_name)
        self._ensure_mutable()
        self.slots[slot_name].attempts += 1

    def record_question_asked(self, question: Question, timestamp: Optional[str] = None) -> None:
        """
        Record that a question was actually emitted.

        Increments total_questions, appends the template id, stamps
        last_asked_at on each target slot and stores the question as pending.
        """
        self._ensure_mutable()
        for name in question.target_slots:
            self._definition(name)

        stamp = timestamp or utc_now()
        self.total_questions += 1
        self.asked_template_ids.append(question.template_id)
        for name in question.target_slots:
            self.slots[name].last_asked_at = stamp
        self.pending_question = question

        logger.info(
            f"Session {self.session_id}: question {self.total_questions} "
            f"emitted ({question.template_id})"
        )

    def record_turn(self, answer_text: str, timestamp: Optional[str] = None) -> ConversationTurn:
        """
        Append the answer to the pending question to history.

        Clears pending_question. An answer with no pending question (e.g.
        an opening statement) is recorded against the generated id.
        """
        self._ensure_mutable()
        question = self.pending_question
        turn = ConversationTurn(
            question_template_id=question.template_id if question else GENERATED_TEMPLATE_ID,
            question_text=question.text if question else "",
            answer_text=answer_text,
            timestamp=timestamp or utc_now(),
        )
        self.history.append(turn)
        self.pending_question = None
        return turn

    def mark_completed(self) -> None:
        if not self.completed:
            self.completed = True
            self.pending_question = None
            logger.info(f"Session {self.session_id} marked completed")

    # ========================
    # Views
    # ========================

    def recent_template_ids(self, count: int = 3) -> List[str]:
        return self.asked_template_ids[-count:] if count > 0 else []

    def recent_questions(self, count: int = 3) -> List[str]:
        """Text of the last `count` asked questions, oldest first"""
        texts = [turn.question_text for turn in self.history if turn.question_text]
        if self.pending_question is not None:
            texts.append(self.pending_question.text)
        return texts[-count:] if count > 0 else []

    def restore_slot(self, slot_name: str, record: SlotValue) -> None:
        """
        Install a persisted record (used by persistence adapters on load).

        Raises:
            SchemaViolation: If slot is not in the schema
        """
        definition = self._definition(slot_name)
        if record.value is not None and record.value.kind != definition.kind:
            raise SchemaViolation(
                f"Persisted value for '{slot_name}' is {record.value.kind.value}, "
                f"schema expects {definition.kind.value}",
                slot_name=slot_name,
            )
        self.slots[slot_name] = record
