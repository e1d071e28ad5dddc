"""
Prompt Builder - Construct model prompts from structured intent

Responsibilities:
- Compile target slots into SlotSpecs (name, kind, description)
- Build the extraction prompt (answer -> per-slot JSON)
- Build the fallback question prompt (target slots -> one question)
- Enforce prompt structure and ordering

NOT responsible for:
- Model-family instruction tags (PromptFormatter)
- Calling the model
- Parsing model output

Design principles:
- Fail-fast validation (no partial builds)
- Specs are frozen contracts; the builder is a pure function of them
- Slot names are the JSON keys, descriptions carry the meaning
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

from slot_engine.contracts import SlotKind

logger = logging.getLogger(__name__)

# Sentinel the model returns when no useful question remains
STOP_SENTINEL = "SKIP"


class PromptBuildError(Exception):
    """Raised when a prompt cannot be built due to an invalid/incomplete spec"""
    pass


@dataclass(frozen=True)
class SlotSpec:
    """
    Everything the model needs to know about one target slot.

    Validation enforced at construction - fail-fast.
    """
    slot_name: str
    kind: SlotKind
    description: str
    properties: Tuple[str, ...] = ()
    current_value: Optional[str] = None
    current_confidence: float = 0.0

    def __post_init__(self):
        if not self.slot_name or not isinstance(self.slot_name, str):
            raise PromptBuildError(f"slot_name must be non-empty string, got: {self.slot_name}")
        if not isinstance(self.kind, SlotKind):
            raise PromptBuildError(
                f"kind must be SlotKind enum for slot '{self.slot_name}', got: {self.kind}"
            )
        if not self.description or not isinstance(self.description, str):
            raise PromptBuildError(f"description missing or empty for slot '{self.slot_name}'")


@dataclass(frozen=True)
class ExtractionPromptSpec:
    """Compiled intent for one extraction call"""
    question_context: str
    slots: Tuple[SlotSpec, ...]
    conversation_excerpt: Tuple[str, ...] = ()

    def __post_init__(self):
        if not self.slots:
            raise PromptBuildError("extraction prompt needs at least one target slot")
        for i, spec in enumerate(self.slots):
            if not isinstance(spec, SlotSpec):
                raise PromptBuildError(f"slots[{i}] must be SlotSpec, got: {type(spec)}")


@dataclass(frozen=True)
class QuestionPromptSpec:
    """Compiled intent for one fallback question call"""
    slots: Tuple[SlotSpec, ...]
    recent_questions: Tuple[str, ...] = ()
    conversation_excerpt: Tuple[str, ...] = ()
    gathered: Tuple[Tuple[str, str], ...] = ()

    def __post_init__(self):
        if not self.slots:
            raise PromptBuildError("question prompt needs at least one target slot")


class PromptBuilder:
    """
    Build model prompts from prompt specs.

    Pure function: spec (+ answer text) -> prompt text
    No state, no side effects, deterministic output.
    """

    def build_extraction_prompt(self, spec: ExtractionPromptSpec, answer_text: str) -> str:
        """
        Build the extraction prompt.

        Format:
        1. System role
        2. Target slots (name, type, meaning, current value)
        3. Conversation excerpt (if any)
        4. Question + answer
        5. Output format + rules

        Raises:
            TypeError: If inputs have the wrong type
        """
        if not isinstance(spec, ExtractionPromptSpec):
            raise TypeError(f"spec must be ExtractionPromptSpec, got {type(spec).__name__}")
        if not isinstance(answer_text, str):
            raise TypeError(f"answer_text must be string, got {type(answer_text).__name__}")

        prompt = "You are an expert at extracting structured business information from interview answers.\n\n"

        prompt += "TARGET SLOTS\n"
        for slot in spec.slots:
            prompt += f"- {slot.slot_name} ({_kind_hint(slot)}): {slot.description}\n"
            if slot.current_value:
                prompt += (
                    f"  Current value: {slot.current_value} "
                    f"(confidence {slot.current_confidence:.2f})\n"
                )

        if spec.conversation_excerpt:
            prompt += "\nRECENT CONVERSATION\n"
            for line in spec.conversation_excerpt:
                prompt += f"{line}\n"

        prompt += f"\nQuestion asked: \"{spec.question_context}\"\n"
        prompt += f"Answer: \"{answer_text}\"\n\n"

        example_slot = spec.slots[0].slot_name
        prompt += "Return ONLY valid JSON using the slot names as keys:\n"
        prompt += "{\n"
        prompt += f'  "{example_slot}": {{"value": ..., "confidence": 0.0-1.0, "reasoning": "why"}}\n'
        prompt += "}\n\n"

        prompt += "Rules:\n"
        prompt += "- Only use the slot names listed above\n"
        prompt += "- Only extract what the answer actually says; if nothing fits, return {}\n"
        prompt += "- List slots take a JSON array of short strings\n"
        prompt += "- Structured slots take a JSON object of string values\n"
        prompt += "- Repeated, specific information deserves high confidence (0.8+)\n"
        prompt += "- Vague or hedged information deserves low confidence (<0.5)\n"

        return prompt

    def build_question_prompt(self, spec: QuestionPromptSpec) -> str:
        """
        Build the fallback question prompt.

        The model must return one question, or the STOP_SENTINEL when no
        useful question remains for these slots.
        """
        if not isinstance(spec, QuestionPromptSpec):
            raise TypeError(f"spec must be QuestionPromptSpec, got {type(spec).__name__}")

        prompt = "You are an expert business analyst interviewing a stakeholder for a project brief.\n\n"

        prompt += "Ask ONE question that gathers information for these brief sections:\n"
        for slot in spec.slots:
            prompt += f"- {slot.slot_name}: {slot.description}\n"

        if spec.recent_questions:
            prompt += "\nRecently asked (do NOT repeat these):\n"
            for question in spec.recent_questions:
                prompt += f"- {question}\n"

        if spec.conversation_excerpt:
            prompt += "\nConversation so far:\n"
            for line in spec.conversation_excerpt:
                prompt += f"{line}\n"

        if spec.gathered:
            prompt += "\nInformation already gathered:\n"
            for name, value in spec.gathered:
                prompt += f"- {name}: {value}\n"

        prompt += (
            f"\nIf the stakeholder has already covered these sections, reply with "
            f"exactly {STOP_SENTINEL}.\n"
        )
        prompt += "Return only the question text - no explanations or formatting.\n"

        return prompt


# =============================================================================
# Factory Functions
# =============================================================================

def create_slot_specs(target_slots: Sequence[str], schema, state=None) -> Tuple[SlotSpec, ...]:
    """
    Compile target slot names into SlotSpecs.

    Args:
        target_slots: Slot names, in prompt order
        schema: Schema defining the slots
        state: Optional SlotState; adds current value/confidence

    Raises:
        SchemaViolation: If a slot is not in the schema
    """
    specs = []
    for name in target_slots:
        definition = schema.get(name)
        current_value = None
        current_confidence = 0.0
        if state is not None:
            record = state.get_slot(name)
            if record.is_set:
                current_value = str(record.value)
                current_confidence = record.confidence
        specs.append(SlotSpec(
            slot_name=name,
            kind=definition.kind,
            description=definition.description or name,
            properties=definition.properties,
            current_value=current_value,
            current_confidence=current_confidence,
        ))
    return tuple(specs)


def format_excerpt(turns: Sequence[Any], limit: int = 3) -> Tuple[str, ...]:
    """Render the last `limit` ConversationTurns as Q/A lines"""
    lines = []
    for turn in list(turns)[-limit:] if limit > 0 else []:
        if turn.question_text:
            lines.append(f"Q: {turn.question_text}")
        lines.append(f"A: {turn.answer_text}")
    return tuple(lines)


def gathered_pairs(values: Dict[str, Any]) -> Tuple[Tuple[str, str], ...]:
    """Flatten ready_values() into (name, text) pairs for prompts"""
    pairs = []
    for name, value in values.items():
        if isinstance(value, list):
            text = ", ".join(str(v) for v in value)
        elif isinstance(value, dict):
            text = "; ".join(f"{k}: {v}" for k, v in value.items())
        else:
            text = str(value)
        pairs.append((name, text))
    return tuple(pairs)


def _kind_hint(slot: SlotSpec) -> str:
    if slot.kind == SlotKind.LIST:
        return "list"
    if slot.kind == SlotKind.STRUCTURED:
        if slot.properties:
            return "object with keys " + ", ".join(slot.properties)
        return "object"
    return "text"
