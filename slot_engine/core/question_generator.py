"""
Fallback Question Generator - one question for slots no template covers

Used when the structured catalog is exhausted but slots are still
incomplete. Asks the language model for ONE question constrained to the
target slots, showing it the last few questions so it does not repeat them.

Outcomes:
- Question: model-authored (source='model') or deterministic
  (source='deterministic_fallback') when the model is unavailable
- None: the model answered with the stop sentinel or nothing at all, or
  every deterministic prompt was asked recently; the engine treats this
  exactly like the selector's structural None
"""

import logging
from typing import Optional, Sequence

from slot_engine.contracts import GENERATED_TEMPLATE_ID, Question
from slot_engine.utils.prompt_builder import (
    STOP_SENTINEL,
    PromptBuilder,
    QuestionPromptSpec,
    create_slot_specs,
    format_excerpt,
    gathered_pairs,
)

logger = logging.getLogger(__name__)

SOURCE_MODEL = "model"
SOURCE_FALLBACK = "deterministic_fallback"

GENERIC_QUESTION = "Is there anything else important about this project that we should discuss?"


class FallbackQuestionGenerator:
    """Generate a single follow-up question for specific slots"""

    def __init__(
        self,
        model_client=None,
        timeout_seconds: float = 30.0,
        recent_window: int = 3,
        temperature: float = 0.4,
        max_tokens: int = 100,
        prompt_builder: Optional[PromptBuilder] = None
    ) -> None:
        """
        Args:
            model_client: Object with generate(prompt=..., max_tokens=...,
                temperature=..., timeout=...) -> str, or None for
                deterministic questions only

        Raises:
            TypeError: If model_client lacks a callable generate
        """
        if model_client is not None and not callable(getattr(model_client, 'generate', None)):
            raise TypeError("model_client must have callable generate() method")

        self.model_client = model_client
        self.timeout_seconds = timeout_seconds
        self.recent_window = recent_window
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.prompt_builder = prompt_builder or PromptBuilder()

    def generate(self, state, target_slots: Sequence[str]) -> Optional[Question]:
        """
        Produce one question for the target slots.

        Args:
            state: SlotState (history, recent questions, gathered values)
            target_slots: Slots the question should gather

        Returns:
            Question, or None as the stop signal

        Raises:
            SchemaViolation: If a target slot is not in the schema
        """
        targets = tuple(dict.fromkeys(target_slots))
        if not targets:
            return None

        slot_specs = create_slot_specs(targets, state.schema)
        recent = tuple(state.recent_questions(self.recent_window))

        if self.model_client is None:
            return self._deterministic_question(state, targets, recent)

        spec = QuestionPromptSpec(
            slots=slot_specs,
            recent_questions=recent,
            conversation_excerpt=format_excerpt(state.history, self.recent_window),
            gathered=gathered_pairs(state.ready_values()),
        )
        prompt = self.prompt_builder.build_question_prompt(spec)

        try:
            output = self.model_client.generate(
                prompt=prompt,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                timeout=self.timeout_seconds
            )
        except Exception as e:
            logger.error(f"Question generation failed: {type(e).__name__} - {e}")
            return self._deterministic_question(state, targets, recent)

        text = self._clean(output)
        if not text or text.upper().rstrip('.!') == STOP_SENTINEL:
            logger.info(f"Model declined to ask about {list(targets)}")
            return None

        logger.info(f"Generated question for {list(targets)}: {text}")
        return Question(
            template_id=GENERATED_TEMPLATE_ID,
            text=text,
            target_slots=targets,
            explicit_slots=targets,
            source=SOURCE_MODEL,
        )

    def _clean(self, output) -> str:
        if not isinstance(output, str):
            return ""
        lines = [line.strip() for line in output.strip().splitlines() if line.strip()]
        if not lines:
            return ""
        return lines[0].strip('"\'` ')

    def _deterministic_question(self, state, targets, recent) -> Optional[Question]:
        """
        Build a question without the model.

        Walks the target slots in order and uses the first whose prompt
        was not asked recently; None once they all were.
        """
        for name in targets:
            definition = state.schema.get(name)
            if definition.fallback_prompt:
                text = definition.fallback_prompt
            elif definition.description:
                text = f"Could you tell me more about this: {definition.description}"
            else:
                text = GENERIC_QUESTION
            if text in recent:
                continue
            logger.info(f"Deterministic fallback question for {name}")
            return Question(
                template_id=GENERATED_TEMPLATE_ID,
                text=text,
                target_slots=(name,),
                explicit_slots=(name,),
                source=SOURCE_FALLBACK,
            )

        logger.info(f"All fallback prompts for {list(targets)} asked recently")
        return None
