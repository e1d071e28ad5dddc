"""
Interview Engine - one answer cycle of the slot-filling interview

Responsibilities:
- Load SlotState, extract from the answer, apply accepted values
- Ask the Completion Evaluator whether to stop
- Pick the next question (template first, generated fallback second)
- Persist SlotState after every turn
- Reject lifecycle misuse with IllegalCommand

Design principles:
- Ephemeral per turn: no session state held between calls, all
  collaborators injected
- Thin orchestration layer (business logic in specialized modules)
- Structural errors (SchemaViolation) abort the turn before save
- Model errors degrade to "no new information this turn"
- A turn always ends with a next question or a termination signal

Control flow per answer:
    load -> extract -> update_slot* -> evaluate -> select / generate -> save
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Union

from slot_engine.contracts import Extraction, Question, QuestionTemplate
from slot_engine.core.extraction_adapter import unreachable_slots
from slot_engine.errors import PolicyViolation
from slot_engine.results import IllegalCommand, TurnResult
from slot_engine.utils.prompt_builder import format_excerpt, gathered_pairs

logger = logging.getLogger(__name__)

SOURCE_TEMPLATE = "template"

SUMMARY_PLACEHOLDER = "{summary}"
EMPTY_SUMMARY = "what we have discussed so far"

REASON_NO_QUESTIONS = "no_eligible_questions"

COMPLETION_MESSAGE = (
    "Thank you - that covers what we need for now. "
    "Your answers will be used to prepare the project brief."
)

# Slots offered to the fallback generator per question
MAX_FALLBACK_TARGETS = 3


class InterviewEngine:
    """
    Orchestrates the adaptive slot-filling interview.

    Functional core design:
    - schema, catalog and collaborators cached (stateless or injected)
    - every call loads state, transforms it, saves it
    """

    def __init__(
        self,
        schema,
        catalog,
        persistence,
        extraction_adapter,
        question_selector,
        question_generator,
        completion_evaluator
    ):
        """
        Args:
            schema: Schema
            catalog: TemplateCatalog built against schema
            persistence: PersistenceAdapter
            extraction_adapter: ExtractionAdapter
            question_selector: QuestionSelector
            question_generator: FallbackQuestionGenerator
            completion_evaluator: CompletionEvaluator

        Raises:
            TypeError: If any collaborator lacks its required method
            ValueError: If catalog was built against a different schema
        """
        self._validate_modules(persistence, extraction_adapter, question_selector,
                               question_generator, completion_evaluator)
        if getattr(catalog, 'schema', schema) is not schema:
            raise ValueError("catalog was built against a different schema")

        self.schema = schema
        self.catalog = catalog
        self.persistence = persistence
        self.extractor = extraction_adapter
        self.selector = question_selector
        self.generator = question_generator
        self.evaluator = completion_evaluator

        unreachable = unreachable_slots(schema)
        if unreachable:
            logger.warning(
                f"Slots {unreachable} have min_confidence above what calibrated "
                f"extraction can reach; they will never become ready"
            )

        logger.info(
            f"Interview Engine initialized ({len(schema)} slots, {len(catalog)} templates)"
        )

    def _validate_modules(self, persistence, extraction_adapter, question_selector,
                          question_generator, completion_evaluator):
        """Validate collaborator interfaces"""
        required = (
            (persistence, 'persistence', ('load_state', 'save_state')),
            (extraction_adapter, 'extraction_adapter', ('extract',)),
            (question_selector, 'question_selector', ('select_next',)),
            (question_generator, 'question_generator', ('generate',)),
            (completion_evaluator, 'completion_evaluator', ('evaluate',)),
        )
        for module, label, methods in required:
            for method in methods:
                if not callable(getattr(module, method, None)):
                    raise TypeError(f"{label} must have callable {method}() method")

    # ========================
    # Turn handlers
    # ========================

    def start_session(self, session_id: str) -> Union[TurnResult, IllegalCommand]:
        """
        Emit the opening question of a session.

        Returns:
            TurnResult with the first question, or IllegalCommand if the
            session already started or finished
        """
        state = self.persistence.load_state(session_id, self.schema)

        if state.completed:
            return IllegalCommand(
                reason=f"Session {session_id} is already completed",
                command_type="start_session",
            )
        if state.total_questions > 0 or state.history:
            return IllegalCommand(
                reason=f"Session {session_id} has already started",
                command_type="start_session",
            )

        question = self.next_question(state)
        if question is None:
            return self._finish(state, REASON_NO_QUESTIONS, evaluation=None, debug={})

        state.record_question_asked(question)
        self.persistence.save_state(state)
        return TurnResult(
            session_id=session_id,
            system_output=question.text,
            question=question,
            session_complete=False,
        )

    def handle_answer(self, session_id: str, answer_text: str) -> Union[TurnResult, IllegalCommand]:
        """
        Process one answer.

        The answer is matched to the pending question. With no pending
        question (an opening statement before any question) every slot is
        a target and none counts as explicitly asked.

        Returns:
            TurnResult, or IllegalCommand if the session is completed

        Raises:
            TypeError: If answer_text is not a string
            SchemaViolation: Structural schema/state bug; state is not saved
        """
        if not isinstance(answer_text, str):
            raise TypeError(f"answer_text must be string, got {type(answer_text).__name__}")

        state = self.persistence.load_state(session_id, self.schema)

        if state.completed:
            logger.warning(f"Answer rejected: session {session_id} is completed")
            return IllegalCommand(
                reason=f"Session {session_id} is completed; answers are no longer accepted",
                command_type="handle_answer",
            )

        question = state.pending_question
        if question is not None:
            targets = question.target_slots
            explicit = question.explicit_slots
            context = question.text
        else:
            targets = self.schema.slot_names
            explicit = ()
            context = ""

        extractions = self.extract_from_answer(
            answer_text,
            context,
            targets,
            explicit_slots=explicit,
            conversation_excerpt=format_excerpt(state.history),
            state=state,
        )
        accepted, rejected = self.apply_extractions(
            state, extractions, answer_text, context, explicit,
            count_misses=question is not None, targets=targets,
        )
        state.record_turn(answer_text)

        debug: Dict[str, Any] = {
            'extraction': dict(getattr(self.extractor, 'last_metadata', {}) or {}),
            'rejected_writes': rejected,
        }

        evaluation = self.evaluate(state)
        if not evaluation.should_continue:
            return self._finish(state, evaluation.reason, evaluation, debug, accepted)

        next_q = self.next_question(state, debug)
        if next_q is None:
            return self._finish(state, REASON_NO_QUESTIONS, evaluation, debug, accepted)

        state.record_question_asked(next_q)
        self.persistence.save_state(state)
        return TurnResult(
            session_id=session_id,
            system_output=next_q.text,
            question=next_q,
            session_complete=False,
            evaluation=evaluation,
            accepted_slots=tuple(accepted),
            debug=debug,
        )

    # ========================
    # Component API
    # ========================

    def select_next_question(self, state, catalog=None) -> Optional[QuestionTemplate]:
        """Best eligible template, or None (never mutates state)"""
        return self.selector.select_next(state, catalog if catalog is not None else self.catalog)

    def extract_from_answer(
        self,
        answer_text: str,
        question_context: str,
        target_slots: Sequence[str],
        schema=None,
        explicit_slots: Sequence[str] = (),
        conversation_excerpt: Sequence[str] = (),
        state=None
    ) -> Dict[str, Extraction]:
        """Accepted extractions, keyed by slot (always a subset of target_slots)"""
        return self.extractor.extract(
            answer_text,
            question_context,
            target_slots,
            schema if schema is not None else self.schema,
            explicit_slots=explicit_slots,
            conversation_excerpt=conversation_excerpt,
            state=state,
        )

    def generate_fallback_question(self, state, target_slots: Sequence[str]) -> Optional[Question]:
        """Model-authored (or deterministic) question, None as the stop signal"""
        return self.generator.generate(state, target_slots)

    def evaluate(self, state, schema=None):
        return self.evaluator.evaluate(state, schema if schema is not None else self.schema)

    # ========================
    # Helpers
    # ========================

    def next_question(self, state, debug: Optional[Dict[str, Any]] = None) -> Optional[Question]:
        """
        Decide the next question without recording it.

        Template first; when no template is eligible but required slots
        are still incomplete, a generated fallback question.
        """
        if debug is not None and callable(getattr(self.selector, 'score_candidates', None)):
            debug['candidates'] = [
                {
                    'template_id': s.template.id,
                    'topic': s.template.topic,
                    'score': round(s.score, 4),
                }
                for s in self.selector.score_candidates(state, self.catalog)
            ]

        template = self.select_next_question(state)
        if template is not None:
            return Question(
                template_id=template.id,
                text=self.render_prompt(template, state),
                target_slots=template.target_slots,
                explicit_slots=template.target_slots,
                source=SOURCE_TEMPLATE,
            )

        targets = self.fallback_targets(state)
        if not targets:
            logger.info(f"Session {state.session_id}: no incomplete required slots left to ask about")
            return None

        return self.generate_fallback_question(state, targets)

    def fallback_targets(self, state) -> List[str]:
        """
        Required slots that still need a question and are askable now.

        Ordered so dependencies come before dependents.
        """
        targets = []
        for name in self.schema.topological_order:
            definition = self.schema.get(name)
            if not definition.required:
                continue
            if state.needs_question(name) and state.dependencies_satisfied(name):
                targets.append(name)
        return targets[:MAX_FALLBACK_TARGETS]

    def render_prompt(self, template: QuestionTemplate, state) -> str:
        """Fill the {summary} placeholder from ready slot values"""
        if SUMMARY_PLACEHOLDER not in template.prompt:
            return template.prompt
        pairs = gathered_pairs(state.ready_values())
        summary = "; ".join(f"{name}: {text}" for name, text in pairs) or EMPTY_SUMMARY
        return template.prompt.replace(SUMMARY_PLACEHOLDER, summary)

    def apply_extractions(
        self,
        state,
        extractions: Dict[str, Extraction],
        answer_text: str,
        question_context: str,
        explicit_slots: Sequence[str],
        count_misses: bool = True,
        targets: Sequence[str] = ()
    ):
        """
        Write accepted extractions into state.

        PolicyViolation is logged and skipped. SchemaViolation propagates.
        Targets with no extraction get an attempt recorded when
        count_misses is set.

        Returns:
            (accepted slot names, rejected write descriptions)
        """
        explicit = set(explicit_slots)
        accepted: List[str] = []
        rejected: List[Dict[str, str]] = []

        for name, extraction in extractions.items():
            try:
                state.update_slot(
                    name,
                    extraction.value,
                    extraction.confidence,
                    answer_text,
                    explicit=name in explicit,
                    question_context=question_context,
                    reasoning=extraction.reasoning,
                )
                accepted.append(name)
            except PolicyViolation as e:
                logger.warning(f"Session {state.session_id}: {e}")
                rejected.append({'slot': name, 'reason': str(e)})

        if count_misses:
            for name in targets:
                if name not in extractions:
                    state.record_attempt(name)

        if accepted:
            logger.info(f"Session {state.session_id}: updated {accepted}")
        return accepted, rejected

    def _finish(self, state, reason: str, evaluation, debug: Dict[str, Any],
                accepted: Sequence[str] = ()) -> TurnResult:
        state.mark_completed()
        self.persistence.save_state(state)
        logger.info(f"Session {state.session_id} finished: {reason}")
        return TurnResult(
            session_id=state.session_id,
            system_output=COMPLETION_MESSAGE,
            question=None,
            session_complete=True,
            evaluation=evaluation,
            accepted_slots=tuple(accepted),
            stop_reason=reason,
            debug=debug,
        )
