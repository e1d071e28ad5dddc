"""
Completion Evaluator - decide whether the interview can stop

Two independent checks:
- Structural (can_generate_brief): every required slot is ready AND at
  least min_question_floor questions were asked
- Heuristic continuation (should_continue): stop when
    (a) total_questions >= max_questions, or
    (b) keyword-category coverage >= coverage_threshold AND a closing
        template has been asked, or
    (c) the two most recent answers are both shorter than
        fatigue_answer_length
  While total_questions < min_question_floor the interview always
  continues, overriding (b) and (c).

Keyword coverage scans the lower-cased concatenation of every question and
answer for any keyword of each configured category (plain substring match)
and reports the fraction of categories hit.
"""

import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, Optional, Sequence

from slot_engine.config import EngineConfig
from slot_engine.core.slot_state import CompletionSummary

logger = logging.getLogger(__name__)

REASON_BELOW_FLOOR = "below_min_questions"
REASON_MAX_QUESTIONS = "max_questions_reached"
REASON_COVERAGE = "keyword_coverage_met"
REASON_FATIGUE = "respondent_fatigue"
REASON_CONTINUE = "continue"

STOP_REASONS = frozenset({REASON_MAX_QUESTIONS, REASON_COVERAGE, REASON_FATIGUE})


@dataclass(frozen=True)
class Evaluation:
    """Result of one completion check"""
    can_generate_brief: bool
    should_continue: bool
    reason: str
    keyword_coverage: float
    summary: CompletionSummary


def keyword_coverage(texts: Iterable[str], categories: Dict[str, Sequence[str]]) -> float:
    """Fraction of categories with at least one keyword present in texts"""
    if not categories:
        return 0.0
    corpus = " ".join(texts).lower()
    covered = sum(
        1 for keywords in categories.values()
        if any(keyword.lower() in corpus for keyword in keywords)
    )
    return covered / len(categories)


class CompletionEvaluator:
    """Structural and heuristic stop checks"""

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        closing_template_ids: Iterable[str] = ()
    ) -> None:
        """
        Args:
            config: Engine limits (defaults to EngineConfig())
            closing_template_ids: Templates that count as a closing question
        """
        self.config = config or EngineConfig()
        self.closing_template_ids: FrozenSet[str] = frozenset(closing_template_ids)

    def evaluate(self, state, schema=None) -> Evaluation:
        """
        Evaluate a session.

        Args:
            state: SlotState
            schema: Schema (defaults to the one the state was built with)

        Returns:
            Evaluation
        """
        schema = schema if schema is not None else state.schema
        config = self.config

        summary = state.completion_summary()
        required_ready = all(state.is_ready(slot.name) for slot in schema.required_slots())
        can_generate_brief = required_ready and state.total_questions >= config.min_question_floor

        texts = []
        for turn in state.history:
            texts.append(turn.question_text)
            texts.append(turn.answer_text)
        coverage = keyword_coverage(texts, config.keyword_categories)

        reason = self._continuation_reason(state, coverage)
        should_continue = reason not in STOP_REASONS

        logger.info(
            f"Session {state.session_id}: evaluate -> continue={should_continue} "
            f"({reason}), brief_ready={can_generate_brief}, "
            f"questions={state.total_questions}, coverage={coverage:.2f}"
        )
        return Evaluation(
            can_generate_brief=can_generate_brief,
            should_continue=should_continue,
            reason=reason,
            keyword_coverage=coverage,
            summary=summary,
        )

    def _continuation_reason(self, state, coverage: float) -> str:
        config = self.config

        if state.total_questions < config.min_question_floor:
            return REASON_BELOW_FLOOR

        if state.total_questions >= config.max_questions:
            return REASON_MAX_QUESTIONS

        closing_asked = any(t in self.closing_template_ids for t in state.asked_template_ids)
        if coverage >= config.coverage_threshold and closing_asked:
            return REASON_COVERAGE

        recent_answers = [turn.answer_text for turn in state.history[-2:]]
        if len(recent_answers) == 2 and all(
            len(answer.strip()) < config.fatigue_answer_length for answer in recent_answers
        ):
            return REASON_FATIGUE

        return REASON_CONTINUE
