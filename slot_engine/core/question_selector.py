"""
Question Selector - Stateless choice of the next structured question

Responsibilities:
- Filter the template catalog down to eligible candidates
- Score candidates by coverage, confidence lift and fatigue risk
- Return the best candidate, or None when nothing is eligible

Design principles:
- Stateless: all state comes from the SlotState parameter
- Deterministic: same state and catalog always give the same template;
  equal scores resolve to the first-declared template
- Pure: selection never mutates state (the engine records a question only
  after it is emitted)
- Fatigue lowers a score, it never removes eligibility

Scoring:
    coverage        = |{s in targets : needs_question(s)}| / |targets|
    confidence_lift = 1 - mean(confidence(s) for s in targets)
    fatigue_risk    = +0.2 if max_answer_tokens > 120
                      +0.5 if id in the last 3 asked template ids
                      +0.3 if mean(attempts(s) for s in targets) > 1
                      clamped to [0, 1]
    score           = priority + 3*coverage + 2*confidence_lift - fatigue_risk
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from slot_engine.contracts import QuestionTemplate
from slot_engine.core.eligibility import evaluate_predicate

logger = logging.getLogger(__name__)

COVERAGE_WEIGHT = 3.0
CONFIDENCE_LIFT_WEIGHT = 2.0

LONG_ANSWER_TOKENS = 120
LONG_ANSWER_PENALTY = 0.2
RECENTLY_ASKED_PENALTY = 0.5
REPEATED_ATTEMPTS_PENALTY = 0.3

# Scores closer than this are treated as equal
SCORE_EPSILON = 1e-9


@dataclass(frozen=True)
class ScoredTemplate:
    """One candidate with its score breakdown"""
    template: QuestionTemplate
    score: float
    coverage: float
    confidence_lift: float
    fatigue_risk: float
    declaration_index: int


def ranks_above(candidate: ScoredTemplate, other: ScoredTemplate) -> bool:
    """
    Selection order: higher score first; scores within SCORE_EPSILON
    go to the template declared earlier in the catalog.
    """
    if abs(candidate.score - other.score) <= SCORE_EPSILON:
        return candidate.declaration_index < other.declaration_index
    return candidate.score > other.score


class QuestionSelector:
    """
    Stateless question selector.

    Does not track any state internally - all state comes from SlotState.
    """

    def __init__(self, recent_window: int = 3):
        """
        Args:
            recent_window: How many recent template ids count as "recently asked"
        """
        self.recent_window = recent_window
        logger.info(f"Question Selector initialized (recent_window={recent_window})")

    # =========================================================================
    # Public API
    # =========================================================================

    def select_next(self, state, catalog) -> Optional[QuestionTemplate]:
        """
        Pick the next template.

        Args:
            state: SlotState
            catalog: TemplateCatalog (iteration order = declaration order)

        Returns:
            QuestionTemplate, or None when no template is eligible (the
            authoritative "no more structured questions" signal)
        """
        best: Optional[ScoredTemplate] = None
        for scored in self.score_candidates(state, catalog):
            if best is None or ranks_above(scored, best):
                best = scored

        if best is None:
            logger.info(f"Session {state.session_id}: no eligible templates")
            return None

        logger.info(
            f"Session {state.session_id}: selected {best.template.id} "
            f"(score={best.score:.2f}, coverage={best.coverage:.2f}, "
            f"lift={best.confidence_lift:.2f}, fatigue={best.fatigue_risk:.2f})"
        )
        return best.template

    def score_candidates(self, state, catalog) -> List[ScoredTemplate]:
        """
        Score every eligible template, in declaration order.

        Exposed for debugging and tests; select_next is the decision.
        """
        scored = []
        for index, template in enumerate(catalog):
            if not self.is_eligible(template, state):
                logger.debug(f"Template {template.id}: not eligible")
                continue
            scored.append(self.score(template, state, index))
        return scored

    def is_eligible(self, template: QuestionTemplate, state) -> bool:
        """
        Check a template against the eligibility rules.

        Rules:
        - Its eligibility predicate is true
        - Every dependency slot meets its own min_confidence
        - Every target slot has its depends_on satisfied
        """
        if not evaluate_predicate(template.eligibility, state):
            return False
        if not all(state.meets_min_confidence(name) for name in template.dependency_slots):
            return False
        if not all(state.dependencies_satisfied(name) for name in template.target_slots):
            return False
        return True

    def score(self, template: QuestionTemplate, state, declaration_index: int = 0) -> ScoredTemplate:
        targets = template.target_slots
        count = len(targets)

        coverage = sum(1 for s in targets if state.needs_question(s)) / count
        avg_confidence = sum(state.confidence_of(s) for s in targets) / count
        confidence_lift = 1.0 - avg_confidence
        fatigue_risk = self._fatigue_risk(template, state)

        score = (
            template.priority
            + COVERAGE_WEIGHT * coverage
            + CONFIDENCE_LIFT_WEIGHT * confidence_lift
            - fatigue_risk
        )
        return ScoredTemplate(
            template=template,
            score=score,
            coverage=coverage,
            confidence_lift=confidence_lift,
            fatigue_risk=fatigue_risk,
            declaration_index=declaration_index,
        )

    # =========================================================================
    # Scoring Helpers
    # =========================================================================

    def _fatigue_risk(self, template: QuestionTemplate, state) -> float:
        risk = 0.0
        if template.max_answer_tokens > LONG_ANSWER_TOKENS:
            risk += LONG_ANSWER_PENALTY
        if template.id in state.recent_template_ids(self.recent_window):
            risk += RECENTLY_ASKED_PENALTY
        attempts = [state.get_slot(s).attempts for s in template.target_slots]
        if sum(attempts) / len(attempts) > 1:
            risk += REPEATED_ATTEMPTS_PENALTY
        return min(1.0, max(0.0, risk))
