"""
Result types returned by InterviewEngine.start_session() / handle_answer()

These are the ONLY return types from the turn handlers.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from slot_engine.contracts import Question
from slot_engine.core.completion_evaluator import Evaluation


@dataclass(frozen=True)
class TurnResult:
    """
    Successful turn processing result.

    Attributes:
        session_id: Session the turn belongs to
        system_output: Text to show the respondent (next question or
            closing message)
        question: The emitted question, None when the interview ended
        session_complete: Interview is over; further answers are rejected
        evaluation: Completion check after this turn
        accepted_slots: Slots updated from this answer
        stop_reason: Why the interview ended (None while it continues)
        debug: Extraction metadata, candidate scores, rejected writes
    """
    session_id: str
    system_output: str
    question: Optional[Question]
    session_complete: bool
    evaluation: Optional[Evaluation] = None
    accepted_slots: Tuple[str, ...] = ()
    stop_reason: Optional[str] = None
    debug: Dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class IllegalCommand:
    """
    Command rejected by the engine (invalid lifecycle transition).

    Examples:
    - handle_answer on a completed session
    - start_session on a session that already asked a question

    Attributes:
        reason: Human-readable explanation
        command_type: Name of the rejected operation
    """
    reason: str
    command_type: str
