"""
Command types for AssessmentManager control flow.

Commands are the only public interface to AssessmentManager.handle().
The Flask layer and the console harness build commands from client input
and never touch the session store directly.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class StartSession:
    """
    Create a session and route its first question.

    Returns: TurnResult with the first question.
    """
    initial_context: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SubmitAnswer:
    """
    Record an answer and route the next question.

    correction=True replaces the effective answer of an already answered
    question (a new revision is appended, history is kept).

    Returns: TurnResult, or ErrorResult STATE_CONFLICT for duplicate or
    unexpected submissions.
    """
    session_id: str
    question_id: str
    value: Any
    correction: bool = False


@dataclass(frozen=True)
class RouteNext:
    """
    Route the next question, optionally recording `last_answer` first.

    last_answer: {'questionId': str, 'value': Any} or None
    Returns: TurnResult.
    """
    session_id: str
    last_answer: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class GetSessionStatus:
    """
    Read-only progress snapshot.

    Returns: StatusResult.
    """
    session_id: str


@dataclass(frozen=True)
class FinalizeSession:
    """
    Generate the diagnostic and close the session.

    Only valid once routing has completed.
    Returns: FinalReport.
    """
    session_id: str


# Command union type for type hints
Command = StartSession | SubmitAnswer | RouteNext | GetSessionStatus | FinalizeSession
