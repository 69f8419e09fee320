"""
Result types returned by AssessmentManager.handle()

These are the only return types from the command handler. Every result
has to_dict() producing the JSON body the Flask layer sends.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from backend.contracts import RoutingDecision


@dataclass(frozen=True)
class TurnResult:
    """
    Successful start/answer/route processing.

    Returned by: StartSession, SubmitAnswer, RouteNext

    Attributes:
        session_id: Session identifier
        decision: Routing decision for the next step
        session: JSON-safe session export after the turn
        accepted: Whether an answer was recorded in this turn
    """
    session_id: str
    decision: RoutingDecision
    session: Dict[str, Any]
    accepted: bool = False

    @property
    def complete(self) -> bool:
        return self.decision.complete

    def to_dict(self) -> Dict[str, Any]:
        decision = self.decision.to_dict()
        return {
            'success': True,
            'sessionId': self.session_id,
            'accepted': self.accepted,
            'ready': True,
            'nextQuestion': decision['nextQuestion'],
            'decisionRationale': decision['rationale'],
            'block': decision['block'],
            'complete': decision['complete'],
            'followUpDepth': decision.get('followUpDepth', 0),
            'deepDiveArea': decision.get('deepDiveArea'),
            'summary': decision.get('summary'),
            'session': self.session,
        }


@dataclass(frozen=True)
class StatusResult:
    """
    Read-only session progress.

    Returned by: GetSessionStatus

    Attributes:
        session_metadata: Ids, timestamps, version and progress statistics
        current_block: Block value string
        answered_count: Distinct questions answered
        detected_areas: Deep-dive areas (locked or currently selected)
        complete: Whether routing has completed
        classification: Latest classification dict (or None)
    """
    session_metadata: Dict[str, Any]
    current_block: str
    answered_count: int
    detected_areas: list
    complete: bool
    classification: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': True,
            'sessionMetadata': self.session_metadata,
            'currentBlock': self.current_block,
            'answeredCount': self.answered_count,
            'detectedAreas': list(self.detected_areas),
            'complete': self.complete,
            'classification': self.classification,
        }


@dataclass(frozen=True)
class FinalReport:
    """
    Final diagnostic after completion.

    Returned by: FinalizeSession
    """
    session_id: str
    diagnostic: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': True,
            'sessionId': self.session_id,
            'diagnostic': self.diagnostic,
        }


@dataclass(frozen=True)
class ErrorResult:
    """
    Command rejected or failed.

    Examples:
    - SubmitAnswer for an unknown session (NOT_FOUND, 404)
    - SubmitAnswer with an invalid option (VALIDATION_ERROR, 400)
    - SubmitAnswer for an already answered question (STATE_CONFLICT, 409)
    - FinalizeSession before routing completed (STATE_CONFLICT, 409)

    Attributes:
        code: Machine-readable error code
        message: Human-readable explanation
        http_status: Status code for the HTTP layer
        details: Extra context (for STATE_CONFLICT: canonical session and decision)
    """
    code: str
    message: str
    http_status: int
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': False,
            'error': {
                'code': self.code,
                'message': self.message,
                'details': self.details,
            },
        }


Result = TurnResult | StatusResult | FinalReport | ErrorResult
