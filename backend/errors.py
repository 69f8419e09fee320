"""
Error types for the assessment backend.

Components raise these; AssessmentManager converts them into ErrorResult
and app.py maps ErrorResult onto HTTP responses. Each class carries the
machine code and HTTP status it is reported with.
"""

from typing import Any, Dict, Optional


class AssessmentError(Exception):
    """Base class for all expected assessment failures."""

    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            'code': self.code,
            'message': self.message,
            'details': dict(self.details),
        }


class ValidationError(AssessmentError):
    """Malformed request or answer that does not fit its question."""
    code = "VALIDATION_ERROR"
    http_status = 400


class NotFoundError(AssessmentError):
    """Unknown or expired session, unknown question id."""
    code = "NOT_FOUND"
    http_status = 404


class StateConflictError(AssessmentError):
    """Request does not match the session's current state (duplicate answer, block regression)."""
    code = "STATE_CONFLICT"
    http_status = 409


class ExternalServiceError(AssessmentError):
    """Text-generation service failed or timed out."""
    code = "EXTERNAL_SERVICE_ERROR"
    http_status = 503


class InternalError(AssessmentError):
    code = "INTERNAL_ERROR"
    http_status = 500
