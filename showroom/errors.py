"""
Exception types shared by the orchestration core and the HTTP routes.

Each error carries a message, a short code and optional details so the
FastAPI exception handler can render it as JSON without knowing the subclass.
"""

from typing import Any, Dict, Optional


class ShowroomError(Exception):
    default_code = "showroom_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body

    def __str__(self) -> str:
        return self.message


class ValidationError(ShowroomError):
    """Bad input or a violated precondition."""
    default_code = "validation_error"
    status_code = 400


class NotFoundError(ShowroomError):
    default_code = "not_found"
    status_code = 404


class ConflictError(ShowroomError):
    default_code = "conflict"
    status_code = 409


class ProviderError(ShowroomError):
    """A transformation provider answered with a non-success response."""
    default_code = "provider_error"
    status_code = 502

    def __init__(self, message: str, *, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.http_status = http_status


class SubmissionError(ShowroomError):
    """Both the primary and the fallback provider failed for one image.

    ``message`` is always the primary failure; the fallback failure is kept
    in ``fallback_error``.
    """
    default_code = "submission_error"
    status_code = 502

    def __init__(self, message: str, *, fallback_error: Optional[BaseException] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.fallback_error = fallback_error


class BatchProcessingError(ShowroomError):
    """No image in the batch produced a usable result."""
    default_code = "batch_failed"
    status_code = 502


class PersistenceError(ShowroomError):
    """Saving the selected images to the listing failed."""
    default_code = "persistence_error"
    status_code = 500
