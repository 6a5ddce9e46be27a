"""
Error taxonomy for the attempt engine.

Every error carries the HTTP status it maps to and an optional payload that
is merged into the JSON body by the handler registered in ``main.py``.
"""

from __future__ import annotations

from typing import Any, Optional


class ExamEngineError(Exception):
    status_code: int = 400
    code: str = "error"

    def __init__(self, message: str, **payload: Any) -> None:
        super().__init__(message)
        self.message = message
        self.payload = payload

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.message, "code": self.code, **self.payload}


class ValidationError(ExamEngineError):
    status_code = 400
    code = "validation_error"

    def __init__(self, message: str, details: Optional[list[dict[str, Any]]] = None) -> None:
        if details:
            super().__init__(message, details=details)
        else:
            super().__init__(message)


class NotFoundError(ExamEngineError):
    status_code = 404
    code = "not_found"


class ForbiddenError(ExamEngineError):
    status_code = 403
    code = "forbidden"


class ConflictError(ExamEngineError):
    status_code = 409
    code = "conflict"

    def __init__(self, message: str, attempt_id: str) -> None:
        super().__init__(message, attempt_id=attempt_id, can_resume=True)
        self.attempt_id = attempt_id


class InactiveAttemptError(ExamEngineError):
    status_code = 400
    code = "inactive_attempt"

    def __init__(self, message: str = "Attempt no longer active") -> None:
        super().__init__(message, auto_submit=True)


class AlreadyCompletedError(ExamEngineError):
    status_code = 400
    code = "already_completed"

    def __init__(self, attempt_id: str, message: str = "Exam already submitted") -> None:
        super().__init__(message, attempt_id=attempt_id)
        self.attempt_id = attempt_id


class ExpiredError(ExamEngineError):
    status_code = 400
    code = "expired"

    def __init__(self, attempt_id: str, message: str = "Exam time expired") -> None:
        super().__init__(message, attempt_id=attempt_id)
        self.attempt_id = attempt_id


class NotSubmittedYetError(ExamEngineError):
    status_code = 400
    code = "not_submitted"

    def __init__(self, attempt_id: str, message: str = "Exam not yet submitted") -> None:
        super().__init__(message, attempt_id=attempt_id)
        self.attempt_id = attempt_id
