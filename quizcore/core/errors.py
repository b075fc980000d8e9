"""Error taxonomy shared by the scoring, calendar and submission layers."""

import logging
from typing import Optional

from quizcore.core.logging import get_submission_id


class AppError(Exception):
    code = "app_error"

    def __init__(self, message: str, *, code: Optional[str] = None, submission_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.submission_id = submission_id or get_submission_id()


class InvalidArgumentError(AppError, ValueError):
    """Malformed or out-of-range attempt data. Never persisted."""
    code = "invalid_argument"


class NotFoundError(AppError, LookupError):
    code = "not_found"


class TooFrequentError(AppError):
    """Raised when a (user, quiz) pair was written too recently."""
    code = "too_frequent"

    def __init__(self, message: str, *, retry_after_seconds: float, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after_seconds = max(0.0, float(retry_after_seconds))


class PersistenceError(AppError):
    code = "persistence_failure"


def error_payload(exc: AppError) -> dict:
    payload = {
        "error": {"code": exc.code, "message": exc.message, "submission_id": exc.submission_id},
        "detail": exc.message,
    }
    if isinstance(exc, TooFrequentError):
        payload["error"]["retry_after_seconds"] = exc.retry_after_seconds
    return payload


def log_app_error(exc: AppError, logger: Optional[logging.Logger] = None) -> None:
    log = logger or logging.getLogger("quizcore")
    log_level = logging.ERROR if isinstance(exc, PersistenceError) else logging.WARNING
    log.log(
        log_level,
        "app.error",
        extra={"submission_id": exc.submission_id, "error_code": exc.code, "error_message": exc.message},
    )
