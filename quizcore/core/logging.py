"""
Structured logging for the quiz core.

Every log line written while a submission is being processed carries that
submission's id, so one attempt can be followed across scoring, the
idempotency guard and the repository. The library only attaches a
NullHandler; hosts call configure_logging() to get output.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional, TextIO
from uuid import uuid4

LOGGER_NAME = "quizcore"

submission_id_ctx_var: ContextVar[Optional[str]] = ContextVar("submission_id", default=None)

logging.getLogger(LOGGER_NAME).addHandler(logging.NullHandler())


def get_submission_id(default: Optional[str] = None) -> Optional[str]:
    sid = submission_id_ctx_var.get()
    return sid if sid is not None else default


@contextmanager
def submission_context(submission_id: Optional[str] = None) -> Iterator[str]:
    """Bind a submission id (a fresh uuid4 by default) for the duration of the block."""
    sid = submission_id or str(uuid4())
    token = submission_id_ctx_var.set(sid)
    try:
        yield sid
    finally:
        submission_id_ctx_var.reset(token)


def _utc_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


class SubmissionIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "submission_id", None) is None:
            record.submission_id = get_submission_id()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line; only the correlation fields we emit are copied."""

    EXTRA_FIELDS = ("user_id", "quiz_id", "event_type", "error_code")

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _utc_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "submission_id": getattr(record, "submission_id", None),
        }
        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        sid = getattr(record, "submission_id", None)
        sid_part = f" [sid={sid}]" if sid else ""
        return f"{_utc_timestamp(record)} {record.levelname} [{LOGGER_NAME}]{sid_part} {record.getMessage()}"


class _QuizcoreHandler(logging.StreamHandler):
    """Marker type so configure_logging can replace only what it installed."""


def configure_logging(env: Optional[str] = None, level: int = logging.INFO, stream: Optional[TextIO] = None) -> logging.Handler:
    """
    Attach a stream handler to the `quizcore` logger.

    JSON lines when env is "production", pretty lines otherwise. `env`
    defaults to settings.ENV. Calling again swaps the handler instead of
    stacking a second one; handlers added by the host are left alone.
    """
    if env is None:
        from quizcore.core.config import settings

        env = settings.ENV

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    handler = _QuizcoreHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(SubmissionIdFilter())

    logger.handlers = [h for h in logger.handlers if not isinstance(h, _QuizcoreHandler)] + [handler]
    return handler


def _safe_truncate(value, limit: int = 500):
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    submission_id: Optional[str] = None,
    user_id: Optional[str] = None,
    quiz_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Log `msg` on the quizcore logger with correlation fields; extra values are stringified and truncated."""
    payload = {
        "submission_id": submission_id or get_submission_id(),
        "user_id": user_id,
        "quiz_id": quiz_id,
    }
    if event_type:
        payload["event_type"] = event_type
    if error_code:
        payload["error_code"] = error_code
    if extra:
        for k, v in extra.items():
            payload[k] = _safe_truncate(v)

    logger = logging.getLogger(LOGGER_NAME)
    getattr(logger, level, logger.info)(msg, extra=payload)
