"""Scoring, streak and idempotent submission core for the quiz app."""
from .core.errors import AppError, InvalidArgumentError, NotFoundError, PersistenceError, TooFrequentError
from .features.calendar.service import CalendarService
from .features.progress.service import SubmissionOrchestrator, create_submission_orchestrator
from .features.scoring.engine import QuizScoringEngine

__all__ = [
    "AppError",
    "CalendarService",
    "InvalidArgumentError",
    "NotFoundError",
    "PersistenceError",
    "QuizScoringEngine",
    "SubmissionOrchestrator",
    "TooFrequentError",
    "create_submission_orchestrator",
]
