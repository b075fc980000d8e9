from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

from quizcore.core.config import Settings, settings
from quizcore.core.errors import AppError, InvalidArgumentError, PersistenceError, TooFrequentError, log_app_error
from quizcore.core.idempotency import (
    IdempotencyGuard,
    InMemoryIdempotencyLedger,
    SqlIdempotencyLedger,
    build_idempotency_key,
)
from quizcore.core.logging import log_event, submission_context
from quizcore.core.metrics import METRICS, MetricsRegistry, streak_write_failures_total, submissions_total
from quizcore.features.calendar.service import CalendarService
from quizcore.features.progress.repository import (
    InMemoryProgressRepository,
    ProgressRepository,
    SqlProgressRepository,
)
from quizcore.features.scoring.engine import QuizScoringEngine
from quizcore.models.progress import SubmissionResult, UserProgressRecord
from quizcore.models.scoring import LevelProgress, QuizAttemptInput, QuizScoreResult
from quizcore.models.streak import StreakState, StreakTransition


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_finite_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


class SubmissionOrchestrator:
    """
    Turns a finished quiz attempt into durable progress.

    Validate -> dedup -> score -> compare with stored best -> rate limit ->
    persist progress -> advance streak. Only improving attempts write, and a
    streak write failure never fails the submission.
    """

    OPERATION = "submit_quiz_attempt"

    def __init__(
        self,
        repository: ProgressRepository,
        *,
        guard: Optional[IdempotencyGuard] = None,
        scoring: type = QuizScoringEngine,
        calendar: Optional[CalendarService] = None,
        settings_obj: Optional[Settings] = None,
        now_fn: Optional[Callable[[], datetime]] = None,
        metrics: Optional[MetricsRegistry] = None,
    ):
        cfg = settings_obj or settings
        self.repository = repository
        self.scoring = scoring
        self._now_fn = now_fn or _utc_now
        self._metrics = metrics or METRICS
        self.calendar = calendar or CalendarService(cfg.APP_TIMEZONE, now_fn=self._now_fn)
        self.guard = guard or IdempotencyGuard(
            ttl_seconds=cfg.IDEMPOTENCY_TTL_SECONDS,
            backoff_seconds=cfg.IDEMPOTENCY_BACKOFF_SECONDS,
            now_fn=self._now_fn,
            metrics=self._metrics,
        )
        self.min_interval = timedelta(seconds=cfg.SUBMISSION_MIN_INTERVAL_SECONDS)
        self.max_questions = cfg.MAX_QUESTIONS_PER_QUIZ

    async def submit_quiz_attempt(
        self,
        user_id: str,
        quiz_id: str,
        correct_answers: int,
        total_questions: int,
        elapsed_seconds: float = 0,
    ) -> SubmissionResult:
        """
        Submit one finished attempt.

        Raises:
            InvalidArgumentError: malformed counts or durations
            NotFoundError: unknown quiz
            TooFrequentError: the pair was written less than the minimum interval ago
            PersistenceError: the store failed before progress was written
        """
        with submission_context():
            try:
                self.validate_submission(correct_answers, total_questions, elapsed_seconds)
                total, correct = await self._authoritative_counts(quiz_id, correct_answers, total_questions)
                key = build_idempotency_key(user_id, self.OPERATION, quiz_id, correct, total)
                result = await self.guard.run_once(
                    key,
                    lambda: self._apply_attempt(user_id, quiz_id, correct, total, elapsed_seconds),
                )
            except AppError as exc:
                submissions_total(self._metrics).inc({"outcome": exc.code})
                log_app_error(exc)
                raise

            submissions_total(self._metrics).inc({"outcome": self._outcome(result)})
            return result

    def get_level_progress(self, total_xp: int) -> LevelProgress:
        return self.scoring.level_from_xp(total_xp)

    def validate_submission(self, correct_answers: int, total_questions: int, elapsed_seconds: float = 0) -> None:
        if not _is_int(total_questions) or not 0 < total_questions <= self.max_questions:
            raise InvalidArgumentError(
                f"total_questions must be between 1 and {self.max_questions} (got {total_questions!r})"
            )
        if not _is_int(correct_answers) or not 0 <= correct_answers <= total_questions:
            raise InvalidArgumentError(
                f"correct_answers must be between 0 and {total_questions} (got {correct_answers!r})"
            )
        if not _is_finite_number(elapsed_seconds) or elapsed_seconds < 0:
            raise InvalidArgumentError(f"elapsed_seconds must be a finite, non-negative number (got {elapsed_seconds!r})")

    # Internal helpers -------------------------------------------------
    async def _authoritative_counts(self, quiz_id: str, correct_answers: int, total_questions: int) -> Tuple[int, int]:
        authoritative = await self.repository.get_authoritative_question_count(quiz_id)
        if authoritative <= 0:
            raise InvalidArgumentError(f"Quiz {quiz_id} has no questions")
        if authoritative == total_questions:
            return total_questions, correct_answers

        # Server-known count always wins over the client's
        log_event(
            "warning",
            "submission.question_count_mismatch",
            quiz_id=quiz_id,
            event_type="anti_cheat",
            extra={"submitted_total": total_questions, "authoritative_total": authoritative},
        )
        return authoritative, min(correct_answers, authoritative)

    async def _apply_attempt(
        self,
        user_id: str,
        quiz_id: str,
        correct_answers: int,
        total_questions: int,
        elapsed_seconds: float,
    ) -> SubmissionResult:
        now = self._now_fn()
        existing = await self.repository.get_user_progress(user_id, quiz_id)
        streak = await self.repository.get_user_streak(user_id)
        transition = self._streak_transition(streak, now)

        score = self.scoring.score_quiz(
            QuizAttemptInput(
                correct_answers=correct_answers,
                total_questions=total_questions,
                elapsed_seconds=elapsed_seconds,
                # A lapsed streak earns no bonus
                current_streak_days=0 if transition.should_reset else (streak.current_streak_days if streak else 0),
            )
        )

        if existing is not None and score.percentage <= existing.best_percentage:
            log_event(
                "info",
                "submission.no_improvement",
                user_id=user_id,
                quiz_id=quiz_id,
                extra={"percentage": score.percentage, "best_percentage": existing.best_percentage},
            )
            return self._unchanged_result(existing, streak)

        if existing is not None:
            since_last_write = now - existing.updated_at
            if since_last_write < self.min_interval:
                retry_after = (self.min_interval - since_last_write).total_seconds()
                raise TooFrequentError(
                    "Please wait before submitting this quiz again",
                    retry_after_seconds=retry_after,
                )

        record = self._next_progress_record(existing, score, now)
        if not await self.repository.upsert_user_progress(user_id, quiz_id, record):
            # A concurrent attempt stored an equal or better score first
            winner = await self.repository.get_user_progress(user_id, quiz_id)
            if winner is None:
                raise PersistenceError(f"Progress for {user_id}/{quiz_id} vanished during write")
            log_event(
                "info",
                "submission.lost_race",
                user_id=user_id,
                quiz_id=quiz_id,
                extra={"percentage": score.percentage, "best_percentage": winner.best_percentage},
            )
            return self._unchanged_result(winner, await self.repository.get_user_streak(user_id))

        log_event(
            "info",
            "submission.progress_saved",
            user_id=user_id,
            quiz_id=quiz_id,
            extra={"percentage": score.percentage, "xp_awarded": score.xp_awarded, "completed": record.completed},
        )

        streak_after, streak_failed = streak, False
        if score.is_completed:
            streak_after, streak_failed = await self._advance_streak(user_id, quiz_id, streak, transition)

        return SubmissionResult(
            percentage=score.percentage,
            xp_awarded=score.xp_awarded,
            completed=record.completed,
            was_improvement=True,
            previous_percentage=existing.best_percentage if existing else None,
            streak=streak_after,
            is_first_attempt=existing is None,
            streak_update_failed=streak_failed,
            perfect_bonus=score.bonuses.perfect,
            speed_bonus=score.bonuses.speed,
            streak_bonus=score.bonuses.streak,
        )

    @staticmethod
    def _unchanged_result(stored: UserProgressRecord, streak: Optional[StreakState]) -> SubmissionResult:
        return SubmissionResult(
            percentage=stored.best_percentage,
            xp_awarded=0,
            completed=stored.completed,
            was_improvement=False,
            previous_percentage=stored.best_percentage,
            streak=streak,
        )

    def _streak_transition(self, streak: Optional[StreakState], now: datetime) -> StreakTransition:
        return self.calendar.streak_transition(
            streak.last_active_civil_date if streak else None,
            streak.current_streak_days if streak else 0,
            now=now,
        )

    def _next_progress_record(
        self,
        existing: Optional[UserProgressRecord],
        score: QuizScoreResult,
        now: datetime,
    ) -> UserProgressRecord:
        # Completion is sticky and keeps its original date
        completed = score.is_completed or (existing is not None and existing.completed)
        completed_at = existing.completed_at_civil_date if existing else None
        if completed and completed_at is None:
            completed_at = self.calendar.today(now)
        return UserProgressRecord(
            best_percentage=score.percentage,
            completed=completed,
            completed_at_civil_date=completed_at,
            updated_at=now,
        )

    async def _advance_streak(
        self,
        user_id: str,
        quiz_id: str,
        streak: Optional[StreakState],
        transition: StreakTransition,
    ) -> Tuple[Optional[StreakState], bool]:
        if not transition.changes_state:
            return streak, False

        new_state = transition.apply_to(streak)
        try:
            await self.repository.upsert_user_streak(user_id, new_state)
        except Exception as exc:
            # The score is already saved; streak bookkeeping is retried on the next qualifying day
            streak_write_failures_total(self._metrics).inc()
            log_event(
                "warning",
                "streak.write_failed",
                user_id=user_id,
                quiz_id=quiz_id,
                error_code=getattr(exc, "code", "streak_write_failed"),
                extra={"error": repr(exc)},
            )
            return streak, True

        log_event(
            "info",
            "streak.updated",
            user_id=user_id,
            quiz_id=quiz_id,
            extra={
                "current_streak_days": new_state.current_streak_days,
                "reset": transition.should_reset,
            },
        )
        return new_state, False

    @staticmethod
    def _outcome(result: SubmissionResult) -> str:
        if result.is_first_attempt:
            return "first_attempt"
        if result.was_improvement:
            return "improved"
        return "no_improvement"


def create_submission_orchestrator(
    settings_obj: Optional[Settings] = None,
    *,
    now_fn: Optional[Callable[[], datetime]] = None,
    metrics: Optional[MetricsRegistry] = None,
) -> SubmissionOrchestrator:
    """
    Wire an orchestrator from configuration.

    With DATABASE_URL set, progress and the idempotency ledger live in SQL
    so in-flight dedup survives restarts; otherwise both stay in memory.
    """
    cfg = settings_obj or settings
    registry = metrics or METRICS

    if cfg.DATABASE_URL:
        from quizcore.core.database import get_session_factory, init_engine

        init_engine(cfg.DATABASE_URL)
        session_factory = get_session_factory()
        repository: ProgressRepository = SqlProgressRepository(session_factory)
        ledger = SqlIdempotencyLedger(
            session_factory,
            encode=lambda result: result.model_dump(mode="json"),
            decode=SubmissionResult.model_validate,
        )
    else:
        repository = InMemoryProgressRepository()
        ledger = InMemoryIdempotencyLedger()

    guard = IdempotencyGuard(
        ledger,
        ttl_seconds=cfg.IDEMPOTENCY_TTL_SECONDS,
        backoff_seconds=cfg.IDEMPOTENCY_BACKOFF_SECONDS,
        now_fn=now_fn,
        metrics=registry,
    )
    return SubmissionOrchestrator(
        repository,
        guard=guard,
        settings_obj=cfg,
        now_fn=now_fn,
        metrics=registry,
    )
