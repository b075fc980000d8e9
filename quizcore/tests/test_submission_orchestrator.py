"""
quizcore/tests/test_submission_orchestrator.py
End-to-end submission flow against the in-memory repository.
"""

import logging
from datetime import date, datetime, timezone

import pytest

from quizcore.core.errors import InvalidArgumentError, NotFoundError, PersistenceError, TooFrequentError
from quizcore.core.metrics import STREAK_WRITE_FAILURES_TOTAL, SUBMISSIONS_TOTAL
from quizcore.features.progress.repository import InMemoryProgressRepository
from quizcore.features.progress.service import SubmissionOrchestrator
from quizcore.models.streak import StreakState


def outcomes(metrics, outcome):
    return metrics.counter(SUBMISSIONS_TOTAL, ["outcome"]).value({"outcome": outcome})


@pytest.mark.asyncio
async def test_first_completed_attempt(orchestrator, repository, metrics):
    result = await orchestrator.submit_quiz_attempt("u1", "quiz-1", 7, 10, 300)

    assert result.percentage == 70
    assert result.xp_awarded == 15
    assert result.completed is True
    assert result.was_improvement is True
    assert result.is_first_attempt is True
    assert result.previous_percentage is None
    assert result.streak == StreakState(
        current_streak_days=1, longest_streak_days=1, last_active_civil_date=date(2024, 1, 15)
    )

    stored = repository.progress[("u1", "quiz-1")]
    assert stored.best_percentage == 70
    assert stored.completed is True
    assert stored.completed_at_civil_date == date(2024, 1, 15)
    assert repository.writes == {"progress": 1, "streak": 1}
    assert outcomes(metrics, "first_attempt") == 1


@pytest.mark.asyncio
async def test_perfect_fast_attempt_with_week_streak(orchestrator, repository):
    repository.streaks["u1"] = StreakState(
        current_streak_days=7, longest_streak_days=7, last_active_civil_date=date(2024, 1, 14)
    )

    result = await orchestrator.submit_quiz_attempt("u1", "quiz-1", 10, 10, 250)

    assert result.percentage == 100
    assert result.xp_awarded == 28
    assert (result.perfect_bonus, result.speed_bonus, result.streak_bonus) == (5, 3, 5)
    assert result.streak.current_streak_days == 8
    assert result.streak.longest_streak_days == 8


@pytest.mark.asyncio
async def test_lower_score_writes_nothing(orchestrator, repository, clock, metrics):
    await orchestrator.submit_quiz_attempt("u1", "quiz-1", 8, 10, 300)
    clock.advance(minutes=5)

    result = await orchestrator.submit_quiz_attempt("u1", "quiz-1", 6, 10, 300)

    assert result.was_improvement is False
    assert result.xp_awarded == 0
    assert result.percentage == 80
    assert result.previous_percentage == 80
    assert result.completed is True
    assert repository.writes["progress"] == 1
    assert outcomes(metrics, "no_improvement") == 1


@pytest.mark.asyncio
async def test_equal_score_after_ttl_is_not_an_improvement(orchestrator, repository, clock):
    first = await orchestrator.submit_quiz_attempt("u1", "quiz-1", 8, 10, 300)
    clock.advance(seconds=61)

    again = await orchestrator.submit_quiz_attempt("u1", "quiz-1", 8, 10, 300)

    assert first.was_improvement is True
    assert again.was_improvement is False
    assert again.xp_awarded == 0
    assert repository.writes["progress"] == 1


@pytest.mark.asyncio
async def test_improvement_within_min_interval_is_rejected(orchestrator, repository, clock, metrics):
    await orchestrator.submit_quiz_attempt("u1", "quiz-1", 7, 10, 300)
    clock.advance(seconds=10)

    with pytest.raises(TooFrequentError) as exc_info:
        await orchestrator.submit_quiz_attempt("u1", "quiz-1", 9, 10, 300)

    assert exc_info.value.retry_after_seconds == pytest.approx(20)
    assert repository.progress[("u1", "quiz-1")].best_percentage == 70
    assert outcomes(metrics, "too_frequent") == 1


@pytest.mark.asyncio
async def test_improvement_after_min_interval_is_accepted(orchestrator, repository, clock, metrics):
    await orchestrator.submit_quiz_attempt("u1", "quiz-1", 7, 10, 300)
    clock.advance(seconds=10)
    with pytest.raises(TooFrequentError):
        await orchestrator.submit_quiz_attempt("u1", "quiz-1", 9, 10, 300)

    clock.advance(seconds=21)
    result = await orchestrator.submit_quiz_attempt("u1", "quiz-1", 9, 10, 300)

    assert result.was_improvement is True
    assert result.previous_percentage == 70
    assert result.is_first_attempt is False
    assert repository.progress[("u1", "quiz-1")].best_percentage == 90
    assert outcomes(metrics, "improved") == 1


@pytest.mark.parametrize(
    "correct,total,elapsed",
    [
        (11, 10, 0),
        (-1, 10, 0),
        (0, 0, 0),
        (5, 51, 0),
        (5, 10, -1),
        (True, 10, 0),
        (7.0, 10, 0),
        (5, 10, "slow"),
        (5, 10, float("nan")),
        (5, 10, float("inf")),
    ],
)
@pytest.mark.asyncio
async def test_invalid_attempts_are_rejected_without_writes(orchestrator, repository, metrics, correct, total, elapsed):
    with pytest.raises(InvalidArgumentError):
        await orchestrator.submit_quiz_attempt("u1", "quiz-1", correct, total, elapsed)

    assert not repository.writes
    assert outcomes(metrics, "invalid_argument") == 1


@pytest.mark.asyncio
async def test_unknown_quiz_raises_not_found(orchestrator, metrics):
    with pytest.raises(NotFoundError):
        await orchestrator.submit_quiz_attempt("u1", "missing", 5, 10, 100)
    assert outcomes(metrics, "not_found") == 1


@pytest.mark.asyncio
async def test_quiz_without_questions_is_invalid(orchestrator, repository):
    repository.register_quiz("empty", 0)
    with pytest.raises(InvalidArgumentError):
        await orchestrator.submit_quiz_attempt("u1", "empty", 1, 1, 10)


@pytest.mark.asyncio
async def test_server_question_count_wins(orchestrator, repository, caplog):
    repository.register_quiz("quiz-5", 5)

    with caplog.at_level(logging.WARNING, logger="quizcore"):
        result = await orchestrator.submit_quiz_attempt("u1", "quiz-5", 7, 10, 100)

    assert result.percentage == 100
    assert any("question_count_mismatch" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_incomplete_first_attempt_is_saved_without_streak(orchestrator, repository):
    result = await orchestrator.submit_quiz_attempt("u1", "quiz-1", 5, 10, 100)

    assert result.percentage == 50
    assert result.completed is False
    assert result.xp_awarded == 0
    assert result.was_improvement is True
    assert result.streak is None
    assert repository.progress[("u1", "quiz-1")].completed_at_civil_date is None
    assert repository.writes == {"progress": 1}


@pytest.mark.asyncio
async def test_completion_date_is_kept_on_later_improvement(orchestrator, repository, clock):
    await orchestrator.submit_quiz_attempt("u1", "quiz-1", 8, 10, 300)
    clock.advance(days=2)

    await orchestrator.submit_quiz_attempt("u1", "quiz-1", 9, 10, 300)

    stored = repository.progress[("u1", "quiz-1")]
    assert stored.best_percentage == 90
    assert stored.completed is True
    assert stored.completed_at_civil_date == date(2024, 1, 15)


@pytest.mark.asyncio
async def test_broken_streak_resets_and_keeps_longest(orchestrator, repository):
    repository.streaks["u1"] = StreakState(
        current_streak_days=5, longest_streak_days=12, last_active_civil_date=date(2024, 1, 10)
    )

    result = await orchestrator.submit_quiz_attempt("u1", "quiz-1", 8, 10, 300)

    assert result.streak == StreakState(
        current_streak_days=1, longest_streak_days=12, last_active_civil_date=date(2024, 1, 15)
    )
    assert repository.streaks["u1"] == result.streak


@pytest.mark.asyncio
async def test_lapsed_streak_earns_no_streak_bonus(orchestrator, repository):
    # 30-day streak last extended ten days ago
    repository.streaks["u1"] = StreakState(
        current_streak_days=30, longest_streak_days=30, last_active_civil_date=date(2024, 1, 5)
    )

    result = await orchestrator.submit_quiz_attempt("u1", "quiz-1", 7, 10, 300)

    assert result.streak_bonus == 0
    assert result.xp_awarded == 15
    assert result.streak.current_streak_days == 1
    assert result.streak.longest_streak_days == 30


@pytest.mark.asyncio
async def test_streak_extended_today_keeps_its_bonus(orchestrator, repository):
    repository.streaks["u1"] = StreakState(
        current_streak_days=30, longest_streak_days=30, last_active_civil_date=date(2024, 1, 14)
    )

    result = await orchestrator.submit_quiz_attempt("u1", "quiz-1", 7, 10, 300)

    assert result.streak_bonus == 10
    assert result.xp_awarded == 25
    assert result.streak.current_streak_days == 31


@pytest.mark.asyncio
async def test_second_completion_same_day_does_not_touch_streak(orchestrator, repository):
    existing = StreakState(current_streak_days=3, longest_streak_days=3, last_active_civil_date=date(2024, 1, 15))
    repository.streaks["u1"] = existing

    result = await orchestrator.submit_quiz_attempt("u1", "quiz-1", 8, 10, 300)

    assert result.streak == existing
    assert repository.writes["streak"] == 0


@pytest.mark.asyncio
async def test_completions_across_local_midnight_extend_streak(orchestrator, clock):
    first = await orchestrator.submit_quiz_attempt("u1", "quiz-1", 8, 10, 300)
    # 22:05 UTC is 00:05 on the 16th in Chisinau
    clock.advance(hours=12, minutes=5)
    second = await orchestrator.submit_quiz_attempt("u1", "quiz-2", 8, 10, 300)

    assert first.streak.current_streak_days == 1
    assert second.streak.current_streak_days == 2
    assert second.streak.last_active_civil_date == date(2024, 1, 16)


class FailingStreakRepository(InMemoryProgressRepository):
    async def upsert_user_streak(self, user_id, state):
        raise PersistenceError("streak table locked")


class FlakyProgressRepository(InMemoryProgressRepository):
    def __init__(self, failures: int = 1):
        super().__init__()
        self.failures = failures

    async def upsert_user_progress(self, user_id, quiz_id, record):
        if self.failures:
            self.failures -= 1
            raise PersistenceError("connection reset")
        return await super().upsert_user_progress(user_id, quiz_id, record)


@pytest.mark.asyncio
async def test_streak_write_failure_does_not_fail_submission(guard, calendar, clock, metrics):
    repo = FailingStreakRepository()
    repo.register_quiz("quiz-1", 10)
    orchestrator = SubmissionOrchestrator(repo, guard=guard, calendar=calendar, now_fn=clock, metrics=metrics)

    result = await orchestrator.submit_quiz_attempt("u1", "quiz-1", 8, 10, 300)

    assert result.streak_update_failed is True
    assert result.streak is None
    assert result.xp_awarded == 15
    assert repo.progress[("u1", "quiz-1")].best_percentage == 80
    assert metrics.counter(STREAK_WRITE_FAILURES_TOTAL).value() == 1


@pytest.mark.asyncio
async def test_progress_write_failure_propagates_and_can_be_retried(guard, calendar, clock, metrics):
    repo = FlakyProgressRepository(failures=1)
    repo.register_quiz("quiz-1", 10)
    orchestrator = SubmissionOrchestrator(repo, guard=guard, calendar=calendar, now_fn=clock, metrics=metrics)

    with pytest.raises(PersistenceError):
        await orchestrator.submit_quiz_attempt("u1", "quiz-1", 8, 10, 300)
    assert repo.progress == {}
    assert outcomes(metrics, "persistence_failure") == 1

    result = await orchestrator.submit_quiz_attempt("u1", "quiz-1", 8, 10, 300)
    assert result.was_improvement is True
    assert repo.progress[("u1", "quiz-1")].best_percentage == 80


def test_level_progress_delegates_to_scoring(orchestrator):
    progress = orchestrator.get_level_progress(60)
    assert progress.level == 2
    assert progress.xp_into_level == 10


def test_defaults_come_from_settings(repository):
    orchestrator = SubmissionOrchestrator(repository, now_fn=lambda: datetime(2024, 1, 15, tzinfo=timezone.utc))
    assert orchestrator.min_interval.total_seconds() == 30
    assert orchestrator.max_questions == 50
    assert orchestrator.guard.ttl_seconds == 60
    assert orchestrator.calendar.zone.key == "Europe/Chisinau"
