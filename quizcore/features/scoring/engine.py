"""
Quiz Scoring Engine

Pure, deterministic computation of quiz scores, XP awards and levels.
No external calls, no randomness, no clock reads.

Scoring rules:
- Percentage is rounded half-up from correct/total
- Completion (>= 70%) gates every reward; incomplete attempts earn 0 XP
- Completed attempts earn 15 base XP
- Perfect score adds 5, fast completion (< 30s per question) adds 3
- Streak adds exactly one tier: 7d -> 5, 30d -> 10, 365d -> 20

Level n -> n+1 costs 50 + (n-1) * 20 XP.
"""

import logging
import math
from datetime import datetime
from typing import Iterable, List, Mapping, Optional, Union

from quizcore.core.errors import InvalidArgumentError
from quizcore.models.scoring import (
    LevelProgress,
    QuizAttemptInput,
    QuizScoreResult,
    ScoreBonuses,
    XPAuditReport,
)

logger = logging.getLogger("quizcore")


def _round_half_up(numerator: int, denominator: int) -> int:
    """round(numerator / denominator) with .5 going up, for non-negative ints."""
    return (2 * numerator + denominator) // (2 * denominator)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class QuizScoringEngine:
    """Pure deterministic quiz scoring."""

    COMPLETION_THRESHOLD = 70
    BASE_XP = 15
    PERFECT_BONUS = 5
    SPEED_BONUS = 3
    SPEED_SECONDS_PER_QUESTION = 30

    # Highest threshold first; only one tier applies
    STREAK_TIERS = (
        (365, 20),
        (30, 10),
        (7, 5),
    )

    FIRST_LEVEL_COST = 50
    LEVEL_COST_STEP = 20

    @staticmethod
    def score_quiz(attempt: QuizAttemptInput) -> QuizScoreResult:
        """
        Score one attempt.

        Args:
            attempt: Correct/total counts, elapsed time and the user's current streak

        Returns:
            QuizScoreResult with percentage, completion flag, XP and bonuses

        Raises:
            InvalidArgumentError: counts or durations out of range
        """
        QuizScoringEngine._validate_attempt(attempt)

        percentage = _round_half_up(100 * attempt.correct_answers, attempt.total_questions)
        is_completed = percentage >= QuizScoringEngine.COMPLETION_THRESHOLD

        if not is_completed:
            return QuizScoreResult(percentage=percentage, is_completed=False, xp_awarded=0)

        bonuses = ScoreBonuses(
            perfect=QuizScoringEngine.PERFECT_BONUS if percentage == 100 else 0,
            speed=QuizScoringEngine._speed_bonus(attempt.elapsed_seconds, attempt.total_questions),
            streak=QuizScoringEngine.streak_bonus(attempt.current_streak_days),
        )
        result = QuizScoreResult(
            percentage=percentage,
            is_completed=True,
            xp_awarded=QuizScoringEngine.BASE_XP + bonuses.total(),
            bonuses=bonuses,
        )
        logger.debug(
            "quiz.scored percentage=%s xp=%s bonuses=%s",
            result.percentage,
            result.xp_awarded,
            bonuses,
        )
        return result

    @staticmethod
    def streak_bonus(current_streak_days: int) -> int:
        """Highest streak tier met, or 0. Tiers never stack."""
        for threshold, bonus in QuizScoringEngine.STREAK_TIERS:
            if current_streak_days >= threshold:
                return bonus
        return 0

    @staticmethod
    def max_xp_per_attempt() -> int:
        top_streak_bonus = max(bonus for _, bonus in QuizScoringEngine.STREAK_TIERS)
        return (
            QuizScoringEngine.BASE_XP
            + QuizScoringEngine.PERFECT_BONUS
            + QuizScoringEngine.SPEED_BONUS
            + top_streak_bonus
        )

    @staticmethod
    def level_cost(level: int) -> int:
        """XP needed to go from `level` to `level + 1`."""
        return QuizScoringEngine.FIRST_LEVEL_COST + (level - 1) * QuizScoringEngine.LEVEL_COST_STEP

    @staticmethod
    def level_from_xp(total_xp: int) -> LevelProgress:
        if not _is_int(total_xp) or total_xp < 0:
            raise InvalidArgumentError(f"total_xp must be a non-negative integer (got {total_xp!r})")

        level = 1
        remaining = total_xp
        requirement = QuizScoringEngine.level_cost(level)
        while remaining >= requirement:
            remaining -= requirement
            level += 1
            requirement = QuizScoringEngine.level_cost(level)

        return LevelProgress(
            level=level,
            xp_into_level=remaining,
            xp_to_next_level=requirement,
            total_xp=total_xp,
            percent_in_level=_round_half_up(100 * remaining, requirement),
        )

    @staticmethod
    def validate_awarded_xp(
        attempts: Iterable[Union[QuizScoreResult, Mapping[str, int]]],
    ) -> XPAuditReport:
        """
        Audit previously awarded XP. Reports problems, never raises for them.

        Flags negative XP, XP on incomplete attempts and XP above the
        per-attempt maximum.
        """
        violations: List[str] = []
        total_xp = 0
        max_xp = QuizScoringEngine.max_xp_per_attempt()

        for index, attempt in enumerate(attempts):
            percentage, xp = QuizScoringEngine._audit_fields(attempt)

            if xp < 0:
                violations.append(f"Attempt {index}: negative XP awarded ({xp})")
            if percentage < QuizScoringEngine.COMPLETION_THRESHOLD and xp > 0:
                violations.append(
                    f"Attempt {index}: XP awarded for incomplete attempt (percentage: {percentage}%, XP: {xp})"
                )
            if xp > max_xp:
                violations.append(f"Attempt {index}: XP exceeds maximum possible ({xp} > {max_xp})")

            total_xp += xp

        is_valid = not violations
        if not is_valid:
            logger.warning("xp.audit_failed violations=%s total_xp=%s", len(violations), total_xp)
        return XPAuditReport(is_valid=is_valid, total_xp=total_xp, violations=violations)

    @staticmethod
    def weekly_xp(
        results: Iterable[Mapping[str, object]],
        calendar,
        reference: Optional[datetime] = None,
    ) -> int:
        """
        Sum XP of results completed inside the civil week containing `reference`.

        Each result is a mapping with `completed_at` (datetime) and `xp_awarded`.
        """
        week_start, week_end = calendar.week_bounds(reference)
        total = 0
        for result in results:
            completed_at = calendar.to_civil_datetime(result["completed_at"])
            if week_start <= completed_at <= week_end:
                total += int(result["xp_awarded"])
        return total

    # Internal helpers -------------------------------------------------
    @staticmethod
    def _validate_attempt(attempt: QuizAttemptInput) -> None:
        if not _is_int(attempt.total_questions) or attempt.total_questions <= 0:
            raise InvalidArgumentError(
                f"total_questions must be greater than 0 (got {attempt.total_questions!r})"
            )
        if not _is_int(attempt.correct_answers) or not 0 <= attempt.correct_answers <= attempt.total_questions:
            raise InvalidArgumentError(
                f"correct_answers must be between 0 and {attempt.total_questions} (got {attempt.correct_answers!r})"
            )
        if (
            attempt.elapsed_seconds is None
            or not math.isfinite(attempt.elapsed_seconds)
            or attempt.elapsed_seconds < 0
        ):
            raise InvalidArgumentError(
                f"elapsed_seconds must be a finite, non-negative number (got {attempt.elapsed_seconds!r})"
            )
        if not _is_int(attempt.current_streak_days) or attempt.current_streak_days < 0:
            raise InvalidArgumentError(
                f"current_streak_days cannot be negative (got {attempt.current_streak_days!r})"
            )

    @staticmethod
    def _speed_bonus(elapsed_seconds: float, total_questions: int) -> int:
        # Zero elapsed time means the timer was missing, not infinitely fast
        average = elapsed_seconds / total_questions
        if 0 < average < QuizScoringEngine.SPEED_SECONDS_PER_QUESTION:
            return QuizScoringEngine.SPEED_BONUS
        return 0

    @staticmethod
    def _audit_fields(attempt: Union[QuizScoreResult, Mapping[str, int]]):
        if isinstance(attempt, QuizScoreResult):
            return attempt.percentage, attempt.xp_awarded
        return int(attempt["percentage"]), int(attempt["xp_awarded"])
