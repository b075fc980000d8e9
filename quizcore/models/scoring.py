"""
Scoring domain model.

Value objects produced by the scoring engine. They are recomputed on every
call and owned by the caller; nothing here touches storage or the clock.
"""

from dataclasses import dataclass, field, asdict
from typing import List


@dataclass(frozen=True)
class QuizAttemptInput:
    """One finished quiz attempt, as seen by the scoring engine."""

    correct_answers: int
    total_questions: int
    elapsed_seconds: float = 0.0
    current_streak_days: int = 0


@dataclass(frozen=True)
class ScoreBonuses:
    perfect: int = 0
    speed: int = 0
    streak: int = 0

    def total(self) -> int:
        return self.perfect + self.speed + self.streak


@dataclass(frozen=True)
class QuizScoreResult:
    """
    Score and XP award for a single attempt.

    Attributes:
        percentage: Rounded score, 0..100
        is_completed: True when percentage meets the completion threshold
        xp_awarded: Base XP plus bonuses; 0 for incomplete attempts
        bonuses: Breakdown of the bonus part of xp_awarded
    """

    percentage: int
    is_completed: bool
    xp_awarded: int
    bonuses: ScoreBonuses = field(default_factory=ScoreBonuses)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class LevelProgress:
    level: int
    xp_into_level: int
    xp_to_next_level: int
    total_xp: int
    percent_in_level: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class XPAuditReport:
    is_valid: bool
    total_xp: int
    violations: List[str] = field(default_factory=list)
