from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from quizcore.models.streak import StreakState


class UserProgressRecord(BaseModel):
    """Best attempt for one (user, quiz) pair."""

    model_config = ConfigDict(frozen=True)

    best_percentage: int = Field(ge=0, le=100)
    completed: bool = False
    completed_at_civil_date: Optional[date] = None
    updated_at: datetime


class SubmissionResult(BaseModel):
    """
    Outcome of submit_quiz_attempt.

    For a non-improving attempt percentage/completed describe the stored
    best, was_improvement is False and nothing was written.
    """

    model_config = ConfigDict(frozen=True)

    percentage: int = Field(ge=0, le=100)
    xp_awarded: int = Field(ge=0)
    completed: bool
    was_improvement: bool
    previous_percentage: Optional[int] = None
    streak: Optional[StreakState] = None
    is_first_attempt: bool = False
    streak_update_failed: bool = False
    perfect_bonus: int = 0
    speed_bonus: int = 0
    streak_bonus: int = 0
