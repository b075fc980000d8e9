from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class StreakState(BaseModel):
    """
    Persisted streak for one user. Civil dates only, no direct DB concerns.
    """

    model_config = ConfigDict(frozen=True)

    current_streak_days: int = Field(default=0, ge=0)
    longest_streak_days: int = Field(default=0, ge=0)
    last_active_civil_date: Optional[date] = None

    @model_validator(mode="after")
    def _longest_covers_current(self) -> "StreakState":
        if self.longest_streak_days < self.current_streak_days:
            raise ValueError("longest_streak_days must be >= current_streak_days")
        return self


@dataclass(frozen=True)
class StreakTransition:
    """Decision derived from (last active civil date, current streak, today)."""

    new_streak_days: int
    should_reset: bool
    should_increment: bool
    last_active_civil_date: date
    today: date

    @property
    def changes_state(self) -> bool:
        return self.should_increment or self.should_reset

    def apply_to(self, previous: Optional[StreakState]) -> StreakState:
        longest = previous.longest_streak_days if previous else 0
        return StreakState(
            current_streak_days=self.new_streak_days,
            longest_streak_days=max(longest, self.new_streak_days),
            last_active_civil_date=self.last_active_civil_date,
        )
