from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from quizcore.core.config import settings
from quizcore.core.errors import InvalidArgumentError
from quizcore.models.streak import StreakTransition

logger = logging.getLogger("quizcore")

Instant = Union[datetime, date]
CivilDateLike = Union[date, datetime, str]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CalendarService:
    """Civil-date arithmetic in one fixed timezone, independent of the host locale."""

    def __init__(self, timezone_name: Optional[str] = None, now_fn: Optional[Callable[[], datetime]] = None):
        name = timezone_name or settings.APP_TIMEZONE
        try:
            self._zone = ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise InvalidArgumentError(f"Unknown timezone: {name}") from exc
        self._now_fn = now_fn or _utc_now

    @property
    def zone(self) -> ZoneInfo:
        return self._zone

    def now(self) -> datetime:
        return self._now_fn()

    def to_civil_datetime(self, instant: datetime) -> datetime:
        """Express an instant in the civil timezone. Naive datetimes are UTC."""
        aware = instant if instant.tzinfo else instant.replace(tzinfo=timezone.utc)
        return aware.astimezone(self._zone)

    def civil_date_of(self, instant: Instant) -> date:
        if isinstance(instant, datetime):
            return self.to_civil_datetime(instant).date()
        if isinstance(instant, date):
            return instant
        raise InvalidArgumentError(f"Expected a datetime or date (got {type(instant).__name__})")

    def today(self, now: Optional[datetime] = None) -> date:
        return self.civil_date_of(now or self.now())

    def start_of_week(self, instant: Optional[Instant] = None) -> datetime:
        """Monday 00:00 local of the week containing `instant`."""
        day = self.civil_date_of(instant if instant is not None else self.now())
        monday = day - timedelta(days=day.weekday())
        return datetime.combine(monday, time.min, tzinfo=self._zone)

    def end_of_week(self, instant: Optional[Instant] = None) -> datetime:
        """Sunday 23:59:59.999 local of the week containing `instant`."""
        monday = self.start_of_week(instant).date()
        sunday = monday + timedelta(days=6)
        return datetime.combine(sunday, time(23, 59, 59, 999000), tzinfo=self._zone)

    def week_bounds(self, instant: Optional[Instant] = None) -> Tuple[datetime, datetime]:
        return self.start_of_week(instant), self.end_of_week(instant)

    def days_between(self, a: Instant, b: Instant) -> int:
        return abs((self.civil_date_of(b) - self.civil_date_of(a)).days)

    def is_same_civil_day(self, a: Instant, b: Instant) -> bool:
        return self.civil_date_of(a) == self.civil_date_of(b)

    def are_consecutive_civil_days(self, earlier: Instant, later: Instant) -> bool:
        """True only when `later` falls on the civil day right after `earlier`."""
        return (self.civil_date_of(later) - self.civil_date_of(earlier)).days == 1

    @staticmethod
    def format_civil_date(day: date) -> str:
        return day.isoformat()

    @staticmethod
    def parse_civil_date(value: str) -> date:
        try:
            return date.fromisoformat(value)
        except (TypeError, ValueError) as exc:
            raise InvalidArgumentError(f"Expected a YYYY-MM-DD civil date (got {value!r})") from exc

    def _coerce_civil_date(self, value: CivilDateLike) -> date:
        if isinstance(value, str):
            return self.parse_civil_date(value)
        return self.civil_date_of(value)

    def streak_transition(
        self,
        last_active: Optional[CivilDateLike],
        current_streak_days: int,
        now: Optional[datetime] = None,
    ) -> StreakTransition:
        """
        Decide how a qualifying activity today changes the stored streak.

        Pure: the outcome depends only on the arguments and `now`.
        """
        if current_streak_days < 0:
            raise InvalidArgumentError(f"current_streak_days cannot be negative (got {current_streak_days})")

        today = self.today(now)

        if last_active is None:
            return StreakTransition(
                new_streak_days=1,
                should_reset=False,
                should_increment=True,
                last_active_civil_date=today,
                today=today,
            )

        last_day = self._coerce_civil_date(last_active)
        gap = (today - last_day).days

        if gap <= 0:
            if gap < 0:
                logger.warning("streak.last_active_in_future last_active=%s today=%s", last_day, today)
            # Already counted today
            return StreakTransition(
                new_streak_days=current_streak_days,
                should_reset=False,
                should_increment=False,
                last_active_civil_date=last_day,
                today=today,
            )

        if gap == 1:
            return StreakTransition(
                new_streak_days=current_streak_days + 1,
                should_reset=False,
                should_increment=True,
                last_active_civil_date=today,
                today=today,
            )

        return StreakTransition(
            new_streak_days=1,
            should_reset=True,
            should_increment=False,
            last_active_civil_date=today,
            today=today,
        )
