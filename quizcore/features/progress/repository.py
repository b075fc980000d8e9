"""
Persistence collaborator for quiz progress.

The core only needs per-row reads, a best-score compare-and-set for
progress and a plain upsert for streaks. Two
implementations ship with the library: an in-memory store (tests, offline
use) and a SQLAlchemy store on the tables in quizcore.core.database.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from quizcore.core.database import get_session_factory, quizzes, user_progress, user_streaks
from quizcore.core.errors import NotFoundError, PersistenceError
from quizcore.models.progress import UserProgressRecord
from quizcore.models.streak import StreakState


class ProgressRepository(ABC):
    @abstractmethod
    async def get_authoritative_question_count(self, quiz_id: str) -> int:
        """Question count of the stored quiz definition. Raises NotFoundError."""

    @abstractmethod
    async def get_user_progress(self, user_id: str, quiz_id: str) -> Optional[UserProgressRecord]:
        ...

    @abstractmethod
    async def upsert_user_progress(self, user_id: str, quiz_id: str, record: UserProgressRecord) -> bool:
        """
        Store `record` only when no row exists or it beats the stored best.

        Returns False when a stored row with an equal or higher
        best_percentage was kept instead.
        """

    @abstractmethod
    async def get_user_streak(self, user_id: str) -> Optional[StreakState]:
        ...

    @abstractmethod
    async def upsert_user_streak(self, user_id: str, state: StreakState) -> None:
        ...


class InMemoryProgressRepository(ProgressRepository):
    """
    Dict-backed repository.

    Every call awaits `latency` seconds first so concurrent callers
    interleave at the same points they would against a remote store.
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self.quizzes: Dict[str, int] = {}
        self.progress: Dict[Tuple[str, str], UserProgressRecord] = {}
        self.streaks: Dict[str, StreakState] = {}
        self.writes: Counter = Counter()

    def register_quiz(self, quiz_id: str, question_count: int) -> None:
        self.quizzes[quiz_id] = question_count

    async def _pause(self) -> None:
        await asyncio.sleep(self.latency)

    async def get_authoritative_question_count(self, quiz_id: str) -> int:
        await self._pause()
        if quiz_id not in self.quizzes:
            raise NotFoundError(f"Quiz not found: {quiz_id}")
        return self.quizzes[quiz_id]

    async def get_user_progress(self, user_id: str, quiz_id: str) -> Optional[UserProgressRecord]:
        await self._pause()
        return self.progress.get((user_id, quiz_id))

    async def upsert_user_progress(self, user_id: str, quiz_id: str, record: UserProgressRecord) -> bool:
        await self._pause()
        # Compare and store without suspending in between
        stored = self.progress.get((user_id, quiz_id))
        if stored is not None and record.best_percentage <= stored.best_percentage:
            return False
        self.progress[(user_id, quiz_id)] = record
        self.writes["progress"] += 1
        return True

    async def get_user_streak(self, user_id: str) -> Optional[StreakState]:
        await self._pause()
        return self.streaks.get(user_id)

    async def upsert_user_streak(self, user_id: str, state: StreakState) -> None:
        await self._pause()
        self.streaks[user_id] = state
        self.writes["streak"] += 1


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class SqlProgressRepository(ProgressRepository):
    """SQLAlchemy-backed repository. Sync sessions run in a worker thread."""

    def __init__(self, session_factory=None):
        self._session_factory = session_factory

    def _session(self):
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory()

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Progress store unavailable: {exc.__class__.__name__}") from exc

    def register_quiz(self, quiz_id: str, question_count: int) -> None:
        session = self._session()
        try:
            existing = session.execute(select(quizzes.c.id).where(quizzes.c.id == quiz_id)).first()
            if existing:
                session.execute(update(quizzes).where(quizzes.c.id == quiz_id).values(question_count=question_count))
            else:
                session.execute(insert(quizzes).values(id=quiz_id, question_count=question_count))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    async def get_authoritative_question_count(self, quiz_id: str) -> int:
        count = await self._run(self._question_count_sync, quiz_id)
        if count is None:
            raise NotFoundError(f"Quiz not found: {quiz_id}")
        return count

    async def get_user_progress(self, user_id: str, quiz_id: str) -> Optional[UserProgressRecord]:
        return await self._run(self._get_progress_sync, user_id, quiz_id)

    async def upsert_user_progress(self, user_id: str, quiz_id: str, record: UserProgressRecord) -> bool:
        return await self._run(self._upsert_progress_sync, user_id, quiz_id, record)

    async def get_user_streak(self, user_id: str) -> Optional[StreakState]:
        return await self._run(self._get_streak_sync, user_id)

    async def upsert_user_streak(self, user_id: str, state: StreakState) -> None:
        await self._run(self._upsert_streak_sync, user_id, state)

    # Sync helpers -----------------------------------------------------
    def _question_count_sync(self, quiz_id: str) -> Optional[int]:
        session = self._session()
        try:
            row = session.execute(select(quizzes.c.question_count).where(quizzes.c.id == quiz_id)).first()
            return row[0] if row else None
        finally:
            session.close()

    def _get_progress_sync(self, user_id: str, quiz_id: str) -> Optional[UserProgressRecord]:
        session = self._session()
        try:
            row = session.execute(
                select(user_progress).where(
                    user_progress.c.user_id == user_id,
                    user_progress.c.quiz_id == quiz_id,
                )
            ).mappings().first()
        finally:
            session.close()
        if row is None:
            return None
        return UserProgressRecord(
            best_percentage=row["best_percentage"],
            completed=row["completed"],
            completed_at_civil_date=row["completed_at_civil_date"],
            updated_at=_as_utc(row["updated_at"]),
        )

    def _upsert_progress_sync(self, user_id: str, quiz_id: str, record: UserProgressRecord) -> bool:
        values = {
            "best_percentage": record.best_percentage,
            "completed": record.completed,
            "completed_at_civil_date": record.completed_at_civil_date,
            "updated_at": record.updated_at.astimezone(timezone.utc),
        }
        session = self._session()
        try:
            result = session.execute(
                update(user_progress)
                .where(
                    user_progress.c.user_id == user_id,
                    user_progress.c.quiz_id == quiz_id,
                    user_progress.c.best_percentage < record.best_percentage,
                )
                .values(**values)
            )
            if result.rowcount == 0:
                session.execute(insert(user_progress).values(user_id=user_id, quiz_id=quiz_id, **values))
            session.commit()
            return True
        except IntegrityError:
            # Row exists with an equal or better score
            session.rollback()
            return False
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _get_streak_sync(self, user_id: str) -> Optional[StreakState]:
        session = self._session()
        try:
            row = session.execute(select(user_streaks).where(user_streaks.c.user_id == user_id)).mappings().first()
        finally:
            session.close()
        if row is None:
            return None
        return StreakState(
            current_streak_days=row["current_streak_days"],
            longest_streak_days=row["longest_streak_days"],
            last_active_civil_date=row["last_active_civil_date"],
        )

    def _upsert_streak_sync(self, user_id: str, state: StreakState) -> None:
        values = {
            "current_streak_days": state.current_streak_days,
            "longest_streak_days": state.longest_streak_days,
            "last_active_civil_date": state.last_active_civil_date,
        }
        session = self._session()
        try:
            result = session.execute(update(user_streaks).where(user_streaks.c.user_id == user_id).values(**values))
            if result.rowcount == 0:
                session.execute(insert(user_streaks).values(user_id=user_id, **values))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
