"""
quizcore/core/idempotency.py
Keyed, TTL-bounded idempotency for async operations.

Two layers:
- an in-process map of in-flight tasks, so concurrent callers with the same
  key share one execution and one result object;
- a ledger (in-memory or SQL) of pending/completed/failed records, so a
  replay after a crash or from another process gets the cached result.
"""

import asyncio
import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from sqlalchemy import delete, insert, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from quizcore.core.config import settings
from quizcore.core.database import get_session_factory, idempotency_records
from quizcore.core.errors import PersistenceError
from quizcore.core.metrics import METRICS, MetricsRegistry, idempotency_events_total, idempotency_inflight

logger = logging.getLogger("quizcore")

T = TypeVar("T")


class IdempotencyStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class IdempotencyRecord:
    key: str
    created_at: datetime
    status: IdempotencyStatus
    cached_result: Any = None

    def is_expired(self, now: datetime, ttl_seconds: float) -> bool:
        return now - self.created_at > timedelta(seconds=ttl_seconds)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def build_idempotency_key(user_id: str, operation: str, *params: Any) -> str:
    """
    Key for one logical operation.

    Every input that affects the result must be passed in `params`; they are
    fingerprinted so distinct inputs never share a key.
    """
    canonical = json.dumps([str(p) for p in params], separators=(",", ":"))
    fingerprint = hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]
    return f"{user_id}:{operation}:{fingerprint}"


class IdempotencyLedger(ABC):
    """Storage for idempotency records. `claim` must be atomic."""

    @abstractmethod
    async def get(self, key: str) -> Optional[IdempotencyRecord]:
        ...

    @abstractmethod
    async def claim(self, key: str, created_at: datetime, ttl_seconds: float) -> bool:
        """
        Insert a pending record for `key`.

        Returns False when a live pending/completed record already exists.
        Failed or expired records are replaced.
        """

    @abstractmethod
    async def complete(self, key: str, result: Any) -> None:
        ...

    @abstractmethod
    async def fail(self, key: str) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def purge_expired(self, now: datetime, ttl_seconds: float) -> int:
        ...


class InMemoryIdempotencyLedger(IdempotencyLedger):
    """Process-local ledger. Each method body runs without suspending, so claim is atomic."""

    def __init__(self):
        self._records: Dict[str, IdempotencyRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    async def get(self, key: str) -> Optional[IdempotencyRecord]:
        return self._records.get(key)

    async def claim(self, key: str, created_at: datetime, ttl_seconds: float) -> bool:
        existing = self._records.get(key)
        if (
            existing is not None
            and existing.status is not IdempotencyStatus.FAILED
            and not existing.is_expired(created_at, ttl_seconds)
        ):
            return False
        self._records[key] = IdempotencyRecord(key=key, created_at=created_at, status=IdempotencyStatus.PENDING)
        return True

    async def complete(self, key: str, result: Any) -> None:
        existing = self._records.get(key)
        created_at = existing.created_at if existing else _utc_now()
        self._records[key] = IdempotencyRecord(
            key=key, created_at=created_at, status=IdempotencyStatus.COMPLETED, cached_result=result
        )

    async def fail(self, key: str) -> None:
        existing = self._records.get(key)
        if existing is not None:
            self._records[key] = replace(existing, status=IdempotencyStatus.FAILED, cached_result=None)

    async def delete(self, key: str) -> None:
        self._records.pop(key, None)

    async def purge_expired(self, now: datetime, ttl_seconds: float) -> int:
        expired = [key for key, record in self._records.items() if record.is_expired(now, ttl_seconds)]
        for key in expired:
            del self._records[key]
        return len(expired)


class SqlIdempotencyLedger(IdempotencyLedger):
    """
    Durable ledger on the `idempotency_records` table.

    A duplicate primary key on insert means another holder owns the key.
    Results are stored as JSON; pass `encode`/`decode` for non-JSON results.
    """

    def __init__(
        self,
        session_factory=None,
        *,
        encode: Optional[Callable[[Any], Any]] = None,
        decode: Optional[Callable[[Any], Any]] = None,
    ):
        self._session_factory = session_factory
        self._encode = encode or (lambda value: value)
        self._decode = decode or (lambda value: value)

    def _session(self):
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory()

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Idempotency ledger unavailable: {exc.__class__.__name__}") from exc

    async def get(self, key: str) -> Optional[IdempotencyRecord]:
        return await self._run(self._get_sync, key)

    async def claim(self, key: str, created_at: datetime, ttl_seconds: float) -> bool:
        return await self._run(self._claim_sync, key, created_at.astimezone(timezone.utc), ttl_seconds)

    async def complete(self, key: str, result: Any) -> None:
        await self._run(self._set_status_sync, key, IdempotencyStatus.COMPLETED, self._encode(result))

    async def fail(self, key: str) -> None:
        await self._run(self._set_status_sync, key, IdempotencyStatus.FAILED, None)

    async def delete(self, key: str) -> None:
        await self._run(self._delete_sync, key)

    async def purge_expired(self, now: datetime, ttl_seconds: float) -> int:
        cutoff = now.astimezone(timezone.utc) - timedelta(seconds=ttl_seconds)
        return await self._run(self._purge_sync, cutoff)

    # Sync helpers (run in a worker thread) ----------------------------
    def _get_sync(self, key: str) -> Optional[IdempotencyRecord]:
        session = self._session()
        try:
            row = session.execute(
                select(idempotency_records).where(idempotency_records.c.key == key)
            ).mappings().first()
        finally:
            session.close()
        if row is None:
            return None
        status = IdempotencyStatus(row["status"])
        cached = row["cached_result"]
        return IdempotencyRecord(
            key=row["key"],
            created_at=_as_utc(row["created_at"]),
            status=status,
            cached_result=self._decode(cached) if status is IdempotencyStatus.COMPLETED and cached is not None else None,
        )

    def _claim_sync(self, key: str, created_at: datetime, ttl_seconds: float) -> bool:
        cutoff = created_at - timedelta(seconds=ttl_seconds)
        session = self._session()
        try:
            session.execute(
                delete(idempotency_records).where(
                    idempotency_records.c.key == key,
                    or_(
                        idempotency_records.c.status == IdempotencyStatus.FAILED.value,
                        idempotency_records.c.created_at < cutoff,
                    ),
                )
            )
            session.execute(
                insert(idempotency_records).values(
                    key=key,
                    created_at=created_at,
                    status=IdempotencyStatus.PENDING.value,
                    cached_result=None,
                )
            )
            session.commit()
            return True
        except IntegrityError:
            # Duplicate key - a live record already exists
            session.rollback()
            return False
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _set_status_sync(self, key: str, status: IdempotencyStatus, cached_result: Any) -> None:
        session = self._session()
        try:
            session.execute(
                update(idempotency_records)
                .where(idempotency_records.c.key == key)
                .values(status=status.value, cached_result=cached_result)
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _delete_sync(self, key: str) -> None:
        session = self._session()
        try:
            session.execute(delete(idempotency_records).where(idempotency_records.c.key == key))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _purge_sync(self, cutoff: datetime) -> int:
        session = self._session()
        try:
            result = session.execute(delete(idempotency_records).where(idempotency_records.c.created_at < cutoff))
            session.commit()
            return result.rowcount or 0
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


class IdempotencyGuard:
    """
    Run each logical operation at most once per TTL window.

    Concurrent callers with the same key in this process share one task.
    Callers in other processes see the ledger: completed records replay
    their cached result, pending ones are waited on until they finish or
    expire. Failures are recorded but never cached.
    """

    def __init__(
        self,
        ledger: Optional[IdempotencyLedger] = None,
        *,
        ttl_seconds: Optional[float] = None,
        backoff_seconds: Optional[float] = None,
        now_fn: Optional[Callable[[], datetime]] = None,
        metrics: Optional[MetricsRegistry] = None,
    ):
        self.ledger = ledger if ledger is not None else InMemoryIdempotencyLedger()
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.IDEMPOTENCY_TTL_SECONDS
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.IDEMPOTENCY_BACKOFF_SECONDS
        self._now_fn = now_fn or _utc_now
        self._metrics = metrics or METRICS
        self._inflight: Dict[str, asyncio.Task] = {}

    def inflight_keys(self):
        return set(self._inflight)

    async def run_once(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None:
            # Registered before the first suspension point so racing callers coalesce
            task = asyncio.ensure_future(self._execute(key, operation))
            self._inflight[key] = task
            idempotency_inflight(self._metrics).inc()
            task.add_done_callback(lambda done, k=key: self._forget(k, done))
        else:
            self._count("coalesced")
            logger.debug("idempotency.coalesced key=%s", key)
        return await asyncio.shield(task)

    async def purge_expired(self) -> int:
        purged = await self.ledger.purge_expired(self._now_fn(), self.ttl_seconds)
        if purged:
            self._count("purged", purged)
            logger.info("idempotency.purged count=%s", purged)
        return purged

    # Internal helpers -------------------------------------------------
    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
            idempotency_inflight(self._metrics).dec()
        if not task.cancelled():
            # Mark the exception retrieved; awaiting callers already re-raised it
            task.exception()

    def _count(self, event: str, amount: float = 1.0) -> None:
        idempotency_events_total(self._metrics).inc({"event": event}, amount)

    async def _execute(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        deadline = time.monotonic() + self.ttl_seconds
        while True:
            now = self._now_fn()
            record = await self.ledger.get(key)

            if record is not None and record.is_expired(now, self.ttl_seconds):
                await self.ledger.delete(key)
                self._count("expired")
                record = None

            if record is not None and record.status is IdempotencyStatus.COMPLETED:
                self._count("replayed")
                logger.info("idempotency.replayed key=%s", key)
                return record.cached_result

            if record is not None and record.status is IdempotencyStatus.PENDING:
                if time.monotonic() >= deadline:
                    # Holder never finished within TTL; take the key over
                    logger.warning("idempotency.stale_pending key=%s", key)
                    await self.ledger.delete(key)
                    self._count("expired")
                    continue
                self._count("waited")
                await asyncio.sleep(self.backoff_seconds)
                continue

            if await self.ledger.claim(key, now, self.ttl_seconds):
                break

            # Lost the claim to another holder; re-check
            await asyncio.sleep(self.backoff_seconds)

        return await self._run_claimed(key, operation)

    async def _run_claimed(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            result = await operation()
        except Exception:
            self._count("failed")
            await self._record_safely(self.ledger.fail(key), key, "fail")
            raise
        await self._record_safely(self.ledger.complete(key, result), key, "complete")
        self._count("executed")
        return result

    async def _record_safely(self, pending: Awaitable[None], key: str, action: str) -> None:
        try:
            await pending
        except Exception:
            # The operation's own outcome stands; the record expires with TTL
            self._count("ledger_error")
            logger.warning("idempotency.ledger_write_failed key=%s action=%s", key, action, exc_info=True)
