# quizcore/conftest.py
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to PYTHONPATH
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from quizcore.core.idempotency import IdempotencyGuard, InMemoryIdempotencyLedger
from quizcore.core.metrics import MetricsRegistry
from quizcore.features.calendar.service import CalendarService
from quizcore.features.progress.repository import InMemoryProgressRepository
from quizcore.features.progress.service import SubmissionOrchestrator


# Monday 2024-01-15, 12:00 in Europe/Chisinau (UTC+2 in winter)
START = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics():
    return MetricsRegistry()


@pytest.fixture
def calendar(clock):
    return CalendarService("Europe/Chisinau", now_fn=clock)


@pytest.fixture
def repository():
    repo = InMemoryProgressRepository()
    repo.register_quiz("quiz-1", 10)
    repo.register_quiz("quiz-2", 10)
    return repo


@pytest.fixture
def ledger():
    return InMemoryIdempotencyLedger()


@pytest.fixture
def guard(ledger, clock, metrics):
    return IdempotencyGuard(ledger, ttl_seconds=60, backoff_seconds=0.01, now_fn=clock, metrics=metrics)


@pytest.fixture
def orchestrator(repository, guard, calendar, clock, metrics):
    return SubmissionOrchestrator(
        repository,
        guard=guard,
        calendar=calendar,
        now_fn=clock,
        metrics=metrics,
    )


@pytest.fixture
def sqlite_session_factory():
    """
    Fresh in-memory SQLite database with all tables created.

    Disposed after the test so the global engine never leaks between tests.
    """
    from quizcore.core.database import create_all_tables, dispose_engine, drop_all_tables, get_session_factory, init_engine

    init_engine("sqlite://")
    create_all_tables()
    yield get_session_factory()
    drop_all_tables()
    dispose_engine()
