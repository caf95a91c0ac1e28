"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from songbroker.config import Settings
from songbroker.db.models import Base, GenerationMode
from songbroker.db.session import get_db
from songbroker.main import app
from songbroker.middleware.rate_limit import limiter
from songbroker.services.factory import (
    get_counter_store,
    get_retry_scheduler,
    get_status_reconciler,
)
from songbroker.services.generation_store import GenerationStore
from songbroker.services.maintenance import MaintenanceService
from songbroker.services.rate_limiter import InMemoryCounterStore
from songbroker.services.reconciler import StatusReconciler
from songbroker.services.retry_scheduler import RetryScheduler
from songbroker.services.status_mapper import ProviderTask
from songbroker.services.task_store import TaskRecordStore

START = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeProvider:
    """Provider double answering from a dict of task payloads."""

    def __init__(self):
        self.tasks: dict[str, dict] = {}
        self.calls: list[list[str]] = []
        self.error: Optional[Exception] = None

    def set_task(self, task_id: str, status: int = 1, duration: int = -1, **fields) -> None:
        self.tasks[task_id] = {"id": task_id, "status": status, "duration": duration, **fields}

    def complete(self, task_id: str, duration: int = 187000) -> None:
        self.set_task(
            task_id,
            status=0,
            duration=duration,
            audio_url=f"https://cdn.example.com/{task_id}.mp3",
            cover_url=f"https://cdn.example.com/{task_id}.jpg",
            title="Summer Song",
        )

    def forget(self, task_id: str) -> None:
        self.tasks.pop(task_id, None)

    async def check_status(self, task_ids: list[str]) -> list[ProviderTask]:
        self.calls.append(list(task_ids))
        if self.error is not None:
            raise self.error
        return [ProviderTask.from_payload(self.tasks[tid]) for tid in task_ids if tid in self.tasks]


class RecordingScheduler:
    """JobScheduler that keeps every scheduled job."""

    def __init__(self):
        self.jobs = []

    def schedule_after(self, delay_seconds, job) -> None:
        self.jobs.append((delay_seconds, job))

    def named(self, name: str):
        return [(delay, job) for delay, job in self.jobs if job.name == name]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        provider_api_key="test-key",
        provider_calls_per_minute=1000,
        provider_retry_delay_ms=0,
        bulk_sweep_batch_delay_seconds=0,
        generation_task_count=2,
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def counter_store() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def job_scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Create a fresh SQLite database for each test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def tasks(clock) -> TaskRecordStore:
    return TaskRecordStore(clock=clock)


@pytest.fixture
def generations(clock) -> GenerationStore:
    return GenerationStore(clock=clock)


@pytest.fixture
def reconciler(session_factory, provider, counter_store, settings, clock, tasks, generations):
    return StatusReconciler(
        session_factory,
        provider,
        counter_store,
        settings,
        clock=clock,
        tasks=tasks,
        generations=generations,
    )


@pytest.fixture
def retry_scheduler(
    session_factory, reconciler, job_scheduler, counter_store, settings, clock, tasks, generations
):
    async def no_sleep(seconds):
        no_sleep.calls.append(seconds)

    no_sleep.calls = []
    return RetryScheduler(
        session_factory,
        reconciler,
        job_scheduler,
        counter_store,
        settings,
        clock=clock,
        sleep=no_sleep,
        tasks=tasks,
        generations=generations,
    )


@pytest.fixture
def maintenance(session_factory, settings, tasks, generations) -> MaintenanceService:
    return MaintenanceService(session_factory, settings, tasks=tasks, generations=generations)


@pytest_asyncio.fixture
async def make_generation(session_factory, generations):
    """Factory creating a committed generation with the given provider task ids."""

    async def _make(*task_ids: str, owner_id: str = "user-1", mode=None):
        async with session_factory() as db:
            generation = await generations.create_with_tasks(
                db,
                owner_id=owner_id,
                mode=mode or GenerationMode.TEXT_TO_SONG,
                provider_task_ids=list(task_ids),
                task_count=len(task_ids),
                request_data={"prompt": "a summer song"},
            )
            await db.commit()
            return generation

    return _make


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    reconciler,
    retry_scheduler,
    counter_store,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_status_reconciler] = lambda: reconciler
    app.dependency_overrides[get_retry_scheduler] = lambda: retry_scheduler
    app.dependency_overrides[get_counter_store] = lambda: counter_store
    limiter.enabled = False

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
    limiter.enabled = True
