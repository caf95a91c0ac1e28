"""
Per-task rechecks with progressive backoff, and the periodic bulk sweep.

Neither path sleeps between attempts. Every "try again later" is handed to a
JobScheduler, which in production enqueues a delayed Celery task.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from songbroker.config import Settings, get_settings
from songbroker.db.models import ACTIVE_TASK_STATUSES
from songbroker.services.error_classifier import ErrorCategory, ErrorClassification
from songbroker.services.generation_store import GenerationStore, generation_store
from songbroker.services.rate_limiter import AtomicCounterStore
from songbroker.services.reconciler import StatusReconciler
from songbroker.services.task_store import Clock, TaskRecordStore, task_store, utcnow

logger = logging.getLogger(__name__)

CHECK_TASK_JOB = "songbroker.worker.check_task_status"
BULK_SWEEP_JOB = "songbroker.worker.check_all_pending_tasks"

BULK_SWEEP_LOCK_KEY = "bulk-sweep:lock"
BULK_SWEEP_LAST_RUN_KEY = "bulk-sweep:last-run"

TIMEOUT_MESSAGE = "Status check timed out after {attempts} attempts"

# (attempts below, delay in seconds)
BACKOFF_TABLE: tuple[tuple[int, int], ...] = (
    (3, 30),
    (6, 45),
    (10, 60),
    (15, 90),
    (20, 150),
    (25, 300),
)
BACKOFF_CEILING = 600


def backoff_delay(attempt: int) -> int:
    """Seconds to wait before check number ``attempt`` (0-based)."""
    for upper_bound, delay in BACKOFF_TABLE:
        if attempt < upper_bound:
            return delay
    return BACKOFF_CEILING


@dataclass(frozen=True)
class ScheduledJob:
    """A named job and the keyword arguments it runs with."""

    name: str
    kwargs: dict[str, Any] = field(default_factory=dict)


class JobScheduler(Protocol):
    def schedule_after(self, delay_seconds: float, job: ScheduledJob) -> None:
        """Run ``job`` once, ``delay_seconds`` from now."""
        ...


@dataclass
class BulkSweepResult:
    """Outcome of one bulk sweep run."""

    skipped: bool = False
    skip_reason: Optional[str] = None
    tasks_found: int = 0
    batches_run: int = 0
    tasks_mutated: int = 0
    deferred: bool = False
    failed: bool = False
    next_run_in_seconds: Optional[int] = None


class RetryScheduler:
    """Schedules and runs status rechecks on top of the StatusReconciler."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        reconciler: StatusReconciler,
        job_scheduler: JobScheduler,
        counter_store: AtomicCounterStore,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        tasks: Optional[TaskRecordStore] = None,
        generations: Optional[GenerationStore] = None,
    ):
        self.session_factory = session_factory
        self.reconciler = reconciler
        self.job_scheduler = job_scheduler
        self.counter_store = counter_store
        self.settings = settings or get_settings()
        self.clock = clock
        self.sleep = sleep
        self.tasks = tasks or task_store
        self.generations = generations or generation_store

    @property
    def max_attempts(self) -> int:
        return self.settings.status_check_max_attempts

    def schedule_initial_check(self, provider_task_id: str) -> None:
        """First check of a freshly created task."""
        self.job_scheduler.schedule_after(
            self.settings.status_check_initial_delay,
            ScheduledJob(CHECK_TASK_JOB, {"provider_task_id": provider_task_id, "attempt": 0}),
        )

    async def schedule_recheck(self, provider_task_id: str, attempt_count: int) -> Optional[int]:
        """
        Schedule check number ``attempt_count`` for a task that is still active.

        Once ``attempt_count`` reaches the attempt cap the task is failed with
        a timeout instead.

        Returns:
            The delay used, or None if nothing was scheduled
        """
        if attempt_count >= self.max_attempts:
            await self._fail_with_timeout(provider_task_id, attempt_count)
            return None

        delay = backoff_delay(attempt_count)
        self.job_scheduler.schedule_after(
            delay,
            ScheduledJob(
                CHECK_TASK_JOB,
                {"provider_task_id": provider_task_id, "attempt": attempt_count},
            ),
        )
        logger.debug(f"Task {provider_task_id} check {attempt_count} scheduled in {delay}s")
        return delay

    async def run_check(self, provider_task_id: str, attempt: int) -> Optional[str]:
        """
        Body of a scheduled per-task check.

        Returns:
            The task's status after the check, or None for an unknown task
        """
        async with self.session_factory() as db:
            task = await self.tasks.find_by_provider_id(db, provider_task_id)
            if task is None:
                logger.warning(f"Scheduled check for unknown task {provider_task_id}")
                return None
            if task.status.is_terminal:
                logger.debug(f"Task {provider_task_id} already {task.status.value}, check skipped")
                return task.status.value
            await self.tasks.record_attempt(db, task.id, attempt)
            await db.commit()

        result = await self.reconciler.reconcile([provider_task_id])
        status = result.status_of(provider_task_id)

        if status is not None and not status.is_terminal:
            await self.schedule_recheck(provider_task_id, attempt + 1)
        return status.value if status else None

    async def _fail_with_timeout(self, provider_task_id: str, attempts: int) -> None:
        timeout = ErrorClassification.for_category(ErrorCategory.TIMEOUT)
        async with self.session_factory() as db:
            task = await self.tasks.find_by_provider_id(db, provider_task_id)
            if task is None:
                return
            applied = await self.tasks.mark_failed(
                db,
                task.id,
                TIMEOUT_MESSAGE.format(attempts=attempts),
                timeout.category.value,
            )
            if applied and task.generation_pk is not None:
                await self.generations.recompute_status(db, task.generation_pk)
            await db.commit()

        if applied:
            logger.warning(f"Task {provider_task_id} timed out after {attempts} status checks")

    async def run_bulk_sweep(
        self,
        batch_size: Optional[int] = None,
        max_age_minutes: Optional[int] = None,
    ) -> BulkSweepResult:
        """
        Reconcile every active task created within ``max_age_minutes``.

        Only one sweep runs at a time and sweeps start at most once per
        minimum interval. Every run not skipped by those two guards schedules
        the next one, including a run that failed before it got the lock.
        """
        batch_size = batch_size or self.settings.bulk_sweep_batch_size
        max_age_minutes = max_age_minutes or self.settings.bulk_sweep_max_age_minutes
        result = BulkSweepResult()

        lock_ttl = self.settings.bulk_sweep_lock_ttl_minutes * 60
        locked = False
        try:
            locked = await self.counter_store.acquire_lock(BULK_SWEEP_LOCK_KEY, lock_ttl)
            if not locked:
                logger.info("Bulk sweep already running, skipping")
                result.skipped, result.skip_reason = True, "locked"
                return result

            if await self._ran_recently():
                logger.info("Bulk sweep ran recently, skipping")
                result.skipped, result.skip_reason = True, "min_interval"
                return result

            await self.counter_store.set(BULK_SWEEP_LAST_RUN_KEY, self.clock().isoformat(), 3600)
            await self._sweep(batch_size, max_age_minutes, result)
            result.next_run_in_seconds = self.settings.bulk_sweep_interval_minutes * 60
        except Exception:
            logger.exception("Bulk sweep failed")
            result.failed = True
            result.next_run_in_seconds = self.settings.bulk_sweep_retry_minutes * 60
        finally:
            if locked:
                await self._release_lock()

        self.job_scheduler.schedule_after(
            result.next_run_in_seconds,
            ScheduledJob(
                BULK_SWEEP_JOB,
                {"batch_size": batch_size, "max_age_minutes": max_age_minutes},
            ),
        )
        return result

    async def _release_lock(self) -> None:
        try:
            await self.counter_store.release_lock(BULK_SWEEP_LOCK_KEY)
        except Exception:
            # The lock still expires after its TTL
            logger.exception("Could not release bulk sweep lock")

    async def _ran_recently(self) -> bool:
        last_run = await self.counter_store.get(BULK_SWEEP_LAST_RUN_KEY)
        if not last_run:
            return False
        try:
            last_run_at = datetime.fromisoformat(last_run)
        except ValueError:
            return False
        min_interval = timedelta(minutes=self.settings.bulk_sweep_min_interval_minutes)
        return self.clock() - last_run_at < min_interval

    async def _sweep(self, batch_size: int, max_age_minutes: int, result: BulkSweepResult) -> None:
        cutoff = self.clock() - timedelta(minutes=max_age_minutes)
        async with self.session_factory() as db:
            pending = await self.tasks.find_by_status_in(
                db, ACTIVE_TASK_STATUSES, created_after=cutoff
            )
            task_ids = [task.provider_task_id for task in pending]

        result.tasks_found = len(task_ids)
        logger.info(f"Bulk sweep found {len(task_ids)} active tasks")

        touched: set[int] = set()
        for start in range(0, len(task_ids), batch_size):
            if start:
                await self.sleep(self.settings.bulk_sweep_batch_delay_seconds)

            batch = task_ids[start : start + batch_size]
            batch_result = await self.reconciler.reconcile(batch)
            if batch_result.deferred:
                logger.info(
                    f"Bulk sweep stopped at task {start}/{len(task_ids)}: provider rate limit"
                )
                result.deferred = True
                break

            result.batches_run += 1
            result.tasks_mutated += batch_result.mutated_count
            touched |= batch_result.touched_generation_pks

        if touched:
            async with self.session_factory() as db:
                await self.generations.recompute_many(db, touched)
                await db.commit()

        logger.info(
            f"Bulk sweep finished: {result.batches_run} batches, "
            f"{result.tasks_mutated} tasks updated"
        )
