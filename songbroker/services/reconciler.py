"""
Reconciliation of local task records against the provider.

One ``reconcile`` call is one short unit of work: load the requested tasks,
take a slot from the shared provider rate limit, ask the provider about all
active tasks in a single batched call, apply what changed, and re-derive the
status of every generation that was touched.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from songbroker.config import Settings, get_settings
from songbroker.db.models import GeneratedContent, TaskStatus
from songbroker.services.error_classifier import (
    ErrorCategory,
    ErrorClassification,
    classify,
)
from songbroker.services.generation_store import GenerationStore, generation_store
from songbroker.services.provider_client import ProviderClient
from songbroker.services.rate_limiter import PROVIDER_CALLS_KEY, AtomicCounterStore, RateLimiter
from songbroker.services.status_mapper import ProviderTask
from songbroker.services.task_store import Clock, TaskRecordStore, task_store, utcnow

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "Task not found in provider response"
DEFAULT_FAILURE_MESSAGE = "Generation failed"


@dataclass
class TaskOutcome:
    """What a reconciliation pass concluded for one task."""

    provider_task_id: str
    status: Optional[TaskStatus]
    mutated: bool = False
    error_category: Optional[str] = None


@dataclass
class ReconcileResult:
    """Per-task outcomes and a summary of one reconciliation pass."""

    outcomes: dict[str, TaskOutcome] = field(default_factory=dict)
    deferred: bool = False
    provider_called: bool = False
    error: Optional[ErrorClassification] = None
    not_found_count: int = 0
    unknown_task_ids: list[str] = field(default_factory=list)
    touched_generation_pks: set[int] = field(default_factory=set)

    @property
    def status_counts(self) -> dict[str, int]:
        return dict(
            Counter(o.status.value for o in self.outcomes.values() if o.status is not None)
        )

    @property
    def mutated_count(self) -> int:
        return sum(1 for o in self.outcomes.values() if o.mutated)

    def status_of(self, provider_task_id: str) -> Optional[TaskStatus]:
        outcome = self.outcomes.get(provider_task_id)
        return outcome.status if outcome else None

    def summary(self) -> dict:
        return {
            "checked": len(self.outcomes),
            "mutated": self.mutated_count,
            "not_found": self.not_found_count,
            "unknown": len(self.unknown_task_ids),
            "deferred": self.deferred,
            "error": self.error.category.value if self.error else None,
            "statuses": self.status_counts,
        }


class StatusReconciler:
    """Drives local task records toward the provider's view of them."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: ProviderClient,
        counter_store: AtomicCounterStore,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
        tasks: Optional[TaskRecordStore] = None,
        generations: Optional[GenerationStore] = None,
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.counter_store = counter_store
        self.rate_limiter = RateLimiter(counter_store)
        self.settings = settings or get_settings()
        self.clock = clock
        self.tasks = tasks or task_store
        self.generations = generations or generation_store

    async def reconcile(self, provider_task_ids: list[str]) -> ReconcileResult:
        """
        Bring the given tasks up to date with the provider.

        Terminal tasks are reported as-is and never sent to the provider.
        When the rate limit is exhausted the result is ``deferred`` and
        nothing is written.
        """
        result = ReconcileResult()
        requested = list(dict.fromkeys(tid for tid in provider_task_ids if tid))

        async with self.session_factory() as db:
            records = await self.tasks.find_many_by_provider_ids(db, requested)

            active: dict[str, GeneratedContent] = {}
            for task_id in requested:
                record = records.get(task_id)
                if record is None:
                    logger.warning(f"Task {task_id} has no local record, skipping")
                    result.unknown_task_ids.append(task_id)
                    result.outcomes[task_id] = TaskOutcome(task_id, None)
                elif record.status.is_terminal:
                    result.outcomes[task_id] = TaskOutcome(
                        task_id, record.status, error_category=record.error_category
                    )
                else:
                    active[task_id] = record

            if not active:
                return result

            allowed = await self.rate_limiter.try_acquire(
                PROVIDER_CALLS_KEY,
                self.settings.provider_calls_per_minute,
                self.settings.provider_rate_window_seconds,
            )
            if not allowed:
                logger.info(f"Deferring status check of {len(active)} tasks: provider rate limit")
                result.deferred = True
                for task_id, record in active.items():
                    result.outcomes[task_id] = TaskOutcome(task_id, record.status)
                return result

            result.provider_called = True
            try:
                provider_tasks = await self.provider.check_status(list(active))
            except Exception as e:
                classification = classify(e)
                result.error = classification
                await self._track_error(classification.category)
                await self._handle_provider_error(db, active, classification, e, result)
                await db.commit()
                return result

            returned: dict[str, ProviderTask] = {}
            for provider_task in provider_tasks:
                if provider_task.task_id in active:
                    returned[provider_task.task_id] = provider_task
                else:
                    logger.debug(f"Ignoring unrequested task {provider_task.task_id} in response")

            for task_id, record in active.items():
                provider_task = returned.get(task_id)
                if provider_task is None:
                    await self._apply_not_found(db, record, result)
                else:
                    await self._apply(db, record, provider_task, result)

            await self.tasks.touch_checked(db, (r.id for r in active.values()))
            await self.generations.recompute_many(db, result.touched_generation_pks)
            await db.commit()

        logger.info(f"Reconciled {len(requested)} tasks: {result.summary()}")
        return result

    async def _apply(
        self,
        db: AsyncSession,
        record: GeneratedContent,
        provider_task: ProviderTask,
        result: ReconcileResult,
    ) -> None:
        task_id = record.provider_task_id
        status = provider_task.canonical_status()
        applied = False
        category = None

        if status == TaskStatus.COMPLETED:
            applied = await self.tasks.mark_completed(
                db,
                record.id,
                content_url=provider_task.audio_url,
                thumbnail_url=provider_task.cover_url,
                duration_ms=provider_task.duration_ms,
                provider_metadata=provider_task.result_metadata(),
                title=provider_task.title,
                completed_at=provider_task.completed_at,
            )
        elif status == TaskStatus.FAILED:
            category = ErrorCategory.PROVIDER_FAILURE.value
            applied = await self.tasks.mark_failed(
                db,
                record.id,
                provider_task.fail_reason or DEFAULT_FAILURE_MESSAGE,
                category,
                fail_code=provider_task.fail_code,
            )
        elif status == TaskStatus.PROCESSING and record.status == TaskStatus.PENDING:
            applied = await self.tasks.mark_processing(db, record.id)
        else:
            # Still pending, or processing reported again. Never step back to pending.
            status = record.status

        if applied:
            logger.info(f"Task {task_id} {record.status.value} -> {status.value}")
            if record.generation_pk is not None:
                result.touched_generation_pks.add(record.generation_pk)
        elif status != record.status:
            # Lost a race with another writer that already finished the task
            current = await self.tasks.find_by_id(db, record.id)
            status = current.status if current else record.status
            logger.info(f"Discarded stale update for task {task_id}, now {status.value}")

        result.outcomes[task_id] = TaskOutcome(task_id, status, applied, category)

    async def _apply_not_found(
        self,
        db: AsyncSession,
        record: GeneratedContent,
        result: ReconcileResult,
    ) -> None:
        task_id = record.provider_task_id
        category = ErrorCategory.NOT_FOUND_IN_PROVIDER.value
        applied = await self.tasks.mark_failed(db, record.id, NOT_FOUND_MESSAGE, category)
        result.not_found_count += 1

        if applied:
            logger.warning(f"Task {task_id} missing from provider response, marked failed")
            if record.generation_pk is not None:
                result.touched_generation_pks.add(record.generation_pk)
            result.outcomes[task_id] = TaskOutcome(task_id, TaskStatus.FAILED, True, category)
        else:
            current = await self.tasks.find_by_id(db, record.id)
            result.outcomes[task_id] = TaskOutcome(
                task_id, current.status if current else record.status
            )

    async def _handle_provider_error(
        self,
        db: AsyncSession,
        active: dict[str, GeneratedContent],
        classification: ErrorClassification,
        error: Exception,
        result: ReconcileResult,
    ) -> None:
        if classification.retryable:
            logger.warning(
                f"Provider status check failed ({classification.category.value}), "
                f"will retry: {error}"
            )
            for task_id, record in active.items():
                result.outcomes[task_id] = TaskOutcome(
                    task_id, record.status, error_category=classification.category.value
                )
            return

        logger.error(
            f"Provider status check failed ({classification.category.value}), "
            f"failing {len(active)} tasks: {error}"
        )
        for task_id, record in active.items():
            applied = await self.tasks.mark_failed(
                db, record.id, classification.user_message, classification.category.value
            )
            if applied and record.generation_pk is not None:
                result.touched_generation_pks.add(record.generation_pk)
            result.outcomes[task_id] = TaskOutcome(
                task_id,
                TaskStatus.FAILED if applied else record.status,
                applied,
                classification.category.value,
            )
        await self.generations.recompute_many(db, result.touched_generation_pks)

    async def _track_error(self, category: ErrorCategory) -> None:
        """Count errors per category per hour and warn when one spikes."""
        hour = self.clock().strftime("%Y%m%d%H")
        count = await self.counter_store.increment(f"errors:{category.value}:{hour}", 7200)
        if count > self.settings.error_alert_threshold:
            logger.warning(f"High error frequency for {category.value}: {count} this hour")
