"""Persistence for generated content tasks."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from songbroker.db.models import (
    ACTIVE_TASK_STATUSES,
    GeneratedContent,
    TaskStatus,
)
from songbroker.schemas.schemas import TaskStatusResponse
from songbroker.services.exceptions import TaskNotFoundError, TaskStateConflictError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskRecordStore:
    """
    Store for GeneratedContent rows.

    Status-changing writes are single conditional UPDATE statements that only
    match pending/processing rows, so a terminal task can never be moved
    back by a racing writer. Methods report whether their write applied.
    """

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock

    async def create(
        self,
        db: AsyncSession,
        provider_task_id: str,
        owner_id: str,
        generation_pk: Optional[int] = None,
        content_type: str = "song",
        title: Optional[str] = None,
    ) -> GeneratedContent:
        """Create a pending task record."""
        task = GeneratedContent(
            provider_task_id=provider_task_id,
            owner_id=owner_id,
            generation_pk=generation_pk,
            content_type=content_type,
            title=title,
            status=TaskStatus.PENDING,
            check_attempts=0,
            created_at=self.clock(),
        )
        db.add(task)
        await db.flush()
        return task

    async def find_by_id(self, db: AsyncSession, task_pk: int) -> Optional[GeneratedContent]:
        return await db.get(GeneratedContent, task_pk, populate_existing=True)

    async def find_by_provider_id(
        self,
        db: AsyncSession,
        provider_task_id: str,
        owner_id: Optional[str] = None,
    ) -> Optional[GeneratedContent]:
        query = select(GeneratedContent).where(
            GeneratedContent.provider_task_id == provider_task_id
        )
        if owner_id is not None:
            query = query.where(GeneratedContent.owner_id == owner_id)

        result = await db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def find_many_by_provider_ids(
        self,
        db: AsyncSession,
        provider_task_ids: Iterable[str],
    ) -> dict[str, GeneratedContent]:
        """Look up several tasks at once, keyed by provider task id."""
        ids = list(provider_task_ids)
        if not ids:
            return {}

        result = await db.execute(
            select(GeneratedContent)
            .where(GeneratedContent.provider_task_id.in_(ids))
            .execution_options(populate_existing=True)
        )
        return {task.provider_task_id: task for task in result.scalars().all()}

    async def find_by_status_in(
        self,
        db: AsyncSession,
        statuses: Iterable[TaskStatus],
        created_after: Optional[datetime] = None,
        created_before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[GeneratedContent]:
        """Tasks in the given statuses with a provider id, oldest first."""
        query = select(GeneratedContent).where(
            GeneratedContent.status.in_(list(statuses)),
            GeneratedContent.provider_task_id.is_not(None),
            GeneratedContent.provider_task_id != "",
        )
        if created_after is not None:
            query = query.where(GeneratedContent.created_at >= created_after)
        if created_before is not None:
            query = query.where(GeneratedContent.created_at < created_before)

        query = query.order_by(GeneratedContent.created_at, GeneratedContent.id)
        if limit is not None:
            query = query.limit(limit)

        result = await db.execute(query)
        return list(result.scalars().all())

    async def update(self, db: AsyncSession, task_pk: int, **fields: Any) -> bool:
        """
        Apply ``fields`` to a task that is still pending or processing.

        Returns:
            True if the row was updated, False if it was missing or terminal
        """
        result = await db.execute(
            update(GeneratedContent)
            .where(
                GeneratedContent.id == task_pk,
                GeneratedContent.status.in_(ACTIVE_TASK_STATUSES),
            )
            .values(**fields)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_processing(self, db: AsyncSession, task_pk: int) -> bool:
        now = self.clock()
        return await self.update(
            db,
            task_pk,
            status=TaskStatus.PROCESSING,
            started_at=func.coalesce(GeneratedContent.started_at, now),
            last_checked_at=now,
        )

    async def mark_completed(
        self,
        db: AsyncSession,
        task_pk: int,
        content_url: Optional[str],
        thumbnail_url: Optional[str] = None,
        duration_ms: Optional[int] = None,
        provider_metadata: Optional[dict] = None,
        title: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> bool:
        now = self.clock()
        update_data: dict[str, Any] = {
            "status": TaskStatus.COMPLETED,
            "content_url": content_url,
            "thumbnail_url": thumbnail_url,
            "duration_ms": duration_ms,
            "provider_metadata": provider_metadata,
            "error_message": None,
            "fail_code": None,
            "error_category": None,
            "started_at": func.coalesce(GeneratedContent.started_at, now),
            "completed_at": completed_at or now,
            "last_checked_at": now,
        }
        if title:
            update_data["title"] = title
        return await self.update(db, task_pk, **update_data)

    async def mark_failed(
        self,
        db: AsyncSession,
        task_pk: int,
        error_message: str,
        error_category: str,
        fail_code: Optional[str] = None,
    ) -> bool:
        now = self.clock()
        return await self.update(
            db,
            task_pk,
            status=TaskStatus.FAILED,
            error_message=error_message,
            error_category=error_category,
            fail_code=fail_code,
            content_url=None,
            thumbnail_url=None,
            completed_at=now,
            last_checked_at=now,
        )

    async def touch_checked(self, db: AsyncSession, task_pks: Iterable[int]) -> None:
        """Record a reconciliation attempt on still-active tasks."""
        pks = list(task_pks)
        if not pks:
            return
        await db.execute(
            update(GeneratedContent)
            .where(
                GeneratedContent.id.in_(pks),
                GeneratedContent.status.in_(ACTIVE_TASK_STATUSES),
            )
            .values(last_checked_at=self.clock())
            .execution_options(synchronize_session=False)
        )

    async def record_attempt(self, db: AsyncSession, task_pk: int, attempt: int) -> None:
        await self.update(db, task_pk, check_attempts=attempt + 1)

    async def touch_accessed(self, db: AsyncSession, task_pk: int) -> None:
        await db.execute(
            update(GeneratedContent)
            .where(GeneratedContent.id == task_pk)
            .values(last_accessed_at=self.clock())
            .execution_options(synchronize_session=False)
        )

    async def cancel(
        self,
        db: AsyncSession,
        provider_task_id: str,
        owner_id: Optional[str] = None,
    ) -> GeneratedContent:
        """
        Cancel a pending or processing task.

        Raises:
            TaskNotFoundError: unknown task (or owned by someone else)
            TaskStateConflictError: task already terminal
        """
        task = await self.find_by_provider_id(db, provider_task_id, owner_id)
        if task is None:
            raise TaskNotFoundError(provider_task_id)

        now = self.clock()
        applied = await self.update(
            db,
            task.id,
            status=TaskStatus.CANCELLED,
            completed_at=now,
            error_message="Cancelled by user",
        )
        if not applied:
            current = await self.find_by_id(db, task.id)
            current_status = current.status.value if current else "missing"
            raise TaskStateConflictError(provider_task_id, current_status)

        logger.info(f"Task {provider_task_id} cancelled")
        return await self.find_by_id(db, task.id)

    async def fail_stale(
        self,
        db: AsyncSession,
        older_than_minutes: int,
        error_message: str,
        error_category: str,
    ) -> list[GeneratedContent]:
        """Fail active tasks created more than ``older_than_minutes`` ago."""
        cutoff = self.clock() - timedelta(minutes=older_than_minutes)
        stale = await self.find_by_status_in(db, ACTIVE_TASK_STATUSES, created_before=cutoff)

        failed = []
        for task in stale:
            if await self.mark_failed(db, task.id, error_message, error_category):
                failed.append(task)
        return failed

    async def archive_completed(
        self,
        db: AsyncSession,
        older_than_days: int,
        unaccessed_days: int,
    ) -> int:
        """Flag old, unaccessed completed content as archived in its metadata."""
        now = self.clock()
        created_cutoff = now - timedelta(days=older_than_days)
        access_cutoff = now - timedelta(days=unaccessed_days)

        result = await db.execute(
            select(GeneratedContent).where(
                GeneratedContent.status == TaskStatus.COMPLETED,
                GeneratedContent.created_at < created_cutoff,
                (GeneratedContent.last_accessed_at.is_(None))
                | (GeneratedContent.last_accessed_at < access_cutoff),
            )
        )

        archived = 0
        for task in result.scalars().all():
            metadata = dict(task.provider_metadata or {})
            if "archived_at" in metadata:
                continue
            metadata["archived_at"] = now.isoformat()
            task.provider_metadata = metadata
            archived += 1

        await db.flush()
        return archived

    @staticmethod
    def to_response(task: GeneratedContent) -> TaskStatusResponse:
        """Convert GeneratedContent model to response schema."""
        return TaskStatusResponse(
            provider_task_id=task.provider_task_id,
            status=task.status.value,
            content_type=task.content_type,
            title=task.title,
            content_url=task.content_url,
            thumbnail_url=task.thumbnail_url,
            duration_ms=task.duration_ms,
            error_message=task.error_message,
            error_category=task.error_category,
            fail_code=task.fail_code,
            check_attempts=task.check_attempts or 0,
            created_at=task.created_at,
            started_at=task.started_at,
            completed_at=task.completed_at,
            last_checked_at=task.last_checked_at,
        )


# Singleton instance
task_store = TaskRecordStore()
