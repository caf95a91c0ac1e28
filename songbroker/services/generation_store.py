"""Persistence for generations and their derived status."""

import logging
from datetime import timedelta
from typing import Iterable, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from songbroker.db.models import (
    GeneratedContent,
    Generation,
    GenerationMode,
    GenerationStatus,
    TaskStatus,
)
from songbroker.schemas.schemas import GenerationResponse
from songbroker.services.exceptions import GenerationNotFoundError, TaskCountMismatchError
from songbroker.services.task_store import Clock, TaskRecordStore, utcnow

logger = logging.getLogger(__name__)

STATUS_HISTORY_LIMIT = 10

_CONTENT_TYPES = {
    GenerationMode.TEXT_TO_SONG: "song",
    GenerationMode.LYRICS_TO_SONG: "song",
    GenerationMode.INSTRUMENTAL: "instrumental",
}


def derive_generation_status(statuses: Iterable[TaskStatus]) -> GenerationStatus:
    """
    Derive a generation's status from its children.

    Any failed child fails the generation; otherwise any pending or
    processing child keeps it processing; all completed completes it.
    Anything else (e.g. cancelled children) is mixed. No children yet
    means processing.
    """
    statuses = list(statuses)
    if not statuses:
        return GenerationStatus.PROCESSING
    if TaskStatus.FAILED in statuses:
        return GenerationStatus.FAILED
    if any(s in (TaskStatus.PENDING, TaskStatus.PROCESSING) for s in statuses):
        return GenerationStatus.PROCESSING
    if all(s == TaskStatus.COMPLETED for s in statuses):
        return GenerationStatus.COMPLETED
    return GenerationStatus.MIXED


class GenerationStore:
    """Store for Generation rows."""

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock

    async def create_with_tasks(
        self,
        db: AsyncSession,
        owner_id: str,
        mode: GenerationMode,
        provider_task_ids: list[str],
        task_count: int,
        request_data: Optional[dict] = None,
        title: Optional[str] = None,
    ) -> Generation:
        """
        Create a generation and one pending task per provider task id.

        Raises:
            TaskCountMismatchError: ``provider_task_ids`` does not hold ``task_count`` ids
        """
        if len(provider_task_ids) != task_count or len(set(provider_task_ids)) != task_count:
            raise TaskCountMismatchError(task_count, len(set(provider_task_ids)))

        now = self.clock()
        generation = Generation(
            generation_id=str(uuid4()),
            owner_id=owner_id,
            mode=mode,
            request_data=request_data,
            task_count=task_count,
            status=GenerationStatus.PROCESSING,
            meta={"status_changes": []},
            created_at=now,
        )
        db.add(generation)
        await db.flush()

        for provider_task_id in provider_task_ids:
            db.add(
                GeneratedContent(
                    provider_task_id=provider_task_id,
                    owner_id=owner_id,
                    generation_pk=generation.id,
                    content_type=_CONTENT_TYPES[mode],
                    title=title,
                    status=TaskStatus.PENDING,
                    check_attempts=0,
                    created_at=now,
                )
            )
        await db.flush()

        logger.info(
            f"Generation {generation.generation_id} created with {task_count} tasks "
            f"for owner {owner_id}"
        )
        return await self.find_by_generation_id(db, generation.generation_id)

    async def find_by_id(self, db: AsyncSession, generation_pk: int) -> Optional[Generation]:
        return await db.get(Generation, generation_pk, populate_existing=True)

    async def find_by_generation_id(
        self,
        db: AsyncSession,
        generation_id: str,
        owner_id: Optional[str] = None,
        include_tasks: bool = True,
    ) -> Optional[Generation]:
        query = select(Generation).where(Generation.generation_id == generation_id)

        if owner_id is not None:
            query = query.where(Generation.owner_id == owner_id)

        if include_tasks:
            query = query.options(selectinload(Generation.tasks))

        result = await db.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def recompute_status(
        self,
        db: AsyncSession,
        generation_pk: int,
    ) -> Optional[GenerationStatus]:
        """
        Re-derive a generation's status from the current child rows.

        Persists the status, a bounded change history and ``completed_at``
        when the status changed. Returns the derived status, or None when
        the generation no longer exists.
        """
        result = await db.execute(
            select(GeneratedContent.status).where(GeneratedContent.generation_pk == generation_pk)
        )
        derived = derive_generation_status(result.scalars().all())

        generation = await self.find_by_id(db, generation_pk)
        if generation is None:
            return None

        if generation.status == derived:
            return derived

        now = self.clock()
        previous = generation.status
        metadata = dict(generation.meta or {})
        history = list(metadata.get("status_changes", []))
        history.append(
            {
                "from": previous.value if previous else None,
                "to": derived.value,
                "changed_at": now.isoformat(),
            }
        )
        metadata["status_changes"] = history[-STATUS_HISTORY_LIMIT:]

        generation.status = derived
        generation.meta = metadata
        if derived == GenerationStatus.PROCESSING:
            generation.completed_at = None
        else:
            generation.completed_at = now

        await db.flush()
        logger.info(
            f"Generation {generation.generation_id} status "
            f"{previous.value if previous else None} -> {derived.value}"
        )
        return derived

    async def recompute_many(
        self,
        db: AsyncSession,
        generation_pks: Iterable[int],
    ) -> dict[int, Optional[GenerationStatus]]:
        return {pk: await self.recompute_status(db, pk) for pk in sorted(set(generation_pks))}

    async def touch_accessed(self, db: AsyncSession, generation: Generation) -> None:
        generation.last_accessed_at = self.clock()
        await db.flush()

    async def delete(
        self,
        db: AsyncSession,
        generation_id: str,
        owner_id: Optional[str] = None,
    ) -> None:
        """Delete a generation together with its tasks."""
        generation = await self.find_by_generation_id(db, generation_id, owner_id)
        if generation is None:
            raise GenerationNotFoundError(generation_id)

        await db.delete(generation)
        await db.flush()
        logger.info(f"Generation {generation_id} deleted with {len(generation.tasks)} tasks")

    async def archive_terminal(
        self,
        db: AsyncSession,
        older_than_days: int,
        unaccessed_days: int,
    ) -> int:
        """Flag old, unaccessed terminal generations as archived."""
        now = self.clock()
        created_cutoff = now - timedelta(days=older_than_days)
        access_cutoff = now - timedelta(days=unaccessed_days)

        result = await db.execute(
            select(Generation).where(
                Generation.status != GenerationStatus.PROCESSING,
                Generation.created_at < created_cutoff,
                (Generation.last_accessed_at.is_(None))
                | (Generation.last_accessed_at < access_cutoff),
            )
        )

        archived = 0
        for generation in result.scalars().all():
            metadata = dict(generation.meta or {})
            if "archived_at" in metadata:
                continue
            metadata["archived_at"] = now.isoformat()
            generation.meta = metadata
            archived += 1

        await db.flush()
        return archived

    @staticmethod
    def progress(generation: Generation) -> float:
        """Percentage of expected tasks that reached a terminal status."""
        if not generation.task_count:
            return 0.0
        finished = sum(1 for task in generation.tasks if task.status.is_terminal)
        return round(finished / generation.task_count * 100, 2)

    def to_response(self, generation: Generation) -> GenerationResponse:
        """Convert Generation model to response schema."""
        return GenerationResponse(
            generation_id=generation.generation_id,
            mode=generation.mode.value,
            status=generation.status.value,
            task_count=generation.task_count,
            progress_percent=self.progress(generation),
            created_at=generation.created_at,
            completed_at=generation.completed_at,
            tasks=[TaskRecordStore.to_response(task) for task in generation.tasks],
        )


# Singleton instance
generation_store = GenerationStore()
