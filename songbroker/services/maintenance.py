"""Periodic housekeeping: failing abandoned tasks and archiving old content."""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from songbroker.config import Settings, get_settings
from songbroker.services.error_classifier import ErrorCategory
from songbroker.services.generation_store import GenerationStore, generation_store
from songbroker.services.task_store import TaskRecordStore, task_store

logger = logging.getLogger(__name__)


class MaintenanceService:
    """Safety nets that sit outside the per-task check and the bulk sweep."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
        tasks: Optional[TaskRecordStore] = None,
        generations: Optional[GenerationStore] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.tasks = tasks or task_store
        self.generations = generations or generation_store

    async def fail_stale_tasks(self) -> int:
        """
        Fail tasks that stayed active longer than the stale timeout.

        Tasks this old fall outside the bulk sweep's age window, so nothing
        else would ever resolve them.
        """
        timeout_minutes = self.settings.stale_task_timeout_minutes
        async with self.session_factory() as db:
            failed = await self.tasks.fail_stale(
                db,
                timeout_minutes,
                f"Generation timed out after {timeout_minutes} minutes",
                ErrorCategory.TIMEOUT.value,
            )
            await self.generations.recompute_many(
                db, (t.generation_pk for t in failed if t.generation_pk is not None)
            )
            await db.commit()

        if failed:
            logger.warning(f"Failed {len(failed)} stale tasks older than {timeout_minutes} minutes")
        return len(failed)

    async def archive_old_content(self) -> dict[str, int]:
        """Flag old, unaccessed content and generations as archived."""
        async with self.session_factory() as db:
            content = await self.tasks.archive_completed(
                db,
                self.settings.content_archive_days,
                self.settings.archive_access_grace_days,
            )
            generations = await self.generations.archive_terminal(
                db,
                self.settings.generation_archive_days,
                self.settings.archive_access_grace_days,
            )
            await db.commit()

        logger.info(f"Archived {content} content items and {generations} generations")
        return {"content": content, "generations": generations}
