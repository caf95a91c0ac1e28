"""Celery worker configuration and tasks."""

import asyncio
import logging
from typing import Any, Coroutine, Optional

from celery import Celery, Task
from celery.signals import worker_ready
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy.exc import InterfaceError, OperationalError

from songbroker.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

# Create Celery app
celery_app = Celery(
    "songbroker_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=600,  # 10 minutes max per task
    task_soft_time_limit=540,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_ignore_result=True,
    task_default_queue="default",
    task_queues={
        "default": {"exchange": "default", "routing_key": "default"},
        "status_checks": {"exchange": "status_checks", "routing_key": "status_checks"},
        "maintenance": {"exchange": "maintenance", "routing_key": "maintenance"},
    },
    task_routes={
        "songbroker.worker.check_task_status": {"queue": "status_checks"},
        "songbroker.worker.check_all_pending_tasks": {"queue": "status_checks"},
        "songbroker.worker.run_maintenance": {"queue": "maintenance"},
    },
    beat_schedule={
        "run-maintenance": {
            "task": "songbroker.worker.run_maintenance",
            "schedule": 300.0,  # Every 5 minutes
        },
    },
)

_loop: Optional[asyncio.AbstractEventLoop] = None


def run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    """
    Run a coroutine on this worker process's event loop.

    The loop is reused across tasks so pooled database and Redis connections
    stay bound to the loop that opened them.
    """
    global _loop
    if _loop is None or _loop.is_closed():
        _loop = asyncio.new_event_loop()
    return _loop.run_until_complete(coro)


class CeleryJobScheduler:
    """JobScheduler that enqueues delayed Celery tasks by name."""

    def __init__(self, app: Optional[Celery] = None):
        self.app = app or celery_app

    def schedule_after(self, delay_seconds, job) -> None:
        self.app.send_task(job.name, kwargs=job.kwargs, countdown=delay_seconds)


class BaseTask(Task):
    """Base task retrying infrastructure failures (database, broker)."""

    autoretry_for = (
        ConnectionError,
        OSError,
        RedisConnectionError,
        RedisTimeoutError,
        OperationalError,
        InterfaceError,
    )
    retry_backoff = True
    retry_backoff_max = 600
    retry_jitter = True
    max_retries = 3


@celery_app.task(bind=True, base=BaseTask, name="songbroker.worker.check_task_status")
def check_task_status(self, provider_task_id: str, attempt: int = 0) -> Optional[str]:
    """
    Check one task against the provider and schedule the next check if needed.

    Args:
        provider_task_id: Provider task id
        attempt: 0-based check number, carried from the previous check

    Returns:
        Task status after the check
    """
    from songbroker.services.factory import get_retry_scheduler

    scheduler = get_retry_scheduler()
    status = run_async(scheduler.run_check(provider_task_id, attempt))
    logger.info(f"Status check {attempt} for task {provider_task_id}: {status}")
    return status


@celery_app.task(base=BaseTask, name="songbroker.worker.check_all_pending_tasks")
def check_all_pending_tasks(
    batch_size: Optional[int] = None,
    max_age_minutes: Optional[int] = None,
) -> dict:
    """Bulk sweep over all active tasks. Reschedules itself."""
    from songbroker.services.factory import get_retry_scheduler

    scheduler = get_retry_scheduler()
    result = run_async(scheduler.run_bulk_sweep(batch_size, max_age_minutes))
    return {
        "skipped": result.skipped,
        "skip_reason": result.skip_reason,
        "tasks_found": result.tasks_found,
        "batches_run": result.batches_run,
        "tasks_mutated": result.tasks_mutated,
        "failed": result.failed,
    }


@celery_app.task(name="songbroker.worker.run_maintenance")
def run_maintenance() -> dict:
    """Periodic task failing stale tasks and archiving old content."""
    from songbroker.services.factory import get_maintenance_service

    maintenance = get_maintenance_service()

    async def do_maintenance():
        stale = await maintenance.fail_stale_tasks()
        archived = await maintenance.archive_old_content()
        return {"stale_failed": stale, "archived": archived}

    return run_async(do_maintenance())


@worker_ready.connect
def start_bulk_sweep(sender=None, **kwargs):
    """Kick off the self-rescheduling bulk sweep when a worker comes up."""
    check_all_pending_tasks.apply_async(
        kwargs={
            "batch_size": settings.bulk_sweep_batch_size,
            "max_age_minutes": settings.bulk_sweep_max_age_minutes,
        },
        countdown=10,
    )
    logger.info("Bulk status sweep scheduled")
