"""Task status API routes."""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from songbroker.api.deps import get_owner_id
from songbroker.db.session import get_db
from songbroker.middleware.rate_limit import rate_limit_checks, rate_limit_general
from songbroker.schemas.schemas import (
    TaskCheckOutcome,
    TaskCheckRequest,
    TaskCheckResponse,
    TaskStatusResponse,
)
from songbroker.services.exceptions import TaskNotFoundError, TaskStateConflictError
from songbroker.services.factory import get_status_reconciler
from songbroker.services.generation_store import generation_store
from songbroker.services.reconciler import StatusReconciler
from songbroker.services.task_store import task_store

router = APIRouter(prefix="/v1/tasks", tags=["Tasks"])


@router.post(
    "/check",
    response_model=TaskCheckResponse,
    summary="Check task status now",
    description="Reconcile the given tasks with the provider immediately.",
)
@rate_limit_checks()
async def check_tasks(
    request: Request,
    body: TaskCheckRequest,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    reconciler: StatusReconciler = Depends(get_status_reconciler),
):
    """
    Check tasks against the provider.

    Only tasks owned by the caller are checked. Terminal tasks are reported
    without contacting the provider. When the shared provider rate limit is
    exhausted the response is marked ``deferred``.
    """
    owned = await task_store.find_many_by_provider_ids(db, body.task_ids)
    task_ids = [tid for tid in body.task_ids if tid in owned and owned[tid].owner_id == owner_id]
    if not task_ids:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No matching tasks found",
        )

    result = await reconciler.reconcile(task_ids)

    return TaskCheckResponse(
        deferred=result.deferred,
        error_code=result.error.code if result.error else None,
        error_message=result.error.user_message if result.error else None,
        retry_after_seconds=result.error.retry_after_seconds if result.error else None,
        not_found=result.not_found_count,
        tasks=[
            TaskCheckOutcome(
                provider_task_id=outcome.provider_task_id,
                status=outcome.status.value if outcome.status else None,
                updated=outcome.mutated,
                error_category=outcome.error_category,
            )
            for outcome in result.outcomes.values()
        ],
    )


@router.get(
    "/{provider_task_id}",
    response_model=TaskStatusResponse,
    summary="Get task status",
    description="Get the stored status and result of a task.",
)
@rate_limit_general()
async def get_task(
    request: Request,
    provider_task_id: str,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """Get a task by provider task id."""
    task = await task_store.find_by_provider_id(db, provider_task_id, owner_id)

    if not task:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Task {provider_task_id} not found",
        )

    await task_store.touch_accessed(db, task.id)
    await db.commit()

    return task_store.to_response(task)


@router.post(
    "/{provider_task_id}/cancel",
    response_model=TaskStatusResponse,
    summary="Cancel a task",
    description="Cancel a pending or processing task.",
)
async def cancel_task(
    provider_task_id: str,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """Cancel a task. Tasks that already finished cannot be cancelled."""
    try:
        task = await task_store.cancel(db, provider_task_id, owner_id)
    except TaskNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except TaskStateConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    if task.generation_pk is not None:
        await generation_store.recompute_status(db, task.generation_pk)
    await db.commit()

    return task_store.to_response(task)
