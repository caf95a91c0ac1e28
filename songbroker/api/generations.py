"""Generation API routes."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from songbroker.api.deps import get_owner_id
from songbroker.config import get_settings
from songbroker.db.models import GenerationMode
from songbroker.db.session import get_db
from songbroker.schemas.schemas import GenerationCreateRequest, GenerationResponse
from songbroker.services.exceptions import GenerationNotFoundError, TaskCountMismatchError
from songbroker.services.factory import get_retry_scheduler
from songbroker.services.generation_store import generation_store
from songbroker.services.retry_scheduler import RetryScheduler

router = APIRouter(prefix="/v1/generations", tags=["Generations"])
logger = logging.getLogger(__name__)

settings = get_settings()


@router.post(
    "",
    response_model=GenerationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a generation",
    description="Track the provider tasks started for an accepted generation request.",
)
async def create_generation(
    request: GenerationCreateRequest,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
    scheduler: RetryScheduler = Depends(get_retry_scheduler),
):
    """
    Create a generation and its tasks, then schedule their first status check.

    - **mode**: "text_to_song", "lyrics_to_song" or "instrumental"
    - **provider_task_ids**: ids the provider returned, one per expected task
    - **request_data**: original parameters, kept for retries
    """
    try:
        generation = await generation_store.create_with_tasks(
            db,
            owner_id=owner_id,
            mode=GenerationMode(request.mode),
            provider_task_ids=request.provider_task_ids,
            task_count=settings.generation_task_count,
            request_data=request.request_data,
            title=request.title,
        )
    except TaskCountMismatchError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    await db.commit()

    for task in generation.tasks:
        scheduler.schedule_initial_check(task.provider_task_id)

    return generation_store.to_response(generation)


@router.get(
    "/{generation_id}",
    response_model=GenerationResponse,
    summary="Get generation status",
    description="Get a generation with the status and results of its tasks.",
)
async def get_generation(
    generation_id: str,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """Get generation details including all task statuses and results."""
    generation = await generation_store.find_by_generation_id(db, generation_id, owner_id)

    if not generation:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Generation {generation_id} not found",
        )

    await generation_store.touch_accessed(db, generation)
    await db.commit()

    return generation_store.to_response(generation)


@router.delete(
    "/{generation_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a generation",
    description="Delete a generation together with its tasks.",
)
async def delete_generation(
    generation_id: str,
    owner_id: str = Depends(get_owner_id),
    db: AsyncSession = Depends(get_db),
):
    """Delete a generation and cascade to its tasks."""
    try:
        await generation_store.delete(db, generation_id, owner_id)
    except GenerationNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    await db.commit()
