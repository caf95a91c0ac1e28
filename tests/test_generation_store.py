"""Tests for generation persistence and derived status."""

import pytest
from sqlalchemy import func, select

from songbroker.db.models import (
    GeneratedContent,
    GenerationMode,
    GenerationStatus,
    TaskStatus,
)
from songbroker.services.exceptions import GenerationNotFoundError, TaskCountMismatchError
from songbroker.services.generation_store import derive_generation_status

P, R, C, F, X = (
    TaskStatus.PENDING,
    TaskStatus.PROCESSING,
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
)


@pytest.mark.parametrize(
    "statuses,expected",
    [
        ([], GenerationStatus.PROCESSING),
        ([P, P], GenerationStatus.PROCESSING),
        ([R, C], GenerationStatus.PROCESSING),
        ([C, C], GenerationStatus.COMPLETED),
        ([C], GenerationStatus.COMPLETED),
        ([F, C], GenerationStatus.FAILED),
        ([F, P], GenerationStatus.FAILED),
        ([X, F], GenerationStatus.FAILED),
        ([X, P], GenerationStatus.PROCESSING),
        ([C, X], GenerationStatus.MIXED),
        ([X, X], GenerationStatus.MIXED),
    ],
)
def test_derive_generation_status(statuses, expected):
    assert derive_generation_status(statuses) == expected


@pytest.mark.asyncio
async def test_create_with_tasks(db_session, generations):
    generation = await generations.create_with_tasks(
        db_session,
        owner_id="user-1",
        mode=GenerationMode.INSTRUMENTAL,
        provider_task_ids=["t1", "t2"],
        task_count=2,
        request_data={"prompt": "calm piano"},
    )

    assert len(generation.generation_id) == 36
    assert generation.status == GenerationStatus.PROCESSING
    assert [t.provider_task_id for t in generation.tasks] == ["t1", "t2"]
    assert all(t.status == TaskStatus.PENDING for t in generation.tasks)
    assert all(t.content_type == "instrumental" for t in generation.tasks)
    assert generations.progress(generation) == 0.0


@pytest.mark.asyncio
async def test_generation_ids_are_unique(db_session, generations):
    first = await generations.create_with_tasks(
        db_session, "user-1", GenerationMode.TEXT_TO_SONG, ["a1", "a2"], 2
    )
    second = await generations.create_with_tasks(
        db_session, "user-1", GenerationMode.TEXT_TO_SONG, ["b1", "b2"], 2
    )

    assert first.generation_id != second.generation_id


@pytest.mark.asyncio
@pytest.mark.parametrize("task_ids", [["t1"], ["t1", "t2", "t3"], ["t1", "t1"]])
async def test_create_rejects_wrong_task_count(db_session, generations, task_ids):
    with pytest.raises(TaskCountMismatchError):
        await generations.create_with_tasks(
            db_session, "user-1", GenerationMode.TEXT_TO_SONG, task_ids, 2
        )


@pytest.mark.asyncio
async def test_recompute_records_history(db_session, generations, tasks, clock):
    generation = await generations.create_with_tasks(
        db_session, "user-1", GenerationMode.TEXT_TO_SONG, ["t1", "t2"], 2
    )
    t1, t2 = generation.tasks

    await tasks.mark_completed(db_session, t1.id, "https://cdn/t1.mp3", duration_ms=1000)
    assert await generations.recompute_status(db_session, generation.id) == (
        GenerationStatus.PROCESSING
    )

    clock.advance(minutes=2)
    await tasks.mark_completed(db_session, t2.id, "https://cdn/t2.mp3", duration_ms=1000)
    assert await generations.recompute_status(db_session, generation.id) == (
        GenerationStatus.COMPLETED
    )

    refreshed = await generations.find_by_generation_id(db_session, generation.generation_id)
    assert refreshed.status == GenerationStatus.COMPLETED
    assert refreshed.completed_at is not None
    assert refreshed.meta["status_changes"] == [
        {"from": "processing", "to": "completed", "changed_at": clock().isoformat()}
    ]
    assert generations.progress(refreshed) == 100.0


@pytest.mark.asyncio
async def test_status_history_is_bounded(db_session, generations, tasks):
    generation = await generations.create_with_tasks(
        db_session, "user-1", GenerationMode.TEXT_TO_SONG, ["t1"], 1
    )
    generation.meta = {
        "status_changes": [{"from": "processing", "to": "mixed"}] * 10,
    }
    await db_session.flush()

    await tasks.mark_failed(db_session, generation.tasks[0].id, "boom", "provider_failure")
    await generations.recompute_status(db_session, generation.id)

    refreshed = await generations.find_by_id(db_session, generation.id)
    assert len(refreshed.meta["status_changes"]) == 10
    assert refreshed.meta["status_changes"][-1]["to"] == "failed"


@pytest.mark.asyncio
async def test_delete_cascades_to_tasks(db_session, generations):
    generation = await generations.create_with_tasks(
        db_session, "user-1", GenerationMode.TEXT_TO_SONG, ["t1", "t2"], 2
    )

    await generations.delete(db_session, generation.generation_id, "user-1")

    remaining = await db_session.execute(select(func.count()).select_from(GeneratedContent))
    assert remaining.scalar() == 0


@pytest.mark.asyncio
async def test_delete_checks_owner(db_session, generations):
    generation = await generations.create_with_tasks(
        db_session, "user-1", GenerationMode.TEXT_TO_SONG, ["t1", "t2"], 2
    )

    with pytest.raises(GenerationNotFoundError):
        await generations.delete(db_session, generation.generation_id, "user-2")
