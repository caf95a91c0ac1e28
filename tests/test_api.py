"""Tests for API endpoints."""

import pytest
from httpx import AsyncClient

from songbroker.services.retry_scheduler import CHECK_TASK_JOB

OWNER = {"X-Owner-ID": "user-1"}
OTHER = {"X-Owner-ID": "user-2"}


async def create_generation(client: AsyncClient, task_ids=("t1", "t2"), headers=OWNER):
    return await client.post(
        "/v1/generations",
        headers=headers,
        json={
            "mode": "text_to_song",
            "provider_task_ids": list(task_ids),
            "title": "Summer Song",
            "request_data": {"prompt": "a summer song"},
        },
    )


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    """Test health check endpoint."""
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database"] == "ok"
    assert data["redis"] == "ok"


@pytest.mark.asyncio
async def test_root_endpoint(client: AsyncClient):
    """Test root endpoint."""
    response = await client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["service"] == "songbroker"


@pytest.mark.asyncio
async def test_info_endpoint(client: AsyncClient):
    response = await client.get("/v1/info")
    assert response.status_code == 200
    assert "text_to_song" in response.json()["generation_modes"]


@pytest.mark.asyncio
async def test_create_generation_requires_owner(client: AsyncClient):
    response = await create_generation(client, headers={})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_create_generation(client: AsyncClient, job_scheduler):
    """Creating a generation schedules the first check of every task."""
    response = await create_generation(client)

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "processing"
    assert data["task_count"] == 2
    assert data["progress_percent"] == 0.0
    assert [t["provider_task_id"] for t in data["tasks"]] == ["t1", "t2"]
    assert all(t["status"] == "pending" for t in data["tasks"])

    scheduled = job_scheduler.named(CHECK_TASK_JOB)
    assert [job.kwargs["provider_task_id"] for _, job in scheduled] == ["t1", "t2"]
    assert all(job.kwargs["attempt"] == 0 for _, job in scheduled)


@pytest.mark.asyncio
async def test_create_generation_wrong_task_count(client: AsyncClient):
    response = await create_generation(client, task_ids=("t1",))
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_get_generation(client: AsyncClient):
    generation_id = (await create_generation(client)).json()["generation_id"]

    response = await client.get(f"/v1/generations/{generation_id}", headers=OWNER)
    assert response.status_code == 200
    assert response.json()["generation_id"] == generation_id

    response = await client.get(f"/v1/generations/{generation_id}", headers=OTHER)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_delete_generation(client: AsyncClient):
    generation_id = (await create_generation(client)).json()["generation_id"]

    response = await client.delete(f"/v1/generations/{generation_id}", headers=OWNER)
    assert response.status_code == 204

    response = await client.get("/v1/tasks/t1", headers=OWNER)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_get_nonexistent_task(client: AsyncClient):
    response = await client.get("/v1/tasks/missing", headers=OWNER)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_cancel_task(client: AsyncClient):
    await create_generation(client)

    response = await client.post("/v1/tasks/t1/cancel", headers=OWNER)
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "cancelled"
    assert data["completed_at"] is not None

    response = await client.post("/v1/tasks/t1/cancel", headers=OWNER)
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_cancel_other_owners_task(client: AsyncClient):
    await create_generation(client)

    response = await client.post("/v1/tasks/t1/cancel", headers=OTHER)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_check_tasks(client: AsyncClient, provider):
    await create_generation(client)
    provider.complete("t1")
    provider.set_task("t2", status=2)

    response = await client.post("/v1/tasks/check", headers=OWNER, json={"task_ids": ["t1", "t2"]})

    assert response.status_code == 200
    data = response.json()
    assert data["deferred"] is False
    statuses = {t["provider_task_id"]: t["status"] for t in data["tasks"]}
    assert statuses == {"t1": "completed", "t2": "processing"}

    response = await client.get("/v1/tasks/t1", headers=OWNER)
    assert response.json()["content_url"] == "https://cdn.example.com/t1.mp3"


@pytest.mark.asyncio
async def test_check_tasks_of_other_owner(client: AsyncClient, provider):
    await create_generation(client)

    response = await client.post("/v1/tasks/check", headers=OTHER, json={"task_ids": ["t1"]})

    assert response.status_code == 404
    assert provider.calls == []
