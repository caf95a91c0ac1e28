"""Pydantic schemas for request/response validation."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============== Task Schemas ==============


class TaskStatusResponse(BaseModel):
    """Status and result of a single provider task."""

    model_config = ConfigDict(from_attributes=True)

    provider_task_id: str
    status: str
    content_type: str
    title: Optional[str] = None
    content_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    error_category: Optional[str] = None
    fail_code: Optional[str] = None
    check_attempts: int = 0
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None


class TaskCheckRequest(BaseModel):
    """Request to reconcile tasks with the provider right away."""

    task_ids: list[str] = Field(
        ..., min_length=1, max_length=50, description="Provider task ids to check"
    )

    @field_validator("task_ids")
    @classmethod
    def strip_ids(cls, v: list[str]) -> list[str]:
        ids = [task_id.strip() for task_id in v if task_id and task_id.strip()]
        if not ids:
            raise ValueError("At least one non-empty task id is required")
        return ids


class TaskCheckOutcome(BaseModel):
    """Result of a reconciliation for one task."""

    provider_task_id: str
    status: Optional[str] = None
    updated: bool = False
    error_category: Optional[str] = None


class TaskCheckResponse(BaseModel):
    """Result of an immediate reconciliation."""

    deferred: bool = Field(False, description="True when the provider rate limit was exhausted")
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retry_after_seconds: Optional[int] = None
    not_found: int = 0
    tasks: list[TaskCheckOutcome]


# ============== Generation Schemas ==============


class GenerationCreateRequest(BaseModel):
    """Register the provider tasks started for an accepted generation request."""

    mode: Literal["text_to_song", "lyrics_to_song", "instrumental"] = Field(
        ..., description="How the provider was asked to generate"
    )
    provider_task_ids: list[str] = Field(
        ..., min_length=1, description="Task ids returned by the provider"
    )
    title: Optional[str] = Field(None, max_length=255)
    request_data: Optional[dict] = Field(
        None, description="Original request parameters, kept for retries"
    )


class GenerationResponse(BaseModel):
    """Generation with its tasks."""

    model_config = ConfigDict(from_attributes=True)

    generation_id: str
    mode: str
    status: str
    task_count: int
    progress_percent: float
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    tasks: list[TaskStatusResponse] = []


# ============== System Schemas ==============


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    redis: str
