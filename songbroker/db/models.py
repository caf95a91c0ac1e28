"""Database models for generation tracking."""

import enum
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from songbroker.db.session import Base


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class TaskStatus(str, enum.Enum):
    """Canonical status of a generated content task."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TASK_STATUSES


TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)
ACTIVE_TASK_STATUSES = (TaskStatus.PENDING, TaskStatus.PROCESSING)


class GenerationStatus(str, enum.Enum):
    """Status derived from a generation's child tasks."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    MIXED = "mixed"  # Terminal children that are neither all completed nor any failed


class GenerationMode(str, enum.Enum):
    """How the provider was asked to produce the song."""

    TEXT_TO_SONG = "text_to_song"
    LYRICS_TO_SONG = "lyrics_to_song"
    INSTRUMENTAL = "instrumental"


class Generation(Base):
    """A single user generation request grouping its provider tasks."""

    __tablename__ = "generations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    generation_id: Mapped[str] = mapped_column(
        String(36), unique=True, index=True, default=lambda: str(uuid4())
    )
    owner_id: Mapped[str] = mapped_column(String(100), index=True)
    mode: Mapped[GenerationMode] = mapped_column(
        Enum(GenerationMode, name="generationmode", values_callable=_enum_values)
    )
    request_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    task_count: Mapped[int] = mapped_column(Integer, default=2)
    status: Mapped[GenerationStatus] = mapped_column(
        Enum(GenerationStatus, name="generationstatus", values_callable=_enum_values),
        default=GenerationStatus.PROCESSING,
        index=True,
    )
    meta: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_accessed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Relationships
    tasks: Mapped[list["GeneratedContent"]] = relationship(
        "GeneratedContent",
        back_populates="generation",
        cascade="all, delete-orphan",
        order_by="GeneratedContent.id",
    )


class GeneratedContent(Base):
    """One provider task and the content it produces."""

    __tablename__ = "generated_content"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_task_id: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    owner_id: Mapped[str] = mapped_column(String(100), index=True)
    generation_pk: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("generations.id", ondelete="CASCADE"), nullable=True, index=True
    )
    content_type: Mapped[str] = mapped_column(String(20), default="song")  # song, instrumental, lyrics
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    status: Mapped[TaskStatus] = mapped_column(
        Enum(TaskStatus, name="taskstatus", values_callable=_enum_values),
        default=TaskStatus.PENDING,
        index=True,
    )
    check_attempts: Mapped[int] = mapped_column(Integer, default=0)

    # Results (only when completed)
    content_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    thumbnail_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    provider_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Failure (only when failed)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fail_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    error_category: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_accessed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Relationships
    generation: Mapped[Optional["Generation"]] = relationship("Generation", back_populates="tasks")
