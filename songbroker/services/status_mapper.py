"""
Translation of provider task payloads into canonical task statuses.

The provider's numeric status code is not trustworthy on its own: a task can
report "processing" long after the audio has been rendered. A positive
duration is treated as proof of completion, and explicit failure signals
override everything else.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Union

from songbroker.db.models import TaskStatus

FAILED_CODE = 3
DURATION_SENTINEL = -1

# Raw codes that say nothing terminal. 0 nominally means "complete" but is
# only trusted together with a real duration.
_CODE_TABLE = {
    0: TaskStatus.PROCESSING,
    1: TaskStatus.PENDING,
    2: TaskStatus.PROCESSING,
}

_LEGACY_TABLE = {
    "pending": TaskStatus.PENDING,
    "queued": TaskStatus.PENDING,
    "waiting": TaskStatus.PENDING,
    "processing": TaskStatus.PROCESSING,
    "running": TaskStatus.PROCESSING,
    "generating": TaskStatus.PROCESSING,
    "completed": TaskStatus.COMPLETED,
    "success": TaskStatus.COMPLETED,
    "done": TaskStatus.COMPLETED,
    "failed": TaskStatus.FAILED,
    "error": TaskStatus.FAILED,
    "cancelled": TaskStatus.FAILED,
}


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    return True


def map_status(
    raw_status_code: Optional[int],
    duration_ms: Optional[int],
    fail_code: Any = None,
    fail_reason: Optional[str] = None,
) -> TaskStatus:
    """
    Map a numeric provider status to a canonical status.

    Precedence:
        1. fail code, fail reason or the failed status code -> failed
        2. positive, non-sentinel duration -> completed
        3. lookup table, unknown codes -> processing
    """
    if _present(fail_code) or _present(fail_reason) or raw_status_code == FAILED_CODE:
        return TaskStatus.FAILED

    if duration_ms is not None and duration_ms != DURATION_SENTINEL and duration_ms > 0:
        return TaskStatus.COMPLETED

    return _CODE_TABLE.get(raw_status_code, TaskStatus.PROCESSING)


def map_legacy_status(raw: Optional[str]) -> TaskStatus:
    """Map a string status from the legacy endpoints. Unknown values are pending."""
    if not raw:
        return TaskStatus.PENDING
    return _LEGACY_TABLE.get(raw.strip().lower(), TaskStatus.PENDING)


def _coerce_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


@dataclass
class ProviderTask:
    """A single task entry from the provider's status response."""

    task_id: str
    raw_status: Union[int, str, None]
    duration_ms: Optional[int] = None
    fail_code: Optional[str] = None
    fail_reason: Optional[str] = None
    audio_url: Optional[str] = None
    cover_url: Optional[str] = None
    title: Optional[str] = None
    lyric: Optional[str] = None
    style: Optional[str] = None
    song_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    raw: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict) -> "ProviderTask":
        raw_status = payload.get("status")
        if isinstance(raw_status, str) and raw_status.strip().lstrip("-").isdigit():
            raw_status = int(raw_status)
        elif not isinstance(raw_status, str):
            raw_status = _coerce_int(raw_status)

        fail_code = payload.get("fail_code")
        return cls(
            task_id=str(payload.get("id") or payload.get("task_id") or ""),
            raw_status=raw_status,
            duration_ms=_coerce_int(payload.get("duration")),
            fail_code=str(fail_code) if _present(fail_code) else None,
            fail_reason=payload.get("fail_reason") or None,
            audio_url=payload.get("audio_url") or payload.get("audio") or None,
            cover_url=payload.get("cover_url") or payload.get("image_url") or None,
            title=payload.get("title") or None,
            lyric=payload.get("lyric") or payload.get("lyrics") or None,
            style=payload.get("style") or payload.get("tags") or None,
            song_id=payload.get("song_id") or None,
            completed_at=_parse_timestamp(payload.get("completed_at")),
            raw=payload,
        )

    def canonical_status(self) -> TaskStatus:
        """Pick the mapper matching the encoding this payload uses."""
        if isinstance(self.raw_status, str):
            return map_legacy_status(self.raw_status)
        return map_status(self.raw_status, self.duration_ms, self.fail_code, self.fail_reason)

    def result_metadata(self) -> dict:
        """Provider fields worth keeping alongside a completed task."""
        metadata = {
            "song_id": self.song_id,
            "title": self.title,
            "lyrics": self.lyric,
            "style": self.style,
        }
        return {key: value for key, value in metadata.items() if value is not None}
