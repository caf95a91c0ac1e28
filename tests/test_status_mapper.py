"""Tests for provider status mapping."""

from datetime import datetime, timezone

import pytest

from songbroker.db.models import TaskStatus
from songbroker.services.status_mapper import (
    DURATION_SENTINEL,
    ProviderTask,
    map_legacy_status,
    map_status,
)


@pytest.mark.parametrize("status_code", [0, 1, 2, 3, 99, None])
@pytest.mark.parametrize("duration", [DURATION_SENTINEL, 0, 187000, None])
@pytest.mark.parametrize(
    "fail_code,fail_reason",
    [("E42", None), (None, "content policy violation"), (500, "boom")],
)
def test_failure_signal_wins(status_code, duration, fail_code, fail_reason):
    """Any fail code or reason maps to failed."""
    assert map_status(status_code, duration, fail_code, fail_reason) == TaskStatus.FAILED


@pytest.mark.parametrize("status_code", [0, 1, 2, 99, None])
@pytest.mark.parametrize("duration", [1, 187000, 600000])
def test_positive_duration_means_completed(status_code, duration):
    assert map_status(status_code, duration) == TaskStatus.COMPLETED


def test_failed_code_without_reason():
    assert map_status(3, DURATION_SENTINEL) == TaskStatus.FAILED
    assert map_status(3, 187000) == TaskStatus.FAILED


@pytest.mark.parametrize(
    "status_code,expected",
    [
        (0, TaskStatus.PROCESSING),  # "complete" without a duration is not trusted
        (1, TaskStatus.PENDING),
        (2, TaskStatus.PROCESSING),
        (7, TaskStatus.PROCESSING),
        (None, TaskStatus.PROCESSING),
    ],
)
def test_code_table_when_duration_unknown(status_code, expected):
    assert map_status(status_code, DURATION_SENTINEL) == expected
    assert map_status(status_code, 0) == expected


def test_blank_fail_reason_is_not_a_failure():
    assert map_status(2, DURATION_SENTINEL, None, "  ") == TaskStatus.PROCESSING


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("pending", TaskStatus.PENDING),
        ("queued", TaskStatus.PENDING),
        ("waiting", TaskStatus.PENDING),
        ("processing", TaskStatus.PROCESSING),
        ("running", TaskStatus.PROCESSING),
        ("GENERATING", TaskStatus.PROCESSING),
        ("completed", TaskStatus.COMPLETED),
        ("success", TaskStatus.COMPLETED),
        ("done", TaskStatus.COMPLETED),
        ("failed", TaskStatus.FAILED),
        ("error", TaskStatus.FAILED),
        ("cancelled", TaskStatus.FAILED),
        ("something-new", TaskStatus.PENDING),
        ("", TaskStatus.PENDING),
        (None, TaskStatus.PENDING),
    ],
)
def test_legacy_mapping(raw, expected):
    assert map_legacy_status(raw) == expected


def test_provider_task_from_payload():
    task = ProviderTask.from_payload(
        {
            "id": "abc",
            "status": "2",
            "duration": "187000",
            "audio_url": "https://cdn.example.com/abc.mp3",
            "cover_url": "https://cdn.example.com/abc.jpg",
            "title": "Summer Song",
            "lyric": "la la la",
            "style": "pop",
            "song_id": "s-1",
            "fail_code": "",
            "completed_at": "2026-10-01T12:05:00Z",
        }
    )

    assert task.task_id == "abc"
    assert task.raw_status == 2
    assert task.duration_ms == 187000
    assert task.fail_code is None
    assert task.completed_at == datetime(2026, 10, 1, 12, 5, tzinfo=timezone.utc)
    assert task.canonical_status() == TaskStatus.COMPLETED
    assert task.result_metadata() == {
        "song_id": "s-1",
        "title": "Summer Song",
        "lyrics": "la la la",
        "style": "pop",
    }


def test_provider_task_with_string_status_uses_legacy_mapper():
    task = ProviderTask.from_payload({"id": "abc", "status": "success"})
    assert task.canonical_status() == TaskStatus.COMPLETED


def test_provider_task_epoch_completion_time():
    task = ProviderTask.from_payload({"id": "abc", "status": 0, "completed_at": 0})
    assert task.completed_at == datetime(1970, 1, 1, tzinfo=timezone.utc)
