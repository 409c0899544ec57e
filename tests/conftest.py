"""Shared fixtures and in-memory adapters for the worker tests."""

import io
import zipfile
from collections import defaultdict
from contextlib import contextmanager
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from workout_worker.adapters.base import JobSourceAdapter, StorageAdapter
from workout_worker.config import WorkerConfig
from workout_worker.models import Job, VideoReference

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


class FakeJobSource(JobSourceAdapter):
    """Job source that records every call"""

    def __init__(self, jobs: Optional[List[Job]] = None):
        self.jobs = list(jobs or [])
        self.completed: List[str] = []
        self.failed: List[tuple] = []
        self.retried: List[tuple] = []
        self.progress: Dict[str, int] = {}
        self.progress_history: Dict[str, List[int]] = defaultdict(list)

    def claim_job(self):
        return self.jobs.pop(0) if self.jobs else None

    def complete_job(self, job_id):
        self.completed.append(job_id)

    def fail_job(self, job_id, error):
        self.failed.append((job_id, error))

    def retry_job(self, job_id, delay_sec, error):
        self.retried.append((job_id, delay_sec, error))

    def report_progress(self, job_id, progress):
        self.progress_history[job_id].append(progress)
        self.progress[job_id] = progress

    def get_progress(self, job_id):
        return self.progress.get(job_id)

    def get_job_info(self, job_id):
        if job_id not in self.progress:
            return None
        return {"job_id": job_id, "status": "processing", "progress": self.progress[job_id],
                "workout_id": "w-1", "error": None}

    def get_pending_jobs(self):
        return list(self.jobs)


class FakeStore(StorageAdapter):
    """Workout store keeping updates in memory"""

    def __init__(self, push_tokens: Optional[Dict[str, str]] = None):
        self.updates: List[tuple] = []
        self.workouts: Dict[str, Dict[str, Any]] = defaultdict(dict)
        self.push_tokens = push_tokens or {}

    def update_workout(self, workout_id, fields):
        self.updates.append((workout_id, dict(fields)))
        self.workouts[workout_id].update(fields)

    def get_push_token(self, user_id):
        return self.push_tokens.get(user_id)


def make_frame_zip(count: int, prefix: str = "frame_", extra: Optional[Dict[str, bytes]] = None) -> bytes:
    """Zip archive with ``count`` PNG entries written in reverse name order"""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for i in reversed(range(count)):
            archive.writestr(f"{prefix}{i + 1:04d}.png", PNG_BYTES + bytes([i]))
        for name, data in (extra or {}).items():
            archive.writestr(name, data)
    return buffer.getvalue()


def chat_response(content: Optional[str]):
    """Minimal stand-in for an OpenAI chat completion response"""
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


def recording_acquire(record: List[VideoReference]):
    """Replacement for acquire_video that records the order of acquisitions"""
    @contextmanager
    def _acquire(reference, source, timeout_sec, temp_dir):
        record.append(reference)
        yield reference.describe()
    return _acquire


@pytest.fixture
def config(tmp_path):
    return WorkerConfig(
        DATABASE_URL="postgresql://localhost/test",
        OPENAI_API_KEY="sk-worker",
        TEMP_DIR=str(tmp_path / "tmp"),
        LOG_DIR=str(tmp_path / "logs"),
        FRAME_EXTRACTOR_URL="https://frames.example.com/video/frames",
        TEXT_EXTRACTION_TIMEOUT_SEC=5,
        MAX_ATTEMPTS=3,
        RATE_LIMIT_BASE_DELAY_SEC=30,
    )


@pytest.fixture
def job_source():
    return FakeJobSource()


@pytest.fixture
def store():
    return FakeStore(push_tokens={"u-1": "ExponentPushToken[abc123]"})


@pytest.fixture
def make_job():
    def _make_job(videos=None, **overrides):
        values = dict(
            id="job-1",
            workout_id="w-1",
            user_id="u-1",
            videos=videos or [VideoReference(url="https://cdn.example.com/v.mp4")],
            api_key="sk-job",
            caption="Leg day burner",
            source="Instagram",
            display_url="https://cdn.example.com/preview.jpg",
            attempts=1,
        )
        values.update(overrides)
        return Job(**values)
    return _make_job
