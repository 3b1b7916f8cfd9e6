"""
Persisted processing jobs.

One JSON document per job under `<root>/users/<user_id>/jobs/<job_id>.json`.
Writers notify watchers (asyncio queues) on every create/update/delete, from
whatever thread the write happens on.
"""
import asyncio
import json
import logging
import os
import re
import threading
from contextlib import aclosing
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

# Ids become path segments under the store root
ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.@-]{0,127}$"


class JobType(str, Enum):
    OBJECT_REMOVAL = "object_removal"
    OBJECT_DETECTION = "object_detection"
    IMAGE_ANALYSIS = "image_analysis"
    BACKGROUND_REMOVAL = "background_removal"
    STYLE_TRANSFER = "style_transfer"
    IMAGE_GENERATION = "image_generation"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_final(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobNotFoundError(LookupError):
    def __init__(self, user_id: str, job_id: str):
        super().__init__(f"Job {job_id} not found for user {user_id}")
        self.user_id = user_id
        self.job_id = job_id


class JobStoreError(RuntimeError):
    pass


def _check_id(kind: str, value: str) -> None:
    if not re.fullmatch(ID_PATTERN, value):
        raise JobStoreError(f"Invalid {kind} id: {value!r}")


class JobRecord(BaseModel):
    id: str = Field(pattern=ID_PATTERN)
    user_id: str = Field(pattern=ID_PATTERN)
    image_id: str
    type: JobType = JobType.OBJECT_REMOVAL
    status: JobStatus = JobStatus.PENDING
    prompt: str
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    result: Optional[str] = None
    error_message: Optional[str] = None
    processing_time_ms: Optional[int] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def _moved(self, status: JobStatus, **changes) -> "JobRecord":
        return self.model_copy(update={"status": status, "updated_at": datetime.now(), **changes})

    def mark_processing(self) -> "JobRecord":
        return self._moved(JobStatus.PROCESSING)

    def mark_completed(self, result: str, processing_time_ms: int, metadata: Optional[Dict[str, Any]] = None) -> "JobRecord":
        merged = {**self.metadata, **(metadata or {})}
        return self._moved(JobStatus.COMPLETED, result=result, processing_time_ms=processing_time_ms,
                           error_message=None, metadata=merged)

    def mark_failed(self, error_message: str, details: Optional[Dict[str, Any]] = None) -> "JobRecord":
        merged = {**self.metadata, **({"error": details} if details else {})}
        return self._moved(JobStatus.FAILED, error_message=error_message, metadata=merged)

    def mark_cancelled(self, reason: str = "Cancelled by user") -> "JobRecord":
        return self._moved(JobStatus.CANCELLED, error_message=reason)


class _Watcher:
    def __init__(self, loop: asyncio.AbstractEventLoop, user_id: str, job_id: Optional[str]):
        self.loop = loop
        self.user_id = user_id
        self.job_id = job_id
        self.queue: asyncio.Queue = asyncio.Queue()

    def matches(self, user_id: str, job_id: str) -> bool:
        return self.user_id == user_id and (self.job_id is None or self.job_id == job_id)

    def notify(self) -> None:
        try:
            self.loop.call_soon_threadsafe(self.queue.put_nowait, None)
        except RuntimeError:
            # loop already closed
            pass


class JobStore:
    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock = threading.RLock()
        self._watchers: List[_Watcher] = []

    def job_dir(self, user_id: str) -> Path:
        _check_id("user", user_id)
        return self.root / "users" / user_id / "jobs"

    def job_path(self, user_id: str, job_id: str) -> Path:
        _check_id("job", job_id)
        return self.job_dir(user_id) / f"{job_id}.json"

    def artifact_path(self, user_id: str, job_id: str, suffix: str = "png") -> Path:
        _check_id("job", job_id)
        if not suffix.isalnum():
            raise JobStoreError(f"Invalid artifact suffix: {suffix!r}")
        return self.job_dir(user_id) / f"{job_id}.{suffix}"

    # ─── CRUD ──────────────────────────────────────────────────────
    def create_job(self, job: JobRecord) -> JobRecord:
        with self._lock:
            if self.job_path(job.user_id, job.id).exists():
                raise JobStoreError(f"Job {job.id} already exists")
            self._write(job)
        logger.info("Created job %s for user %s", job.id, job.user_id)
        self._notify(job.user_id, job.id)
        return job

    def get_job(self, user_id: str, job_id: str) -> JobRecord:
        path = self.job_path(user_id, job_id)
        with self._lock:
            if not path.exists():
                raise JobNotFoundError(user_id, job_id)
            return self._read(path)

    def list_user_jobs(self, user_id: str) -> List[JobRecord]:
        folder = self.job_dir(user_id)
        if not folder.exists():
            return []
        with self._lock:
            jobs = [self._read(p) for p in folder.glob("*.json")]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs

    def update_job(self, job: JobRecord) -> JobRecord:
        with self._lock:
            if not self.job_path(job.user_id, job.id).exists():
                raise JobNotFoundError(job.user_id, job.id)
            self._write(job)
        logger.debug("Updated job %s: %s", job.id, job.status.value)
        self._notify(job.user_id, job.id)
        return job

    def delete_job(self, user_id: str, job_id: str) -> None:
        with self._lock:
            path = self.job_path(user_id, job_id)
            if not path.exists():
                raise JobNotFoundError(user_id, job_id)
            try:
                path.unlink()
                for artifact in self.job_dir(user_id).glob(f"{job_id}.*"):
                    artifact.unlink()
            except OSError as e:
                raise JobStoreError(f"Failed to delete job {job_id}: {e}") from e
        logger.info("Deleted job %s for user %s", job_id, user_id)
        self._notify(user_id, job_id)

    def save_artifact(self, user_id: str, job_id: str, data: bytes, suffix: str = "png") -> Path:
        path = self.artifact_path(user_id, job_id, suffix)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)
        except OSError as e:
            raise JobStoreError(f"Failed to write artifact for job {job_id}: {e}") from e
        return path

    # ─── Watching ──────────────────────────────────────────────────
    async def watch_job(self, user_id: str, job_id: str) -> AsyncIterator[JobRecord]:
        """Yields the job now and after every write; ends when it is deleted or final."""
        async with aclosing(self._watch(user_id, job_id)) as updates:
            async for _ in updates:
                try:
                    job = self.get_job(user_id, job_id)
                except JobNotFoundError:
                    return
                yield job
                if job.status.is_final:
                    return

    async def watch_user_jobs(self, user_id: str) -> AsyncIterator[List[JobRecord]]:
        async with aclosing(self._watch(user_id, None)) as updates:
            async for _ in updates:
                yield self.list_user_jobs(user_id)

    async def _watch(self, user_id: str, job_id: Optional[str]) -> AsyncIterator[None]:
        watcher = _Watcher(asyncio.get_running_loop(), user_id, job_id)
        with self._lock:
            self._watchers.append(watcher)
        try:
            yield None
            while True:
                await watcher.queue.get()
                yield None
        finally:
            with self._lock:
                self._watchers.remove(watcher)

    def _notify(self, user_id: str, job_id: str) -> None:
        with self._lock:
            targets = [w for w in self._watchers if w.matches(user_id, job_id)]
        for w in targets:
            w.notify()

    # ─── Files ─────────────────────────────────────────────────────
    def _write(self, job: JobRecord) -> None:
        path = self.job_path(job.user_id, job.id)
        tmp = path.with_suffix(".json.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w") as f:
                json.dump(job.model_dump(mode="json"), f, indent=2)
            os.replace(tmp, path)
        except OSError as e:
            raise JobStoreError(f"Failed to write job {job.id}: {e}") from e

    @staticmethod
    def _read(path: Path) -> JobRecord:
        try:
            with open(path, "r") as f:
                return JobRecord.model_validate(json.load(f))
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            raise JobStoreError(f"Corrupt job document {path.name}: {e}") from e


