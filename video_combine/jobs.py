import json
import logging
import threading
import time
from typing import Any, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from . import config
from .aws import s3_client
from .models import JOB_PROGRESS, JobState

logger = logging.getLogger("video-combine.jobs")


class JobStore(Protocol):
    def get(self, job_id: str) -> dict[str, Any] | None: ...

    def set(self, job_id: str, record: dict[str, Any]) -> None: ...

    def delete(self, job_id: str) -> None: ...


def _expired(record: dict[str, Any], now: float | None = None) -> bool:
    expires_at = record.get("expires_at")
    return expires_at is not None and float(expires_at) <= (now or time.time())


class InMemoryJobStore:
    """Process-local store; expired records are purged on every write."""

    def __init__(self, ttl_seconds: int | None = None):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else config.JOB_TTL_SECONDS
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            record = self._records.get(job_id)
            if record is None:
                return None
            if _expired(record):
                del self._records[job_id]
                return None
            return dict(record)

    def set(self, job_id: str, record: dict[str, Any]) -> None:
        record = dict(record)
        record.setdefault("expires_at", time.time() + self.ttl_seconds)
        with self._lock:
            self._records[job_id] = record
            self._purge_locked()

    def delete(self, job_id: str) -> None:
        with self._lock:
            self._records.pop(job_id, None)

    def _purge_locked(self) -> int:
        now = time.time()
        stale = [job_id for job_id, record in self._records.items() if _expired(record, now)]
        for job_id in stale:
            del self._records[job_id]
        return len(stale)


class S3JobStore:
    """Status documents at ``jobs/{job_id}/status.json`` in the output bucket."""

    def __init__(self, bucket: str | None = None, ttl_seconds: int | None = None, client=None):
        self.bucket = bucket or config.OUTPUT_BUCKET
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else config.JOB_TTL_SECONDS
        self._client = client

    @property
    def client(self):
        return self._client or s3_client()

    @staticmethod
    def key(job_id: str) -> str:
        return f"jobs/{job_id}/status.json"

    def get(self, job_id: str) -> dict[str, Any] | None:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=self.key(job_id))
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None
            raise
        record = json.loads(response["Body"].read().decode("utf-8"))
        if _expired(record):
            self.delete(job_id)
            return None
        return record

    def set(self, job_id: str, record: dict[str, Any]) -> None:
        record = dict(record)
        record.setdefault("expires_at", time.time() + self.ttl_seconds)
        self.client.put_object(
            Bucket=self.bucket,
            Key=self.key(job_id),
            Body=json.dumps(record),
            ContentType="application/json",
        )

    def delete(self, job_id: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=self.key(job_id))


def status_record(
    job_id: str,
    state: JobState,
    metadata: dict[str, Any] | None = None,
    progress: float | None = None,
) -> dict[str, Any]:
    if progress is None:
        progress = JOB_PROGRESS[state]
    pct = max(0.0, min(100.0, float(progress)))
    return {
        "job_id": job_id,
        "status": state.value,
        "timestamp": str(int(time.time())),
        "progress": round(pct, 1),
        "metadata": metadata or {},
    }


def save_job_status(
    store: JobStore,
    job_id: str,
    state: JobState,
    metadata: dict[str, Any] | None = None,
    progress: float | None = None,
) -> None:
    """Write a status record; a failing store is logged, never fatal to the job."""
    try:
        store.set(job_id, status_record(job_id, state, metadata, progress))
    except (BotoCoreError, ClientError, OSError) as exc:
        logger.warning("Could not save status %s for job %s: %s", state.value, job_id, exc)


_default_store: JobStore | None = None


def default_store() -> JobStore:
    global _default_store
    if _default_store is None:
        _default_store = S3JobStore() if config.OUTPUT_BUCKET else InMemoryJobStore()
    return _default_store


def set_default_store(store: JobStore | None) -> None:
    global _default_store
    _default_store = store
