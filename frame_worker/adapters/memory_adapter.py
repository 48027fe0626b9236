"""
In-memory adapters for the object store, ledger and queue.

Used for local development (LEDGER_TYPE/QUEUE_TYPE/STORAGE_TYPE=memory)
and by the test suite. All three are thread-safe so a multi-threaded
worker service can share them.
"""

import time
import uuid
import logging
import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Callable

from .base import JobLedger, ObjectStore, QueueState, WorkQueue
from ..exceptions import StorageError
from ..models import ExtractionJob, ExtractionOptions, Frame, JobStatus, Video, WorkItem, can_transition

logger = logging.getLogger("frame_worker")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryObjectStore(ObjectStore):
    """Dictionary-backed object store"""

    def __init__(self, base_url: str = "memory://storage"):
        self.base_url = base_url.rstrip("/")
        self._objects: Dict[str, bytes] = {}
        self._content_types: Dict[str, str] = {}
        self._lock = threading.Lock()

    def upload(self, key: str, data: bytes, content_type: str) -> str:
        with self._lock:
            self._objects[key] = bytes(data)
            self._content_types[key] = content_type
        return key

    def download(self, key: str) -> bytes:
        with self._lock:
            if key not in self._objects:
                raise StorageError(f"Object not found: {key}")
            return self._objects[key]

    def delete(self, key: str) -> None:
        with self._lock:
            self._objects.pop(key, None)
            self._content_types.pop(key, None)

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._objects

    def signed_url(self, key: str, expires_in: int) -> str:
        return f"{self.base_url}/{key}?expires_in={expires_in}"

    def content_type(self, key: str) -> Optional[str]:
        with self._lock:
            return self._content_types.get(key)

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._objects)


class MemoryJobLedger(JobLedger):
    """Dictionary-backed job ledger enforcing the job state machine"""

    def __init__(self):
        self._videos: Dict[str, Video] = {}
        self._jobs: Dict[str, ExtractionJob] = {}
        self._frames: Dict[tuple, Frame] = {}
        self._lock = threading.Lock()

    def add_video(self, video: Video) -> Video:
        """Register a video (the ingest side owns this in production)"""
        with self._lock:
            self._videos[video.id] = replace(video, created_at=video.created_at or _now())
            return replace(self._videos[video.id])

    def get_video(self, video_id: str) -> Optional[Video]:
        with self._lock:
            video = self._videos.get(video_id)
            return replace(video) if video else None

    def create_job(self, video_id: str, options: ExtractionOptions, total_frames: int) -> ExtractionJob:
        job = ExtractionJob(
            id=str(uuid.uuid4()),
            video_id=video_id,
            status=JobStatus.PENDING,
            options=options,
            total_frames=total_frames,
            created_at=_now(),
        )
        with self._lock:
            self._jobs[job.id] = job
            return replace(job)

    def get_job(self, job_id: str) -> Optional[ExtractionJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def _transition(self, job_id: str, target: JobStatus, **fields) -> bool:
        job = self._jobs.get(job_id)
        if job is None or not can_transition(job.status, target):
            return False
        self._jobs[job_id] = replace(job, status=target, **fields)
        return True

    def mark_processing(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            started_at = job.started_at if job and job.started_at else _now()
            return self._transition(job_id, JobStatus.PROCESSING, started_at=started_at)

    def update_progress(self, job_id: str, progress: int, processed_frames: int) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status.is_terminal:
                return
            self._jobs[job_id] = replace(
                job,
                progress=max(job.progress, progress),
                processed_frames=max(job.processed_frames, processed_frames),
            )

    def complete_job(self, job_id: str, processed_frames: int) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return False
            return self._transition(
                job_id,
                JobStatus.COMPLETED,
                progress=100,
                processed_frames=processed_frames,
                total_frames=max(job.total_frames, processed_frames),
                completed_at=_now(),
            )

    def fail_job(self, job_id: str, error: str) -> bool:
        with self._lock:
            return self._transition(job_id, JobStatus.FAILED, error_message=error, completed_at=_now())

    def add_frame(self, job_id: str, video_id: str, frame_number: int, timestamp: float,
                  storage_key: str, width: int, height: int, fmt: str) -> Frame:
        with self._lock:
            existing = self._frames.get((job_id, frame_number))
            if existing:
                return replace(existing)
            frame = Frame(
                id=str(uuid.uuid4()),
                job_id=job_id,
                video_id=video_id,
                frame_number=frame_number,
                timestamp=timestamp,
                storage_key=storage_key,
                width=width,
                height=height,
                format=fmt,
                created_at=_now(),
            )
            self._frames[(job_id, frame_number)] = frame
            return replace(frame)

    def list_frames_by_job(self, job_id: str) -> List[Frame]:
        with self._lock:
            frames = [replace(f) for f in self._frames.values() if f.job_id == job_id]
        return sorted(frames, key=lambda f: f.frame_number)

    def list_frames_by_video(self, video_id: str) -> List[Frame]:
        with self._lock:
            frames = [replace(f) for f in self._frames.values() if f.video_id == video_id]
        return sorted(frames, key=lambda f: (f.frame_number, f.created_at))

    def list_pending_jobs(self, created_before: Optional[datetime] = None, limit: int = 100) -> List[ExtractionJob]:
        with self._lock:
            jobs = [
                replace(job) for job in self._jobs.values()
                if job.status == JobStatus.PENDING
                and (created_before is None or job.created_at <= created_before)
            ]
        jobs.sort(key=lambda j: j.created_at)
        return jobs[:limit]

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            counts: Dict[str, int] = {}
            for job in self._jobs.values():
                counts[job.status.value] = counts.get(job.status.value, 0) + 1
            return {"jobs": counts, "frames": len(self._frames)}


class MemoryWorkQueue(WorkQueue):
    """Thread-safe in-process queue with key deduplication, delayed retries and claim leases"""

    def __init__(self, clock: Callable[[], float] = time.monotonic, lease_sec: float = 300.0):
        self._clock = clock
        self.lease_sec = lease_sec
        self._items: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def dispatch(self, key: str, payload: Dict[str, Any]) -> bool:
        with self._lock:
            if key in self._items:
                logger.debug(f"Work item {key} already dispatched")
                return False
            self._items[key] = {
                "payload": dict(payload),
                "state": QueueState.WAITING,
                "attempts": 0,
                "available_at": 0.0,
                "claimed_at": None,
                "error": None,
            }
            return True

    def claim(self) -> Optional[WorkItem]:
        with self._lock:
            now = self._clock()
            for key, item in self._items.items():
                stalled = (
                    item["state"] == QueueState.ACTIVE
                    and now - item["claimed_at"] >= self.lease_sec
                )
                ready = stalled or item["state"] == QueueState.WAITING or (
                    item["state"] == QueueState.DELAYED and item["available_at"] <= now
                )
                if ready:
                    if stalled:
                        logger.warning(f"Reclaiming stalled work item {key} after attempt {item['attempts']}")
                    item["state"] = QueueState.ACTIVE
                    item["attempts"] += 1
                    item["claimed_at"] = now
                    return WorkItem.from_payload(key, item["payload"], attempt=item["attempts"])
            return None

    def heartbeat(self, key: str) -> None:
        with self._lock:
            item = self._items.get(key)
            if item is not None and item["state"] == QueueState.ACTIVE:
                item["claimed_at"] = self._clock()

    def _finish(self, key: str, state: QueueState, error: Optional[str] = None) -> None:
        item = self._items.get(key)
        if item is None:
            return
        item["state"] = state
        item["error"] = error

    def complete(self, key: str) -> None:
        with self._lock:
            self._finish(key, QueueState.COMPLETED)

    def retry(self, key: str, error: str, delay_sec: float) -> None:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return
            item["state"] = QueueState.DELAYED
            item["error"] = error
            item["available_at"] = self._clock() + delay_sec

    def fail(self, key: str, error: str) -> None:
        with self._lock:
            self._finish(key, QueueState.FAILED, error)

    def remove(self, key: str) -> bool:
        with self._lock:
            item = self._items.get(key)
            if item is None or not item["state"].not_started:
                return False
            del self._items[key]
            return True

    def state(self, key: str) -> Optional[QueueState]:
        with self._lock:
            item = self._items.get(key)
            return item["state"] if item else None

    def attempts(self, key: str) -> int:
        with self._lock:
            item = self._items.get(key)
            return item["attempts"] if item else 0
