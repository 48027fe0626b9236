"""
Abstract base classes for the object store, job ledger and work queue.

Defines the interface that all adapters must implement, enabling
easy swapping between backends (Postgres, S3, local disk, in-memory).
Implementations must be safe to call concurrently for distinct keys/rows.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List

from ..models import ExtractionJob, ExtractionOptions, Frame, Video, WorkItem


class ObjectStore(ABC):
    """Abstract base class for object storage adapters"""

    def connect(self) -> None:
        """Open clients or create directories; called once at startup"""

    def close(self) -> None:
        """Release clients; called once at shutdown"""

    @abstractmethod
    def upload(self, key: str, data: bytes, content_type: str) -> str:
        """
        Store bytes under a key.

        Args:
            key: Storage key
            data: Object bytes
            content_type: MIME type recorded with the object

        Returns:
            The key the object was stored under
        """
        pass

    @abstractmethod
    def download(self, key: str) -> bytes:
        """Return the bytes stored under a key (StorageError if missing)"""
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete an object; deleting a missing key is not an error"""
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def signed_url(self, key: str, expires_in: int) -> str:
        """
        Build a time-limited, credential-free URL for reading an object.

        Args:
            key: Storage key
            expires_in: Validity in seconds
        """
        pass


class JobLedger(ABC):
    """Abstract base class for the durable record of jobs and frames"""

    def connect(self) -> None:
        """Open connection pools; called once at startup"""

    def close(self) -> None:
        """Release connection pools; called once at shutdown"""

    @abstractmethod
    def get_video(self, video_id: str) -> Optional[Video]:
        """Return a video, including soft-deleted ones, or None"""
        pass

    @abstractmethod
    def create_job(self, video_id: str, options: ExtractionOptions, total_frames: int) -> ExtractionJob:
        """Insert a pending job and return it"""
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[ExtractionJob]:
        pass

    @abstractmethod
    def mark_processing(self, job_id: str) -> bool:
        """
        Move a job to processing, stamping started_at if unset.

        Returns:
            False if the job is missing or already terminal
        """
        pass

    @abstractmethod
    def update_progress(self, job_id: str, progress: int, processed_frames: int) -> None:
        """Record progress; stored values never decrease"""
        pass

    @abstractmethod
    def complete_job(self, job_id: str, processed_frames: int) -> bool:
        """
        Mark a processing job completed with progress 100.

        total_frames becomes max(estimate, processed_frames).
        """
        pass

    @abstractmethod
    def fail_job(self, job_id: str, error: str) -> bool:
        """Mark a pending or processing job failed with a message"""
        pass

    @abstractmethod
    def add_frame(self, job_id: str, video_id: str, frame_number: int, timestamp: float,
                  storage_key: str, width: int, height: int, fmt: str) -> Frame:
        """Record a stored frame; idempotent on (job_id, frame_number)"""
        pass

    @abstractmethod
    def list_frames_by_job(self, job_id: str) -> List[Frame]:
        """Frames of a job ordered by frame number"""
        pass

    @abstractmethod
    def list_frames_by_video(self, video_id: str) -> List[Frame]:
        """Frames of all jobs of a video ordered by frame number"""
        pass

    @abstractmethod
    def list_pending_jobs(self, created_before: Optional[datetime] = None, limit: int = 100) -> List[ExtractionJob]:
        """Pending jobs, oldest first"""
        pass

    @abstractmethod
    def get_stats(self) -> Dict[str, Any]:
        """Job and frame counts for monitoring"""
        pass


class QueueState(str, Enum):
    """Transport-level state of a work item"""
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def not_started(self) -> bool:
        return self in (QueueState.WAITING, QueueState.DELAYED)

    @property
    def started(self) -> bool:
        return self == QueueState.ACTIVE

    @property
    def finished(self) -> bool:
        return self in (QueueState.COMPLETED, QueueState.FAILED)


class WorkQueue(ABC):
    """Abstract base class for the work dispatch transport"""

    def connect(self) -> None:
        pass

    def close(self) -> None:
        pass

    @abstractmethod
    def dispatch(self, key: str, payload: Dict[str, Any]) -> bool:
        """
        Enqueue a work item.

        Returns:
            True if enqueued, False if an item with this key already exists
        """
        pass

    @abstractmethod
    def claim(self) -> Optional[WorkItem]:
        """
        Atomically claim the oldest available item, marking it active.

        Available means waiting, delayed past its retry time, or active
        with a claim lease that has not been renewed within the lease.

        Returns:
            WorkItem with its 1-based attempt number, or None
        """
        pass

    @abstractmethod
    def heartbeat(self, key: str) -> None:
        """Renew the claim lease of an active item"""
        pass

    @abstractmethod
    def complete(self, key: str) -> None:
        """Mark an active item finished successfully"""
        pass

    @abstractmethod
    def retry(self, key: str, error: str, delay_sec: float) -> None:
        """Release an active item as delayed until delay_sec from now"""
        pass

    @abstractmethod
    def fail(self, key: str, error: str) -> None:
        """Mark an active item permanently failed"""
        pass

    @abstractmethod
    def remove(self, key: str) -> bool:
        """Remove an item only if it is waiting or delayed"""
        pass

    @abstractmethod
    def state(self, key: str) -> Optional[QueueState]:
        """Current transport state, or None for unknown keys"""
        pass
