"""
Domain models for the frame extraction worker.

Defines the core data structures used throughout the system,
providing type safety and clear interfaces between components.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class JobStatus(str, Enum):
    """Lifecycle states of an extraction job"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Retries re-enter processing; nothing leaves a terminal state or returns to pending.
ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[JobStatus(current)]


FrameFormat = Literal["png", "jpeg", "webp"]


class ExtractionOptions(BaseModel):
    """Validated, fully defaulted extraction options, immutable once built"""
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    interval: float = Field(default=1.0, gt=0.1, le=60, description="Seconds between sampled frames")
    format: FrameFormat = Field(default="png", description="Output image encoding")
    quality: int = Field(default=90, ge=1, le=100, description="Format-specific quality percentage")
    max_width: Optional[int] = Field(default=None, ge=1, le=4096)
    max_height: Optional[int] = Field(default=None, ge=1, le=4096)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def estimate_total_frames(duration: float, interval: float) -> int:
    """floor(duration / interval) + 1, tolerant of float noise such as 0.3 / 0.1"""
    return int(math.floor(duration / interval + 1e-9)) + 1


@dataclass
class Video:
    """Uploaded source video, owned by the ingest side"""
    id: str
    original_name: str
    mime_type: str
    size: int
    duration: float
    width: int
    height: int
    frame_rate: float
    storage_key: str
    created_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class ExtractionJob:
    """Represents a frame extraction job"""
    id: str
    video_id: str
    status: JobStatus
    options: ExtractionOptions
    total_frames: int
    progress: int = 0
    processed_frames: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass
class Frame:
    """A stored, extracted frame"""
    id: str
    job_id: str
    video_id: str
    frame_number: int
    timestamp: float
    storage_key: str
    width: int
    height: int
    format: str
    created_at: Optional[datetime] = None


@dataclass
class WorkItem:
    """Queue representation of "run this job"; key is always the job id"""
    key: str
    job_id: str
    video_id: str
    source_key: str
    duration: float
    options: ExtractionOptions
    attempt: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "videoId": self.video_id,
            "sourceKey": self.source_key,
            "duration": self.duration,
            "options": self.options.to_payload(),
        }

    @classmethod
    def from_payload(cls, key: str, payload: Dict[str, Any], attempt: int = 0) -> "WorkItem":
        return cls(
            key=key,
            job_id=payload["jobId"],
            video_id=payload["videoId"],
            source_key=payload["sourceKey"],
            duration=float(payload["duration"]),
            options=ExtractionOptions.model_validate(payload.get("options", {})),
            attempt=attempt,
        )


@dataclass(frozen=True)
class JobContext:
    """Immutable per-attempt context threaded through the worker pipeline"""
    job_id: str
    video_id: str
    source_key: str
    duration: float
    options: ExtractionOptions
    attempt: int

    @classmethod
    def from_work_item(cls, item: WorkItem) -> "JobContext":
        return cls(
            job_id=item.job_id,
            video_id=item.video_id,
            source_key=item.source_key,
            duration=item.duration,
            options=item.options,
            attempt=item.attempt,
        )


@dataclass
class MediaInfo:
    """Probed properties of a source file"""
    duration: float
    width: int
    height: int
    frame_rate: float
    codec: str


@dataclass
class SampledFrame:
    """An encoded frame produced by the sampler"""
    frame_number: int
    timestamp: float
    data: bytes = field(repr=False)
    width: int
    height: int
    format: str


@dataclass
class WorkerStats:
    """Per-worker counters"""
    jobs_processed: int = 0
    jobs_failed: int = 0
    jobs_retried: int = 0
    frames_extracted: int = 0
    total_processing_time: float = 0.0


class _View(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class FrameView(_View):
    """Frame as returned to callers, with a short-lived retrieval URL"""
    frame_number: int
    timestamp: float
    url: str
    width: int
    height: int
    format: str


class JobStatusView(_View):
    """Snapshot of a job as returned by the orchestrator"""
    id: str
    video_id: str
    status: JobStatus
    options: ExtractionOptions
    total_frames: int
    extracted_frames: int
    progress: int
    frames: Optional[List[FrameView]] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: ExtractionJob, frames: Optional[List[FrameView]] = None) -> "JobStatusView":
        return cls(
            id=job.id,
            video_id=job.video_id,
            status=job.status,
            options=job.options,
            total_frames=job.total_frames,
            extracted_frames=job.processed_frames or 0,
            progress=min(job.progress, 100),
            frames=frames,
            error=job.error_message,
            created_at=job.created_at,
            completed_at=job.completed_at,
        )

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
