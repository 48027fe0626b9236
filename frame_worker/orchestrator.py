"""
Job orchestration.

Turns extraction requests into a ledger entry plus a dispatched work
item, cancels work that no worker has claimed yet, reports job status
with signed frame URLs, and re-dispatches orphaned pending jobs.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List, Union

from pydantic import ValidationError as PydanticValidationError

from .adapters.base import JobLedger, ObjectStore, WorkQueue
from .exceptions import ConflictError, NotFoundError, TransientQueueError, ValidationError
from .logging_setup import log_exception
from .models import (
    ExtractionJob,
    ExtractionOptions,
    FrameView,
    JobStatus,
    JobStatusView,
    Video,
    WorkItem,
    estimate_total_frames,
)

logger = logging.getLogger("frame_worker")

CANCELLED_MESSAGE = "Cancelled by user"
DEFAULT_URL_EXPIRY_SEC = 3600


def parse_options(options: Union[ExtractionOptions, Dict[str, Any], None]) -> ExtractionOptions:
    """Validate raw options once, filling defaults"""
    if isinstance(options, ExtractionOptions):
        return options
    try:
        return ExtractionOptions.model_validate(options or {})
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid extraction options: {e}") from e


class JobOrchestrator:
    """Creates, cancels and reports on extraction jobs"""

    def __init__(self, ledger: JobLedger, queue: WorkQueue, store: ObjectStore,
                 url_expiry_sec: int = DEFAULT_URL_EXPIRY_SEC):
        self.ledger = ledger
        self.queue = queue
        self.store = store
        self.url_expiry_sec = url_expiry_sec

    def _get_live_video(self, video_id: str) -> Video:
        video = self.ledger.get_video(video_id)
        if video is None or video.is_deleted:
            raise NotFoundError("Video not found")
        return video

    def _get_job(self, job_id: str) -> ExtractionJob:
        job = self.ledger.get_job(job_id)
        if job is None:
            raise NotFoundError("Job not found")
        return job

    def start_extraction(self, video_id: str,
                         options: Union[ExtractionOptions, Dict[str, Any], None] = None) -> JobStatusView:
        """
        Create a pending job and dispatch its work item.

        Args:
            video_id: Video to extract from
            options: Extraction options (validated and defaulted here)

        Returns:
            JobStatusView of the new job with extractedFrames = 0

        Raises:
            ValidationError: options out of range
            NotFoundError: video missing or soft-deleted
            TransientQueueError: dispatch failed; the job was marked failed
        """
        extraction_options = parse_options(options)
        video = self._get_live_video(video_id)

        total_frames = estimate_total_frames(video.duration, extraction_options.interval)
        job = self.ledger.create_job(video.id, extraction_options, total_frames)

        item = WorkItem(
            key=job.id,
            job_id=job.id,
            video_id=video.id,
            source_key=video.storage_key,
            duration=video.duration,
            options=extraction_options,
        )
        try:
            self.queue.dispatch(item.key, item.to_payload())
        except Exception as e:
            log_exception(logger, f"Dispatch failed for job {job.id}: {e}")
            self.ledger.fail_job(job.id, f"Dispatch failed: {e}")
            if isinstance(e, TransientQueueError):
                raise
            raise TransientQueueError(f"Failed to dispatch job {job.id}: {e}") from e

        logger.info(f"Started extraction job {job.id} for video {video.id}: {total_frames} frames estimated")
        return JobStatusView.from_job(job)

    def cancel_job(self, job_id: str) -> None:
        """
        Cancel a job that no worker has claimed yet.

        Raises:
            NotFoundError: unknown job
            ConflictError: job already claimed, running or finished
        """
        job = self._get_job(job_id)

        if job.status.is_terminal:
            raise ConflictError("Cannot cancel completed or failed job")
        if job.status != JobStatus.PENDING:
            raise ConflictError("Cannot cancel job in current state")

        # Ledger and transport can diverge briefly; the transport decides.
        state = self.queue.state(job.id)
        if state is None or not state.not_started or not self.queue.remove(job.id):
            logger.info(f"Refused to cancel job {job.id} (queue state: {state.value if state else 'unknown'})")
            raise ConflictError("Cannot cancel job in current state")

        self.ledger.fail_job(job.id, CANCELLED_MESSAGE)
        logger.info(f"Cancelled job {job.id}")

    def get_job_status(self, job_id: str) -> JobStatusView:
        """Current snapshot; completed jobs include signed frame URLs"""
        job = self._get_job(job_id)

        frames: Optional[List[FrameView]] = None
        if job.status == JobStatus.COMPLETED:
            frames = [
                FrameView(
                    frame_number=frame.frame_number,
                    timestamp=frame.timestamp,
                    url=self.store.signed_url(frame.storage_key, self.url_expiry_sec),
                    width=frame.width,
                    height=frame.height,
                    format=frame.format,
                )
                for frame in self.ledger.list_frames_by_job(job.id)
            ]

        return JobStatusView.from_job(job, frames)

    def reconcile_orphans(self, older_than_sec: float = 300) -> List[str]:
        """
        Re-dispatch pending jobs whose work item never reached the transport.

        Dispatch is deduplicated by job id, so running this concurrently
        with normal traffic cannot create a second work item.

        Returns:
            IDs of re-dispatched jobs
        """
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_sec)
        redispatched = []

        for job in self.ledger.list_pending_jobs(created_before=cutoff):
            if self.queue.state(job.id) is not None:
                continue

            video = self.ledger.get_video(job.video_id)
            if video is None or video.is_deleted:
                self.ledger.fail_job(job.id, "Video not found")
                continue

            item = WorkItem(
                key=job.id,
                job_id=job.id,
                video_id=video.id,
                source_key=video.storage_key,
                duration=video.duration,
                options=job.options,
            )
            try:
                if self.queue.dispatch(item.key, item.to_payload()):
                    redispatched.append(job.id)
                    logger.warning(f"Re-dispatched orphaned job {job.id}")
            except Exception as e:
                log_exception(logger, f"Error re-dispatching orphaned job {job.id}: {e}")

        return redispatched
