"""
Extraction worker.

Runs one claimed work item through the extraction pipeline: mark the job
processing, copy the source into a private scratch directory, sample and
encode frames, store each frame before recording it, then complete or
fail the job. Retry decisions follow the transport's bounded attempt
policy; only the terminal attempt is written to the ledger as failed.
The claim lease is renewed alongside progress writes so a live attempt
is never reclaimed by another worker.
"""

import math
import os
import time
import logging
from typing import Callable, Optional

from .adapters.base import JobLedger, ObjectStore, WorkQueue
from .config import WorkerConfig
from .exceptions import AttemptsExhaustedError, JobStateError
from .logging_setup import log_exception
from .models import JobContext, MediaInfo, WorkItem, WorkerStats
from .pipeline.probe import probe_media
from .pipeline.sampler import FrameSampler, ProgressSink
from .pipeline.util import create_scratch_dir, frame_content_type, frame_storage_key, remove_dir

logger = logging.getLogger("frame_worker")


class LedgerProgressSink(ProgressSink):
    """Writes percent and processed count to the ledger at a bounded rate"""

    def __init__(self, ledger: JobLedger, job_id: str, min_interval_sec: float = 0.0,
                 clock: Callable[[], float] = time.monotonic,
                 heartbeat: Optional[Callable[[], None]] = None):
        self.ledger = ledger
        self.job_id = job_id
        self.min_interval_sec = min_interval_sec
        self.clock = clock
        self.heartbeat = heartbeat
        self.last_write: Optional[float] = None
        self.last_current = 0

    def report(self, current: int, total: int) -> None:
        if current <= self.last_current:
            return

        now = self.clock()
        due = (
            self.last_write is None
            or current >= total
            or now - self.last_write >= self.min_interval_sec
        )
        if not due:
            return

        percent = math.floor(current / total * 100) if total > 0 else 100
        try:
            self.ledger.update_progress(self.job_id, percent, current)
            self.last_write = now
            self.last_current = current
            logger.debug(f"Job {self.job_id} progress: {current}/{total} ({percent}%)")
        except Exception as e:
            logger.warning(f"Error tracking progress for job {self.job_id}: {e}")

        if self.heartbeat:
            try:
                self.heartbeat()
            except Exception as e:
                logger.warning(f"Error renewing claim lease for job {self.job_id}: {e}")


class ExtractionWorker:
    """Claims work items and drives them through the extraction pipeline"""

    def __init__(self, config: WorkerConfig, ledger: JobLedger, store: ObjectStore, queue: WorkQueue,
                 sampler: Optional[FrameSampler] = None,
                 prober: Callable[[str, float], MediaInfo] = probe_media,
                 name: str = "worker-0"):
        self.config = config
        self.ledger = ledger
        self.store = store
        self.queue = queue
        self.sampler = sampler or FrameSampler(config.SCRATCH_DIR)
        self.prober = prober
        self.name = name
        self.stats = WorkerStats()

    def run_once(self) -> bool:
        """
        Claim and process at most one work item.

        Returns:
            True if an item was claimed, False if the queue was empty
        """
        item = self.queue.claim()
        if item is None:
            return False
        self.handle(item)
        return True

    def handle(self, item: WorkItem) -> None:
        """Process an item and settle it with the queue; never raises for job errors"""
        start_time = time.time()
        try:
            frame_count = self.process(item)
            self.queue.complete(item.key)
            self.stats.jobs_processed += 1
            self.stats.frames_extracted += frame_count
        except JobStateError as e:
            logger.warning(f"Job {item.job_id} skipped: {e}")
            self.queue.fail(item.key, str(e))
            self.stats.jobs_failed += 1
        except Exception as e:
            log_exception(logger, f"FAILED: job {item.job_id} attempt {item.attempt}: {e}")
            self._handle_failure(item, e)
        finally:
            self.stats.total_processing_time += time.time() - start_time

    def process(self, item: WorkItem) -> int:
        """
        Execute the extraction pipeline for one attempt.

        Args:
            item: Claimed work item

        Returns:
            Number of frames stored and recorded

        Raises:
            JobStateError: the ledger refused a transition (job cancelled or missing)
            AttemptsExhaustedError: the item was reclaimed after its last attempt stalled
        """
        ctx = JobContext.from_work_item(item)
        logger.info(f"CLAIMED: [{self.name}] job {ctx.job_id} for video {ctx.video_id} (attempt {ctx.attempt})")

        if ctx.attempt > self.config.MAX_ATTEMPTS:
            raise AttemptsExhaustedError(
                f"Worker stalled on job {ctx.job_id}; no attempts left after {ctx.attempt - 1}"
            )

        if not self.ledger.mark_processing(ctx.job_id):
            raise JobStateError(f"Job {ctx.job_id} cannot enter processing")

        scratch_dir = create_scratch_dir(self.config.SCRATCH_DIR, f"worker-{ctx.job_id}-")
        try:
            source_path = self._fetch_source(ctx, scratch_dir)
            media = self.prober(source_path, self.config.MAX_DURATION_SEC)
            self._renew_lease(item.key)

            logger.info(
                f"PROCESSING: sampling job {ctx.job_id} every {ctx.options.interval}s "
                f"({media.duration:.1f}s, {media.width}x{media.height}, {media.codec})"
            )
            frame_count = self._extract_and_store(ctx, source_path, item.key)

            if not self.ledger.complete_job(ctx.job_id, frame_count):
                raise JobStateError(f"Job {ctx.job_id} could not be completed")

            logger.info(f"COMPLETED: job {ctx.job_id} with {frame_count} frames")
            return frame_count
        finally:
            remove_dir(scratch_dir)

    def _fetch_source(self, ctx: JobContext, scratch_dir: str) -> str:
        """Download the source video into the scratch directory"""
        data = self.store.download(ctx.source_key)
        extension = os.path.splitext(ctx.source_key)[1] or ".mp4"
        source_path = os.path.join(scratch_dir, f"input{extension}")
        with open(source_path, 'wb') as fh:
            fh.write(data)
        logger.debug(f"Fetched {len(data)} bytes for job {ctx.job_id} into {source_path}")
        return source_path

    def _renew_lease(self, key: str) -> None:
        try:
            self.queue.heartbeat(key)
        except Exception as e:
            logger.warning(f"Error renewing claim lease for {key}: {e}")

    def _extract_and_store(self, ctx: JobContext, source_path: str, item_key: str) -> int:
        """Upload each frame, then record it; returns the number of frames"""
        progress = LedgerProgressSink(
            self.ledger,
            ctx.job_id,
            min_interval_sec=self.config.PROGRESS_MIN_INTERVAL_MS / 1000.0,
            heartbeat=lambda: self.queue.heartbeat(item_key),
        )

        frame_count = 0
        for frame in self.sampler.sample(source_path, ctx.duration, ctx.options, progress):
            key = frame_storage_key(ctx.video_id, ctx.job_id, frame.frame_number, frame.format)
            self.store.upload(key, frame.data, frame_content_type(frame.format))
            self.ledger.add_frame(
                job_id=ctx.job_id,
                video_id=ctx.video_id,
                frame_number=frame.frame_number,
                timestamp=frame.timestamp,
                storage_key=key,
                width=frame.width,
                height=frame.height,
                fmt=frame.format,
            )
            frame_count += 1

        logger.info(f"FRAMES: stored {frame_count} frames for job {ctx.job_id}")
        return frame_count

    def _handle_failure(self, item: WorkItem, error: Exception) -> None:
        """
        Retry with exponential backoff or record the terminal failure.

        Args:
            item: Failed work item
            error: Exception raised by the attempt
        """
        message = str(error) or error.__class__.__name__
        retryable = getattr(error, "retryable", True)
        final = not retryable or item.attempt >= self.config.MAX_ATTEMPTS

        try:
            if final:
                logger.error(f"Job {item.job_id} failed permanently after {item.attempt} attempt(s): {message}")
                self.ledger.fail_job(item.job_id, message)
                self.queue.fail(item.key, message)
                self.stats.jobs_failed += 1
            else:
                delay = self.config.retry_delay_sec(item.attempt)
                logger.warning(
                    f"Job {item.job_id} failed (attempt {item.attempt}/{self.config.MAX_ATTEMPTS}), "
                    f"retrying in {delay:.1f}s: {message}"
                )
                self.queue.retry(item.key, message, delay)
                self.stats.jobs_retried += 1
        except Exception as e:
            log_exception(logger, f"Error handling job failure for {item.job_id}: {e}")
