"""
Postgres adapter implementations for the job ledger and work queue.

The ledger guards every status change with a WHERE clause so the job
state machine holds even with several workers writing. The queue uses
FOR UPDATE SKIP LOCKED so concurrent workers never claim the same item,
and treats an active item whose updated_at is older than the claim lease
as abandoned by a dead worker.
"""

import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from .base import JobLedger, QueueState, WorkQueue
from ..exceptions import TransientQueueError
from ..logging_setup import log_exception
from ..models import ExtractionJob, ExtractionOptions, Frame, JobStatus, Video, WorkItem

logger = logging.getLogger("frame_worker")


LEDGER_SCHEMA = """
CREATE TABLE IF NOT EXISTS videos (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    filename TEXT NOT NULL,
    original_name TEXT NOT NULL,
    mime_type TEXT NOT NULL,
    size INTEGER NOT NULL,
    duration REAL NOT NULL,
    width INTEGER NOT NULL,
    height INTEGER NOT NULL,
    frame_rate REAL NOT NULL,
    storage_path TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    deleted_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS extraction_jobs (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    video_id UUID NOT NULL REFERENCES videos(id) ON DELETE CASCADE,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
    options JSONB NOT NULL,
    progress INTEGER NOT NULL DEFAULT 0,
    total_frames INTEGER,
    processed_frames INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    started_at TIMESTAMPTZ,
    completed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS frames (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    job_id UUID NOT NULL REFERENCES extraction_jobs(id) ON DELETE CASCADE,
    video_id UUID NOT NULL REFERENCES videos(id) ON DELETE CASCADE,
    frame_number INTEGER NOT NULL,
    timestamp REAL NOT NULL,
    storage_path TEXT NOT NULL,
    width INTEGER NOT NULL,
    height INTEGER NOT NULL,
    format TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (job_id, frame_number)
);
"""

QUEUE_SCHEMA = """
CREATE TABLE IF NOT EXISTS work_items (
    key TEXT PRIMARY KEY,
    payload JSONB NOT NULL,
    state TEXT NOT NULL DEFAULT 'waiting',
    attempts INTEGER NOT NULL DEFAULT 0,
    available_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    last_error TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS work_items_ready_idx ON work_items (state, available_at, created_at);
"""

JOB_COLUMNS = """
    id, video_id, status, options, progress, total_frames, processed_frames,
    error_message, started_at, completed_at, created_at
"""

FRAME_COLUMNS = """
    id, job_id, video_id, frame_number, timestamp, storage_path, width, height, format, created_at
"""


def _create_pool(database_url: str, pool_size: int, timeout: int, application_name: str) -> ConnectionPool:
    return ConnectionPool(
        database_url,
        min_size=1,
        max_size=pool_size,
        kwargs={
            "connect_timeout": timeout,
            "application_name": application_name
        }
    )


def _row_to_job(row: Dict[str, Any]) -> ExtractionJob:
    return ExtractionJob(
        id=str(row['id']),
        video_id=str(row['video_id']),
        status=JobStatus(row['status']),
        options=ExtractionOptions.model_validate(row['options']),
        total_frames=row['total_frames'] or 0,
        progress=row['progress'] or 0,
        processed_frames=row['processed_frames'] or 0,
        error_message=row['error_message'],
        created_at=row['created_at'],
        started_at=row['started_at'],
        completed_at=row['completed_at'],
    )


def _row_to_frame(row: Dict[str, Any]) -> Frame:
    return Frame(
        id=str(row['id']),
        job_id=str(row['job_id']),
        video_id=str(row['video_id']),
        frame_number=row['frame_number'],
        timestamp=float(row['timestamp']),
        storage_key=row['storage_path'],
        width=row['width'],
        height=row['height'],
        format=row['format'],
        created_at=row['created_at'],
    )


class PostgresJobLedger(JobLedger):
    """Postgres implementation of the job ledger"""

    def __init__(self, database_url: str, pool_size: int = 5, timeout: int = 10):
        self.database_url = database_url
        self.pool_size = pool_size
        self.timeout = timeout
        self.pool = None

    def connect(self):
        """Initialize connection pool"""
        try:
            self.pool = _create_pool(self.database_url, self.pool_size, self.timeout, "frame_worker_ledger")
            logger.info("Postgres ledger connection pool initialized")
            self._bootstrap_schema()
        except Exception as e:
            log_exception(logger, f"Failed to connect to Postgres ledger: {e}")
            raise

    def _bootstrap_schema(self):
        """Create ledger tables if they do not exist"""
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(LEDGER_SCHEMA)
                conn.commit()
                logger.info("Postgres ledger schema validated")

    def get_video(self, video_id: str) -> Optional[Video]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute("""
                    SELECT id, original_name, mime_type, size, duration, width, height,
                           frame_rate, storage_path, created_at, deleted_at
                    FROM videos WHERE id = %s
                """, (video_id,))
                row = cur.fetchone()
                if not row:
                    return None
                return Video(
                    id=str(row['id']),
                    original_name=row['original_name'],
                    mime_type=row['mime_type'],
                    size=row['size'],
                    duration=float(row['duration']),
                    width=row['width'],
                    height=row['height'],
                    frame_rate=float(row['frame_rate']),
                    storage_key=row['storage_path'],
                    created_at=row['created_at'],
                    deleted_at=row['deleted_at'],
                )

    def create_job(self, video_id: str, options: ExtractionOptions, total_frames: int) -> ExtractionJob:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(f"""
                    INSERT INTO extraction_jobs (video_id, status, options, total_frames)
                    VALUES (%s, 'pending', %s, %s)
                    RETURNING {JOB_COLUMNS}
                """, (video_id, Jsonb(options.to_payload()), total_frames))
                row = cur.fetchone()
                conn.commit()
                logger.info(f"Created extraction job {row['id']} for video {video_id}")
                return _row_to_job(row)

    def get_job(self, job_id: str) -> Optional[ExtractionJob]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(f"SELECT {JOB_COLUMNS} FROM extraction_jobs WHERE id = %s", (job_id,))
                row = cur.fetchone()
                return _row_to_job(row) if row else None

    def mark_processing(self, job_id: str) -> bool:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE extraction_jobs
                    SET status = 'processing', started_at = COALESCE(started_at, now())
                    WHERE id = %s AND status IN ('pending', 'processing')
                    RETURNING id
                """, (job_id,))
                updated = cur.fetchone() is not None
                conn.commit()
                return updated

    def update_progress(self, job_id: str, progress: int, processed_frames: int) -> None:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE extraction_jobs
                    SET progress = GREATEST(progress, %s),
                        processed_frames = GREATEST(processed_frames, %s)
                    WHERE id = %s AND status = 'processing'
                """, (progress, processed_frames, job_id))
                conn.commit()

    def complete_job(self, job_id: str, processed_frames: int) -> bool:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE extraction_jobs
                    SET status = 'completed', progress = 100, processed_frames = %s,
                        total_frames = GREATEST(COALESCE(total_frames, 0), %s),
                        completed_at = now()
                    WHERE id = %s AND status = 'processing'
                    RETURNING id
                """, (processed_frames, processed_frames, job_id))
                updated = cur.fetchone() is not None
                conn.commit()
                if updated:
                    logger.info(f"Job {job_id} completed with {processed_frames} frames")
                return updated

    def fail_job(self, job_id: str, error: str) -> bool:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE extraction_jobs
                    SET status = 'failed', error_message = %s, completed_at = now()
                    WHERE id = %s AND status IN ('pending', 'processing')
                    RETURNING id
                """, (error, job_id))
                updated = cur.fetchone() is not None
                conn.commit()
                if updated:
                    logger.error(f"Job {job_id} failed: {error}")
                return updated

    def add_frame(self, job_id: str, video_id: str, frame_number: int, timestamp: float,
                  storage_key: str, width: int, height: int, fmt: str) -> Frame:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(f"""
                    INSERT INTO frames (job_id, video_id, frame_number, timestamp, storage_path, width, height, format)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (job_id, frame_number) DO NOTHING
                    RETURNING {FRAME_COLUMNS}
                """, (job_id, video_id, frame_number, timestamp, storage_key, width, height, fmt))
                row = cur.fetchone()
                if row is None:
                    cur.execute(f"""
                        SELECT {FRAME_COLUMNS} FROM frames
                        WHERE job_id = %s AND frame_number = %s
                    """, (job_id, frame_number))
                    row = cur.fetchone()
                conn.commit()
                return _row_to_frame(row)

    def list_frames_by_job(self, job_id: str) -> List[Frame]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(f"""
                    SELECT {FRAME_COLUMNS} FROM frames
                    WHERE job_id = %s ORDER BY frame_number
                """, (job_id,))
                return [_row_to_frame(row) for row in cur.fetchall()]

    def list_frames_by_video(self, video_id: str) -> List[Frame]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(f"""
                    SELECT {FRAME_COLUMNS} FROM frames
                    WHERE video_id = %s ORDER BY frame_number, created_at
                """, (video_id,))
                return [_row_to_frame(row) for row in cur.fetchall()]

    def list_pending_jobs(self, created_before: Optional[datetime] = None, limit: int = 100) -> List[ExtractionJob]:
        with self.pool.connection() as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(f"""
                    SELECT {JOB_COLUMNS} FROM extraction_jobs
                    WHERE status = 'pending'
                      AND (%s::timestamptz IS NULL OR created_at <= %s::timestamptz)
                    ORDER BY created_at
                    LIMIT %s
                """, (created_before, created_before, limit))
                return [_row_to_job(row) for row in cur.fetchall()]

    def get_stats(self) -> Dict[str, Any]:
        """Get job and frame counts for monitoring"""
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT status, COUNT(*) as count
                    FROM extraction_jobs
                    GROUP BY status
                """)
                job_counts = {row[0]: row[1] for row in cur.fetchall()}

                cur.execute("SELECT COUNT(*) FROM frames")
                frame_count = cur.fetchone()[0]

                return {"jobs": job_counts, "frames": frame_count}

    def close(self):
        """Close connection pool"""
        if self.pool:
            self.pool.close()
            logger.info("Postgres ledger connection pool closed")


class PostgresWorkQueue(WorkQueue):
    """Postgres-backed work queue keyed by job id"""

    def __init__(self, database_url: str, pool_size: int = 5, timeout: int = 10,
                 lease_sec: int = 300):
        self.database_url = database_url
        self.pool_size = pool_size
        self.timeout = timeout
        self.lease_sec = lease_sec
        self.pool = None

    def connect(self):
        """Initialize connection pool"""
        try:
            self.pool = _create_pool(self.database_url, self.pool_size, self.timeout, "frame_worker_queue")
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(QUEUE_SCHEMA)
                    conn.commit()
            logger.info("Postgres work queue initialized")
        except Exception as e:
            log_exception(logger, f"Failed to connect to Postgres work queue: {e}")
            raise

    def dispatch(self, key: str, payload: Dict[str, Any]) -> bool:
        try:
            with self.pool.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("""
                        INSERT INTO work_items (key, payload)
                        VALUES (%s, %s)
                        ON CONFLICT (key) DO NOTHING
                        RETURNING key
                    """, (key, Jsonb(payload)))
                    inserted = cur.fetchone() is not None
                    conn.commit()
                    return inserted
        except psycopg.Error as e:
            raise TransientQueueError(f"Failed to dispatch work item {key}: {e}") from e

    def claim(self) -> Optional[WorkItem]:
        """Atomically claim the oldest ready or stalled item"""
        try:
            with self.pool.connection() as conn:
                with conn.cursor(row_factory=dict_row) as cur:
                    cur.execute("""
                        WITH w AS (
                            SELECT key
                            FROM work_items
                            WHERE state = 'waiting'
                               OR (state = 'delayed' AND available_at <= now())
                               OR (state = 'active' AND updated_at < now() - make_interval(secs => %s))
                            ORDER BY created_at
                            FOR UPDATE SKIP LOCKED
                            LIMIT 1
                        )
                        UPDATE work_items
                        SET state = 'active', attempts = attempts + 1, updated_at = now()
                        FROM w
                        WHERE work_items.key = w.key
                        RETURNING work_items.key, work_items.payload, work_items.attempts;
                    """, (float(self.lease_sec),))
                    row = cur.fetchone()
                    conn.commit()
        except psycopg.Error as e:
            raise TransientQueueError(f"Failed to claim work item: {e}") from e

        if not row:
            return None
        logger.info(f"Claimed work item {row['key']} (attempt {row['attempts']})")
        return WorkItem.from_payload(row['key'], row['payload'], attempt=row['attempts'])

    def heartbeat(self, key: str) -> None:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE work_items SET updated_at = now()
                    WHERE key = %s AND state = 'active'
                """, (key,))
                conn.commit()

    def _set_state(self, key: str, state: QueueState, error: Optional[str] = None) -> None:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE work_items
                    SET state = %s, last_error = %s, updated_at = now()
                    WHERE key = %s AND state = 'active'
                """, (state.value, error, key))
                conn.commit()

    def complete(self, key: str) -> None:
        self._set_state(key, QueueState.COMPLETED)

    def retry(self, key: str, error: str, delay_sec: float) -> None:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    UPDATE work_items
                    SET state = 'delayed', last_error = %s,
                        available_at = now() + make_interval(secs => %s),
                        updated_at = now()
                    WHERE key = %s AND state = 'active'
                """, (error, delay_sec, key))
                conn.commit()

    def fail(self, key: str, error: str) -> None:
        self._set_state(key, QueueState.FAILED, error)

    def remove(self, key: str) -> bool:
        """Delete the item only while no worker has claimed it"""
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    DELETE FROM work_items
                    WHERE key = %s AND state IN ('waiting', 'delayed')
                    RETURNING key
                """, (key,))
                removed = cur.fetchone() is not None
                conn.commit()
                return removed

    def state(self, key: str) -> Optional[QueueState]:
        with self.pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT state FROM work_items WHERE key = %s", (key,))
                row = cur.fetchone()
                return QueueState(row[0]) if row else None

    def close(self):
        """Close connection pool"""
        if self.pool:
            self.pool.close()
            logger.info("Postgres work queue connection pool closed")
