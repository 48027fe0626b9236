"""
Frame retrieval and bulk archive streaming.

Archives are written frame by frame into a zip stream: each frame's bytes
are fetched only when the consumer asks for the next chunk, so memory use
is bounded by one frame regardless of how many frames the job has.
"""

import logging
import zipfile
from dataclasses import dataclass
from typing import Iterator, List, Optional
from urllib.parse import quote

from .adapters.base import JobLedger, ObjectStore
from .exceptions import NotFoundError, ValidationError
from .models import Frame, FrameView
from .pipeline.util import archive_basename, ascii_filename, frame_filename

logger = logging.getLogger("frame_worker")

ZIP_COMPRESS_LEVEL = 5


class _ChunkSink:
    """Write-only, non-seekable file object collecting zip output between yields"""

    def __init__(self):
        self._chunks: List[bytes] = []

    def write(self, data) -> int:
        self._chunks.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def drain(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks = []
        return data


@dataclass
class Archive:
    """A lazily produced zip archive"""
    filename: str
    frame_count: int
    chunks: Iterator[bytes]

    @property
    def content_disposition(self) -> str:
        return (
            f'attachment; filename="{ascii_filename(self.filename)}"; '
            f"filename*=UTF-8''{quote(self.filename)}"
        )


class ArchiveStreamer:
    """Resolves frame sets and streams them as signed URLs or a zip archive"""

    def __init__(self, ledger: JobLedger, store: ObjectStore, url_expiry_sec: int = 3600):
        self.ledger = ledger
        self.store = store
        self.url_expiry_sec = url_expiry_sec

    def resolve_frames(self, video_id: Optional[str] = None, job_id: Optional[str] = None) -> List[Frame]:
        """Frames for a job (preferred) or a video, ordered by frame number"""
        if job_id:
            return self.ledger.list_frames_by_job(job_id)
        if video_id:
            return self.ledger.list_frames_by_video(video_id)
        raise ValidationError("Either videoId or jobId is required")

    def list_frames(self, video_id: Optional[str] = None, job_id: Optional[str] = None) -> List[FrameView]:
        return [
            FrameView(
                frame_number=frame.frame_number,
                timestamp=frame.timestamp,
                url=self.store.signed_url(frame.storage_key, self.url_expiry_sec),
                width=frame.width,
                height=frame.height,
                format=frame.format,
            )
            for frame in self.resolve_frames(video_id, job_id)
        ]

    def archive_name(self, video_id: Optional[str] = None, job_id: Optional[str] = None) -> str:
        """<original name without extension>_frames, or "frames" if the video is unknown"""
        video = None
        if job_id:
            job = self.ledger.get_job(job_id)
            if job:
                video = self.ledger.get_video(job.video_id)
        elif video_id:
            video = self.ledger.get_video(video_id)
        return archive_basename(video.original_name if video else None)

    def download_archive(self, video_id: Optional[str] = None, job_id: Optional[str] = None) -> Archive:
        """
        Prepare a streamed zip of a job's or video's frames.

        Frame resolution happens here so an empty set is reported before
        any bytes are sent; the frame bytes are fetched while iterating
        `Archive.chunks`.

        Raises:
            ValidationError: neither selector given
            NotFoundError: no frames for the selector
        """
        frames = self.resolve_frames(video_id, job_id)
        if not frames:
            raise NotFoundError("No frames found")

        filename = f"{self.archive_name(video_id, job_id)}.zip"
        logger.info(f"Streaming archive {filename} with {len(frames)} frames")
        return Archive(filename=filename, frame_count=len(frames), chunks=self._stream(frames, filename))

    def _stream(self, frames: List[Frame], filename: str) -> Iterator[bytes]:
        sink = _ChunkSink()
        with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED,
                             compresslevel=ZIP_COMPRESS_LEVEL) as archive:
            for frame in frames:
                try:
                    data = self.store.download(frame.storage_key)
                except Exception as e:
                    # Headers are already sent; the only option left is to abort the stream.
                    logger.error(f"Archive {filename} aborted at frame {frame.frame_number}: {e}")
                    raise
                archive.writestr(frame_filename(frame.frame_number, frame.format), data)

                chunk = sink.drain()
                if chunk:
                    yield chunk

        chunk = sink.drain()
        if chunk:
            yield chunk
