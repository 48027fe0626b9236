import os
import ffmpeg
import logging
from typing import Dict, Any

from ..exceptions import SourceMediaError
from ..models import MediaInfo

logger = logging.getLogger("frame_worker")

MAX_DURATION_SECONDS = 60.0


def _parse_frame_rate(value: str) -> float:
    """Parse ffprobe's "num/den" rate, defaulting to 30fps"""
    try:
        if "/" in value:
            num, den = value.split("/", 1)
            num_f, den_f = float(num), float(den)
            rate = num_f / den_f if den_f != 0 else num_f
        else:
            rate = float(value)
    except (TypeError, ValueError):
        return 30.0
    return rate if rate > 0 else 30.0


def _duration_of(probe: Dict[str, Any], video_stream: Dict[str, Any]) -> float:
    duration = probe.get('format', {}).get('duration') or video_stream.get('duration') or 0
    try:
        return float(duration)
    except (TypeError, ValueError):
        return 0.0


def probe_media(video_path: str, max_duration: float = MAX_DURATION_SECONDS) -> MediaInfo:
    """
    Inspect a source file and return its media properties.

    Args:
        video_path: Path to the source file
        max_duration: Longest accepted source, in seconds

    Returns:
        MediaInfo with duration, dimensions, frame rate and codec

    Raises:
        SourceMediaError: file unreadable, no video stream, or too long
    """
    if not os.path.exists(video_path):
        raise SourceMediaError(f"Video file not found: {video_path}")

    try:
        probe = ffmpeg.probe(video_path)
    except ffmpeg.Error as e:
        stderr = e.stderr.decode(errors="replace") if e.stderr else str(e)
        raise SourceMediaError(f"Failed to extract metadata: {stderr.strip()}") from e

    video_stream = next(
        (stream for stream in probe.get('streams', []) if stream.get('codec_type') == 'video'),
        None
    )
    if video_stream is None:
        raise SourceMediaError("No video stream found")

    duration = _duration_of(probe, video_stream)
    if duration > max_duration:
        raise SourceMediaError(
            f"Video duration ({duration:.1f}s) exceeds maximum allowed ({max_duration:.0f}s)"
        )

    info = MediaInfo(
        duration=duration,
        width=int(video_stream.get('width') or 0),
        height=int(video_stream.get('height') or 0),
        frame_rate=_parse_frame_rate(video_stream.get('r_frame_rate') or "30/1"),
        codec=video_stream.get('codec_name') or "unknown",
    )
    logger.debug(f"Probed {video_path}: {info}")
    return info
