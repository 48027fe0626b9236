import os
import re
import shutil
import tempfile
from typing import Optional


FORMAT_EXTENSIONS = {
    "png": "png",
    "jpeg": "jpg",
    "webp": "webp",
}

FORMAT_CONTENT_TYPES = {
    "png": "image/png",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
}

# Pillow encoder names
FORMAT_PIL_NAMES = {
    "png": "PNG",
    "jpeg": "JPEG",
    "webp": "WEBP",
}


def frame_extension(fmt: str) -> str:
    """File extension for an output format"""
    return FORMAT_EXTENSIONS.get(fmt, "jpg")


def frame_content_type(fmt: str) -> str:
    """MIME type for an output format"""
    return FORMAT_CONTENT_TYPES.get(fmt, "application/octet-stream")


def frame_filename(frame_number: int, fmt: str) -> str:
    """frame_0001.png style name used in storage keys and archives"""
    return f"frame_{frame_number:04d}.{frame_extension(fmt)}"


def frame_storage_key(video_id: str, job_id: str, frame_number: int, fmt: str) -> str:
    """Storage key namespaced by video and job"""
    return f"frames/{video_id}/{job_id}/{frame_filename(frame_number, fmt)}"


def strip_extension(filename: str) -> str:
    """Drop the last extension: clip.final.mp4 -> clip.final"""
    return re.sub(r'\.[^.]+$', '', filename)


def archive_basename(original_name: Optional[str]) -> str:
    """Archive name derived from the video's original filename"""
    if not original_name:
        return "frames"
    return f"{strip_extension(original_name)}_frames"


def ascii_filename(filename: str) -> str:
    """Replace non-printable-ASCII characters for the plain filename= header"""
    return re.sub(r'[^\x20-\x7E]', '_', filename).replace('"', '_')


def create_scratch_dir(base_dir: str, prefix: str) -> str:
    """Create a private scratch directory"""
    os.makedirs(base_dir, exist_ok=True)
    return tempfile.mkdtemp(prefix=prefix, dir=base_dir)


def remove_dir(path: Optional[str]) -> None:
    """Remove a directory tree if it exists"""
    if path and os.path.isdir(path):
        shutil.rmtree(path, ignore_errors=True)
