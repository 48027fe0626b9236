import io
import os
import ffmpeg
import logging
import tempfile
from abc import ABC, abstractmethod
from typing import Iterator, Optional, Tuple
from PIL import Image

from ..exceptions import SourceMediaError
from ..models import ExtractionOptions, SampledFrame, estimate_total_frames
from .util import FORMAT_PIL_NAMES, create_scratch_dir, remove_dir

logger = logging.getLogger("frame_worker")

RAW_PREFIX = "raw_"
PNG_COMPRESS_LEVEL = 6


class ProgressSink(ABC):
    """Receives (current, total_estimate) after each frame is fully encoded"""

    @abstractmethod
    def report(self, current: int, total: int) -> None:
        pass


class NullProgressSink(ProgressSink):
    def report(self, current: int, total: int) -> None:
        return None


def encode_frame(raw: bytes, options: ExtractionOptions) -> Tuple[bytes, int, int]:
    """
    Resize (optionally) and encode one raw frame.

    The image is shrunk to fit within (max_width, max_height) keeping its
    aspect ratio and is never enlarged. JPEG and WEBP use `quality`
    directly; PNG is lossless so quality does not apply.

    Returns:
        Tuple of (encoded_bytes, width, height)
    """
    with Image.open(io.BytesIO(raw)) as source:
        image = source.copy()

    if options.max_width or options.max_height:
        bounds = (options.max_width or image.width, options.max_height or image.height)
        image.thumbnail(bounds, Image.Resampling.LANCZOS)

    save_kwargs = {}
    if options.format == "jpeg":
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        save_kwargs["quality"] = options.quality
    elif options.format == "webp":
        save_kwargs["quality"] = options.quality
    else:
        save_kwargs["compress_level"] = PNG_COMPRESS_LEVEL

    buffer = io.BytesIO()
    image.save(buffer, format=FORMAT_PIL_NAMES[options.format], **save_kwargs)
    return buffer.getvalue(), image.width, image.height


class FrameSampler:
    """Samples a source at 1/interval fps and yields encoded frames in order"""

    def __init__(self, scratch_dir: Optional[str] = None):
        self.scratch_dir = scratch_dir or tempfile.gettempdir()

    def sample(self, video_path: str, duration: float, options: ExtractionOptions,
               progress: Optional[ProgressSink] = None) -> Iterator[SampledFrame]:
        """
        Yield frames k = 0, 1, ... with frame_number k + 1 and timestamp k * interval.

        The number of frames follows what the decoder actually produces and
        may differ by one from the duration-based estimate.

        Raises:
            SourceMediaError: ffmpeg could not decode the source
        """
        progress = progress or NullProgressSink()
        total_estimate = estimate_total_frames(duration, options.interval)
        raw_dir = create_scratch_dir(self.scratch_dir, "frames-")

        try:
            self._extract_raw(video_path, raw_dir, options)

            raw_files = sorted(
                name for name in os.listdir(raw_dir)
                if name.startswith(RAW_PREFIX) and name.endswith(".png")
            )
            logger.info(
                f"Sampled {len(raw_files)} raw frames from {video_path} "
                f"(estimate {total_estimate}, interval {options.interval}s)"
            )

            for index, name in enumerate(raw_files):
                with open(os.path.join(raw_dir, name), 'rb') as fh:
                    raw = fh.read()

                data, width, height = encode_frame(raw, options)
                frame = SampledFrame(
                    frame_number=index + 1,
                    timestamp=index * options.interval,
                    data=data,
                    width=width,
                    height=height,
                    format=options.format,
                )
                progress.report(index + 1, total_estimate)
                yield frame
        finally:
            remove_dir(raw_dir)

    def _extract_raw(self, video_path: str, output_dir: str, options: ExtractionOptions) -> None:
        """Decode the source with ffmpeg's fps filter into lossless PNG files"""
        output_pattern = os.path.join(output_dir, f"{RAW_PREFIX}%04d.png")
        fps = 1.0 / options.interval

        try:
            (
                ffmpeg
                .input(video_path)
                .filter('fps', fps=fps)
                .output(output_pattern, start_number=1, vcodec='png')
                .overwrite_output()
                .run(quiet=True)
            )
        except ffmpeg.Error as e:
            stderr = e.stderr.decode(errors="replace") if e.stderr else str(e)
            raise SourceMediaError(f"FFmpeg error: {stderr.strip()}") from e
