"""Shared fixtures: in-memory backends, a registered video and a fake decoder."""
import io
import os

import pytest
from PIL import Image

from frame_worker.adapters.memory_adapter import MemoryJobLedger, MemoryObjectStore, MemoryWorkQueue
from frame_worker.config import WorkerConfig
from frame_worker.models import MediaInfo, Video
from frame_worker.pipeline.sampler import FrameSampler

SOURCE_KEY = "videos/video-1/source.mp4"


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_png(width: int = 320, height: int = 240, color=(200, 30, 30)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


def install_fake_decoder(monkeypatch, frame_count: int, width: int = 320, height: int = 240):
    """Replace the ffmpeg step with one writing `frame_count` raw PNGs"""
    calls = []

    def fake_extract_raw(self, video_path, output_dir, options):
        calls.append(video_path)
        for i in range(1, frame_count + 1):
            with open(os.path.join(output_dir, f"raw_{i:04d}.png"), "wb") as fh:
                fh.write(make_png(width, height, color=(i * 20 % 256, 0, 0)))

    monkeypatch.setattr(FrameSampler, "_extract_raw", fake_extract_raw)
    return calls


def fake_prober(duration: float = 10.0):
    def prober(path, max_duration):
        return MediaInfo(duration=duration, width=320, height=240, frame_rate=30.0, codec="h264")
    return prober


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return MemoryJobLedger()


@pytest.fixture
def queue(clock):
    return MemoryWorkQueue(clock=clock)


@pytest.fixture
def store():
    store = MemoryObjectStore()
    store.upload(SOURCE_KEY, b"not really an mp4", "video/mp4")
    return store


@pytest.fixture
def scratch_dir(tmp_path):
    path = tmp_path / "scratch"
    path.mkdir()
    return path


@pytest.fixture
def config(scratch_dir):
    return WorkerConfig(
        LEDGER_TYPE="memory",
        QUEUE_TYPE="memory",
        STORAGE_TYPE="memory",
        SCRATCH_DIR=str(scratch_dir),
        PROGRESS_MIN_INTERVAL_MS=0,
        MAX_ATTEMPTS=3,
        RETRY_BASE_DELAY_MS=1000,
    )


@pytest.fixture
def video(ledger):
    return ledger.add_video(Video(
        id="video-1",
        original_name="holiday clip.final.mp4",
        mime_type="video/mp4",
        size=1024,
        duration=10.0,
        width=320,
        height=240,
        frame_rate=30.0,
        storage_key=SOURCE_KEY,
    ))
