import io
import os

import pytest
from PIL import Image

from frame_worker.models import ExtractionOptions
from frame_worker.pipeline.sampler import FrameSampler, ProgressSink, encode_frame

from conftest import install_fake_decoder, make_png


class RecordingSink(ProgressSink):
    def __init__(self):
        self.calls = []

    def report(self, current, total):
        self.calls.append((current, total))


def test_sample_numbers_frames_from_one_with_interval_timestamps(monkeypatch, tmp_path):
    install_fake_decoder(monkeypatch, frame_count=6)
    sampler = FrameSampler(str(tmp_path))

    frames = list(sampler.sample("input.mp4", 10.0, ExtractionOptions(interval=2.0)))

    assert [f.frame_number for f in frames] == [1, 2, 3, 4, 5, 6]
    assert [f.timestamp for f in frames] == [0.0, 2.0, 4.0, 6.0, 8.0, 10.0]
    assert all(f.format == "png" for f in frames)


def test_progress_is_reported_once_each_frame_is_encoded(monkeypatch, tmp_path):
    install_fake_decoder(monkeypatch, frame_count=3)
    sink = RecordingSink()
    frames = FrameSampler(str(tmp_path)).sample("input.mp4", 4.0, ExtractionOptions(interval=2.0), sink)

    next(frames)
    assert sink.calls == [(1, 3)]

    list(frames)
    assert sink.calls == [(1, 3), (2, 3), (3, 3)]


def test_frame_count_follows_the_decoder_not_the_estimate(monkeypatch, tmp_path):
    install_fake_decoder(monkeypatch, frame_count=5)
    frames = list(FrameSampler(str(tmp_path)).sample("input.mp4", 10.0, ExtractionOptions(interval=2.0)))
    assert len(frames) == 5


def test_raw_frames_are_removed_after_sampling(monkeypatch, tmp_path):
    install_fake_decoder(monkeypatch, frame_count=2)
    list(FrameSampler(str(tmp_path)).sample("input.mp4", 2.0, ExtractionOptions(interval=1.0)))
    assert os.listdir(tmp_path) == []


def test_resize_fits_within_bounds_keeping_aspect_ratio():
    data, width, height = encode_frame(make_png(320, 240), ExtractionOptions(max_width=160))
    assert (width, height) == (160, 120)
    with Image.open(io.BytesIO(data)) as image:
        assert image.size == (160, 120)


def test_resize_uses_the_tighter_bound():
    _, width, height = encode_frame(make_png(320, 240), ExtractionOptions(max_width=200, max_height=60))
    assert (width, height) == (80, 60)


def test_resize_never_upscales():
    _, width, height = encode_frame(make_png(320, 240), ExtractionOptions(max_width=1000, max_height=1000))
    assert (width, height) == (320, 240)


@pytest.mark.parametrize("fmt, pil_format", [("png", "PNG"), ("jpeg", "JPEG"), ("webp", "WEBP")])
def test_encode_produces_requested_format(fmt, pil_format):
    data, width, height = encode_frame(make_png(64, 48), ExtractionOptions(format=fmt, quality=50))
    with Image.open(io.BytesIO(data)) as image:
        assert image.format == pil_format
        assert image.size == (width, height) == (64, 48)


def test_jpeg_quality_changes_output_size():
    noisy = Image.effect_noise((128, 128), 64).convert("RGB")
    buffer = io.BytesIO()
    noisy.save(buffer, format="PNG")

    low, _, _ = encode_frame(buffer.getvalue(), ExtractionOptions(format="jpeg", quality=10))
    high, _, _ = encode_frame(buffer.getvalue(), ExtractionOptions(format="jpeg", quality=95))
    assert len(low) < len(high)
