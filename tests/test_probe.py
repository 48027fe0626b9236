import ffmpeg
import pytest

from frame_worker.exceptions import SourceMediaError
from frame_worker.pipeline import probe as probe_module
from frame_worker.pipeline.probe import probe_media


def _probe_result(duration="12.5", streams=None):
    if streams is None:
        streams = [
            {"codec_type": "audio", "codec_name": "aac"},
            {"codec_type": "video", "codec_name": "h264", "width": 1280, "height": 720,
             "r_frame_rate": "30000/1001"},
        ]
    return {"format": {"duration": duration}, "streams": streams}


@pytest.fixture
def source_file(tmp_path):
    path = tmp_path / "input.mp4"
    path.write_bytes(b"\x00" * 16)
    return str(path)


def test_probe_reads_video_stream(monkeypatch, source_file):
    monkeypatch.setattr(probe_module.ffmpeg, "probe", lambda path: _probe_result())

    info = probe_media(source_file)

    assert info.duration == 12.5
    assert (info.width, info.height) == (1280, 720)
    assert info.codec == "h264"
    assert info.frame_rate == pytest.approx(29.97, rel=1e-3)


def test_probe_rejects_sources_over_the_duration_cap(monkeypatch, source_file):
    monkeypatch.setattr(probe_module.ffmpeg, "probe", lambda path: _probe_result(duration="61.2"))

    with pytest.raises(SourceMediaError, match="exceeds maximum"):
        probe_media(source_file, max_duration=60.0)


def test_probe_accepts_exactly_the_cap(monkeypatch, source_file):
    monkeypatch.setattr(probe_module.ffmpeg, "probe", lambda path: _probe_result(duration="60.0"))
    assert probe_media(source_file, max_duration=60.0).duration == 60.0


def test_probe_requires_a_video_stream(monkeypatch, source_file):
    monkeypatch.setattr(
        probe_module.ffmpeg, "probe",
        lambda path: _probe_result(streams=[{"codec_type": "audio"}])
    )
    with pytest.raises(SourceMediaError, match="No video stream"):
        probe_media(source_file)


def test_probe_wraps_ffmpeg_errors(monkeypatch, source_file):
    def broken_probe(path):
        raise ffmpeg.Error("ffprobe", b"", b"moov atom not found")

    monkeypatch.setattr(probe_module.ffmpeg, "probe", broken_probe)

    with pytest.raises(SourceMediaError, match="moov atom not found"):
        probe_media(source_file)


def test_probe_missing_file(tmp_path):
    with pytest.raises(SourceMediaError):
        probe_media(str(tmp_path / "missing.mp4"))


def test_frame_rate_defaults_when_unparseable(monkeypatch, source_file):
    streams = [{"codec_type": "video", "width": 10, "height": 10, "r_frame_rate": "0/0"}]
    monkeypatch.setattr(probe_module.ffmpeg, "probe", lambda path: _probe_result(streams=streams))
    assert probe_media(source_file).frame_rate == 30.0
