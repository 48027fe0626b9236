import io
import logging
import zipfile

import pytest
from PIL import Image

from frame_worker.archive import ArchiveStreamer
from frame_worker.exceptions import NotFoundError, StorageError, ValidationError
from frame_worker.orchestrator import JobOrchestrator
from frame_worker.processor import ExtractionWorker

from conftest import fake_prober, install_fake_decoder


@pytest.fixture
def completed_job(monkeypatch, config, ledger, queue, store, video):
    install_fake_decoder(monkeypatch, frame_count=3)
    view = JobOrchestrator(ledger, queue, store).start_extraction(video.id, {"interval": 5.0})
    ExtractionWorker(config, ledger, store, queue, prober=fake_prober()).run_once()
    return view


@pytest.fixture
def streamer(ledger, store):
    return ArchiveStreamer(ledger, store)


def test_archive_contains_frames_in_order(streamer, completed_job):
    archive = streamer.download_archive(job_id=completed_job.id)

    assert archive.filename == "holiday clip.final_frames.zip"
    assert archive.frame_count == 3

    data = b"".join(archive.chunks)
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        assert zf.namelist() == ["frame_0001.png", "frame_0002.png", "frame_0003.png"]
        with Image.open(io.BytesIO(zf.read("frame_0002.png"))) as image:
            assert image.size == (320, 240)


def test_archive_streams_one_chunk_per_frame(streamer, completed_job):
    chunks = list(streamer.download_archive(job_id=completed_job.id).chunks)
    # Three frame chunks plus the central directory.
    assert len(chunks) == 4


def test_archive_by_video(streamer, completed_job, video):
    data = b"".join(streamer.download_archive(video_id=video.id).chunks)
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        assert len(zf.namelist()) == 3


def test_content_disposition_quotes_filename(streamer, completed_job):
    archive = streamer.download_archive(job_id=completed_job.id)
    assert archive.content_disposition == (
        'attachment; filename="holiday clip.final_frames.zip"; '
        "filename*=UTF-8''holiday%20clip.final_frames.zip"
    )


def test_empty_frame_set_is_not_found(streamer, ledger, video):
    with pytest.raises(NotFoundError, match="No frames found"):
        streamer.download_archive(video_id=video.id)


def test_selector_is_required(streamer):
    with pytest.raises(ValidationError):
        streamer.download_archive()
    with pytest.raises(ValidationError):
        streamer.list_frames()


def test_job_selector_wins_over_video(streamer, completed_job):
    frames = streamer.list_frames(video_id="other-video", job_id=completed_job.id)
    assert [f.frame_number for f in frames] == [1, 2, 3]
    assert frames[0].url.endswith("frame_0001.png?expires_in=3600")


def test_missing_object_aborts_stream(streamer, completed_job, ledger, store):
    frames = ledger.list_frames_by_job(completed_job.id)
    store.delete(frames[1].storage_key)

    chunks = streamer.download_archive(job_id=completed_job.id).chunks
    assert next(chunks)
    with pytest.raises(StorageError):
        next(chunks)


def test_aborted_stream_is_logged_once_without_traceback(caplog, streamer, completed_job, ledger, store):
    frames = ledger.list_frames_by_job(completed_job.id)
    store.delete(frames[1].storage_key)

    chunks = streamer.download_archive(job_id=completed_job.id).chunks
    next(chunks)
    with caplog.at_level(logging.ERROR, logger="frame_worker"):
        with pytest.raises(StorageError):
            next(chunks)

    errors = [r for r in caplog.records if r.levelno >= logging.ERROR]
    assert len(errors) == 1
    assert "aborted at frame 2" in errors[0].getMessage()
    assert errors[0].exc_info is None
