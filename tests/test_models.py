import pytest
from pydantic import ValidationError as PydanticValidationError

from frame_worker.models import (
    ExtractionJob,
    ExtractionOptions,
    JobStatus,
    JobStatusView,
    WorkItem,
    can_transition,
    estimate_total_frames,
)


def test_options_defaults():
    options = ExtractionOptions()
    assert options.interval == 1.0
    assert options.format == "png"
    assert options.quality == 90
    assert options.max_width is None
    assert options.max_height is None


def test_options_accept_camel_case_and_field_names():
    assert ExtractionOptions.model_validate({"maxWidth": 640}).max_width == 640
    assert ExtractionOptions(max_height=480).max_height == 480


@pytest.mark.parametrize("raw", [
    {"interval": 0.1},
    {"interval": 0},
    {"interval": 60.5},
    {"quality": 0},
    {"quality": 101},
    {"format": "gif"},
    {"maxWidth": 0},
    {"maxHeight": 5000},
])
def test_options_out_of_range_are_rejected(raw):
    with pytest.raises(PydanticValidationError):
        ExtractionOptions.model_validate(raw)


def test_options_boundaries_are_accepted():
    assert ExtractionOptions(interval=60).interval == 60
    assert ExtractionOptions(interval=0.11).interval == 0.11
    assert ExtractionOptions(quality=1, max_width=4096).quality == 1


def test_options_are_immutable():
    options = ExtractionOptions()
    with pytest.raises(PydanticValidationError):
        options.interval = 5


def test_options_payload_uses_camel_case_and_drops_unset_bounds():
    payload = ExtractionOptions(interval=2, format="jpeg", max_width=100).to_payload()
    assert payload == {"interval": 2.0, "format": "jpeg", "quality": 90, "maxWidth": 100}


@pytest.mark.parametrize("duration, interval, expected", [
    (10.0, 2.0, 6),
    (10.0, 3.0, 4),
    (0.3, 0.15, 3),
    (60.0, 60.0, 2),
    (0.5, 1.0, 1),
])
def test_estimate_total_frames(duration, interval, expected):
    assert estimate_total_frames(duration, interval) == expected


def test_status_transitions():
    assert can_transition(JobStatus.PENDING, JobStatus.PROCESSING)
    assert can_transition(JobStatus.PENDING, JobStatus.FAILED)
    assert can_transition(JobStatus.PROCESSING, JobStatus.PROCESSING)
    assert not can_transition(JobStatus.PENDING, JobStatus.COMPLETED)
    assert not can_transition(JobStatus.COMPLETED, JobStatus.FAILED)
    assert not can_transition(JobStatus.FAILED, JobStatus.PROCESSING)
    assert not can_transition(JobStatus.PROCESSING, JobStatus.PENDING)


def test_work_item_payload_restores_options():
    item = WorkItem(
        key="job-1", job_id="job-1", video_id="video-1", source_key="videos/a.mp4",
        duration=12.5, options=ExtractionOptions(interval=0.5, format="webp", quality=70),
    )
    restored = WorkItem.from_payload("job-1", item.to_payload(), attempt=2)
    assert restored.options == item.options
    assert restored.attempt == 2
    assert restored.duration == 12.5


def test_status_view_caps_progress_and_omits_missing_fields():
    job = ExtractionJob(
        id="job-1", video_id="video-1", status=JobStatus.PROCESSING,
        options=ExtractionOptions(), total_frames=5, progress=120, processed_frames=3,
    )
    body = JobStatusView.from_job(job).to_response()
    assert body["progress"] == 100
    assert body["extractedFrames"] == 3
    assert body["totalFrames"] == 5
    assert body["status"] == "processing"
    assert "frames" not in body
    assert "error" not in body
