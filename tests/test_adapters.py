import pytest

from frame_worker.adapters.base import QueueState
from frame_worker.adapters.local_adapter import LocalObjectStore
from frame_worker.adapters.memory_adapter import MemoryWorkQueue
from frame_worker.exceptions import StorageError
from frame_worker.models import ExtractionOptions, JobStatus


@pytest.fixture
def local_store(tmp_path):
    store = LocalObjectStore(str(tmp_path / "storage"), base_url="http://api.test/")
    store.connect()
    return store


def test_local_store_round_trip(local_store):
    key = "frames/video-1/job-1/frame_0001.png"
    local_store.upload(key, b"png-bytes", "image/png")

    assert local_store.exists(key)
    assert local_store.download(key) == b"png-bytes"
    assert local_store.signed_url(key, 3600) == f"http://api.test/storage/{key}"

    local_store.delete(key)
    assert not local_store.exists(key)


def test_local_store_leaves_no_partial_files(local_store, tmp_path):
    local_store.upload("a/b.png", b"data", "image/png")
    assert sorted(p.name for p in (tmp_path / "storage" / "a").iterdir()) == ["b.png"]


def test_local_store_missing_object(local_store):
    with pytest.raises(StorageError):
        local_store.download("frames/missing.png")


def test_local_store_rejects_keys_outside_base(local_store):
    with pytest.raises(StorageError):
        local_store.upload("../escape.png", b"x", "image/png")


def test_memory_ledger_refuses_leaving_terminal_states(ledger, video):
    job = ledger.create_job(video.id, ExtractionOptions(), 3)
    assert ledger.fail_job(job.id, "Cancelled by user")

    assert not ledger.mark_processing(job.id)
    assert not ledger.complete_job(job.id, 3)
    assert ledger.get_job(job.id).status == JobStatus.FAILED


def test_memory_ledger_progress_never_goes_backwards(ledger, video):
    job = ledger.create_job(video.id, ExtractionOptions(), 10)
    ledger.mark_processing(job.id)

    ledger.update_progress(job.id, 50, 5)
    ledger.update_progress(job.id, 30, 3)

    stored = ledger.get_job(job.id)
    assert (stored.progress, stored.processed_frames) == (50, 5)


def test_memory_ledger_add_frame_is_idempotent(ledger, video):
    job = ledger.create_job(video.id, ExtractionOptions(), 1)
    first = ledger.add_frame(job.id, video.id, 1, 0.0, "k1", 10, 10, "png")
    again = ledger.add_frame(job.id, video.id, 1, 0.0, "k1", 10, 10, "png")

    assert first.id == again.id
    assert len(ledger.list_frames_by_job(job.id)) == 1


def test_memory_ledger_completion_keeps_larger_total(ledger, video):
    job = ledger.create_job(video.id, ExtractionOptions(), 6)
    ledger.mark_processing(job.id)

    assert ledger.complete_job(job.id, 5)
    stored = ledger.get_job(job.id)
    assert stored.total_frames == 6
    assert stored.processed_frames == 5
    assert stored.progress == 100


def test_queue_dispatch_is_deduplicated_by_key(queue):
    assert queue.dispatch("job-1", {"n": 1})
    assert not queue.dispatch("job-1", {"n": 2})
    assert queue.state("job-1") == QueueState.WAITING


def test_queue_remove_only_before_claim(queue):
    queue.dispatch("job-1", _payload("job-1"))
    queue.dispatch("job-2", _payload("job-2"))

    assert queue.remove("job-1")
    assert queue.state("job-1") is None

    item = queue.claim()
    assert item.key == "job-2"
    assert item.attempt == 1
    assert queue.state("job-2") == QueueState.ACTIVE
    assert not queue.remove("job-2")


def test_queue_delays_retries_until_backoff_elapses(queue, clock):
    queue.dispatch("job-1", _payload("job-1"))
    queue.claim()
    queue.retry("job-1", "boom", 2.0)

    assert queue.state("job-1") == QueueState.DELAYED
    assert queue.claim() is None

    clock.advance(2.0)
    item = queue.claim()
    assert item.key == "job-1"
    assert item.attempt == 2
    assert queue.attempts("job-1") == 2


def test_queue_finished_items_are_not_claimed(queue):
    queue.dispatch("job-1", _payload("job-1"))
    queue.claim()
    queue.complete("job-1")

    assert queue.state("job-1") == QueueState.COMPLETED
    assert queue.claim() is None
    assert not queue.remove("job-1")


def test_queue_reclaims_active_item_after_lease_expires(clock):
    queue = MemoryWorkQueue(clock=clock, lease_sec=30.0)
    queue.dispatch("job-1", _payload("job-1"))
    assert queue.claim().attempt == 1

    clock.advance(29.0)
    assert queue.claim() is None

    clock.advance(1.0)
    item = queue.claim()
    assert item.key == "job-1"
    assert item.attempt == 2
    assert queue.state("job-1") == QueueState.ACTIVE


def test_queue_heartbeat_renews_lease(clock):
    queue = MemoryWorkQueue(clock=clock, lease_sec=30.0)
    queue.dispatch("job-1", _payload("job-1"))
    queue.claim()

    clock.advance(20.0)
    queue.heartbeat("job-1")
    clock.advance(20.0)
    assert queue.claim() is None

    clock.advance(10.0)
    assert queue.claim().attempt == 2


def test_queue_heartbeat_ignores_items_that_are_not_active(queue):
    queue.dispatch("job-1", _payload("job-1"))
    queue.heartbeat("job-1")
    queue.heartbeat("missing")

    assert queue.state("job-1") == QueueState.WAITING
    assert queue.claim().attempt == 1


def _payload(job_id):
    return {
        "jobId": job_id,
        "videoId": "video-1",
        "sourceKey": "videos/video-1/source.mp4",
        "duration": 4.0,
        "options": {"interval": 2.0},
    }
