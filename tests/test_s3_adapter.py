import pytest
from botocore.stub import Stubber

from frame_worker.adapters.s3_adapter import S3ObjectStore
from frame_worker.exceptions import StorageError


@pytest.fixture
def s3_store():
    store = S3ObjectStore("frames-bucket", region="us-east-1", prefix="dev/",
                          public_url="https://cdn.example.com/")
    store.connect()
    with Stubber(store.s3) as stubber:
        yield store, stubber


def test_upload_applies_prefix_and_content_type(s3_store):
    store, stubber = s3_store
    stubber.add_response(
        "put_object", {},
        {"Bucket": "frames-bucket", "Key": "dev/frames/v/j/frame_0001.png",
         "Body": b"png", "ContentType": "image/png"}
    )

    assert store.upload("frames/v/j/frame_0001.png", b"png", "image/png") == "frames/v/j/frame_0001.png"
    stubber.assert_no_pending_responses()


def test_exists_treats_404_as_missing(s3_store):
    store, stubber = s3_store
    stubber.add_client_error("head_object", service_error_code="404", http_status_code=404)
    stubber.add_client_error("head_object", service_error_code="AccessDenied", http_status_code=403)

    assert store.exists("frames/missing.png") is False
    with pytest.raises(StorageError):
        store.exists("frames/forbidden.png")


def test_download_errors_become_storage_errors(s3_store):
    store, stubber = s3_store
    stubber.add_client_error("get_object", service_error_code="NoSuchKey", http_status_code=404)

    with pytest.raises(StorageError):
        store.download("frames/missing.png")


def test_public_url_is_used_for_retrieval(s3_store):
    store, _ = s3_store
    assert store.signed_url("frames/a.png", 3600) == "https://cdn.example.com/dev/frames/a.png"
