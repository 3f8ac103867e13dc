import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from file_uploader.domain.enums import ErrorKind
from file_uploader.infrastructure.storage.base import StoreError, StoreTransportError
from file_uploader.infrastructure.storage.object_storage import S3ObjectStore
from file_uploader.services.failure_classifier import classify_failure

pytestmark = pytest.mark.anyio


def client_error(code, status, operation="HeadObject"):
    return ClientError(
        {"Error": {"Code": code, "Message": f"{code} message"}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class StubClient:
    """Stands in for the aioboto3 S3 client; each method returns or raises what it was given."""

    def __init__(self, **responses):
        self.responses = responses
        self.requests = []

    def __getattr__(self, name):
        async def call(**kwargs):
            self.requests.append((name, kwargs))
            outcome = self.responses.get(name, {})
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        return call


def connected_store(**responses):
    store = S3ObjectStore(bucket="media", region="eu-west-1")
    store._client = StubClient(**responses)
    return store


def test_object_url_forms():
    assert S3ObjectStore(bucket="media", region="eu-west-1").object_url("uploads/a b.png") == (
        "https://media.s3.eu-west-1.amazonaws.com/uploads/a%20b.png"
    )
    spaces = S3ObjectStore(bucket="media", region="nyc3", endpoint_url="https://nyc3.digitaloceanspaces.com")
    assert spaces.object_url("uploads/a.png") == "https://nyc3.digitaloceanspaces.com/media/uploads/a.png"
    cdn = S3ObjectStore(bucket="media", region="auto", public_base_url="https://cdn.example.com")
    assert cdn.object_url("uploads/a.png") == "https://cdn.example.com/uploads/a.png"


async def test_requires_connect():
    store = S3ObjectStore(bucket="media", region="eu-west-1")
    with pytest.raises(RuntimeError):
        await store.head_bucket()


async def test_multipart_requests_are_shaped_for_s3():
    store = connected_store(
        create_multipart_upload={"UploadId": "abc"},
        upload_part={"ETag": '"p1"'},
        complete_multipart_upload={"ETag": '"final-1"'},
    )

    upload_id = await store.create_multipart_upload("k.png", content_type="image/png", metadata={"a": "b"})
    etag = await store.upload_part("k.png", upload_id, 1, b"data")
    final = await store.complete_multipart_upload("k.png", upload_id, [(1, etag)])

    assert (upload_id, etag, final) == ("abc", '"p1"', '"final-1"')
    name, kwargs = store._client.requests[-1]
    assert name == "complete_multipart_upload"
    assert kwargs["MultipartUpload"] == {"Parts": [{"PartNumber": 1, "ETag": '"p1"'}]}
    assert kwargs["Bucket"] == "media"


async def test_head_object_missing_is_none():
    store = connected_store(head_object=client_error("404", 404))
    assert await store.head_object("missing.png") is None


async def test_head_object_maps_response():
    store = connected_store(
        head_object={"ContentLength": 42, "ETag": '"e"', "ContentType": "image/png", "Metadata": {"x": "1"}}
    )
    head = await store.head_object("k.png")
    assert head.size_bytes == 42
    assert head.metadata == {"x": "1"}


async def test_client_errors_become_classified_store_errors():
    store = connected_store(delete_object=client_error("AccessDenied", 403, "DeleteObject"))

    with pytest.raises(StoreError) as excinfo:
        await store.delete_object("k.png")

    assert excinfo.value.code == "AccessDenied"
    assert excinfo.value.status_code == 403
    assert classify_failure(excinfo.value).kind is ErrorKind.STORE_REJECTION


async def test_connection_errors_become_transport_errors():
    store = connected_store(upload_part=EndpointConnectionError(endpoint_url="https://s3.example.com"))

    with pytest.raises(StoreTransportError) as excinfo:
        await store.upload_part("k.png", "abc", 2, b"data")

    assert classify_failure(excinfo.value).retryable
