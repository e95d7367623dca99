from __future__ import annotations

from datetime import UTC, datetime

import pytest
from botocore.exceptions import ClientError

from bucketdav.common.settings import GatewaySettings
from bucketdav.gateway.errors import ObjectNotFound, StoreFailure
from bucketdav.gateway.storage import CircuitBreaker, S3BlobStore, build_store

UPLOADED = datetime(2024, 5, 1, 12, 30, tzinfo=UTC)


def client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeBody:
    def __init__(self, payload: bytes) -> None:
        self._payload = payload
        self.closed = False

    def read(self, size: int = -1) -> bytes:
        if size < 0:
            size = len(self._payload)
        chunk, self._payload = self._payload[:size], self._payload[size:]
        return chunk

    def close(self) -> None:
        self.closed = True


class FakeClient:
    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.calls: list[str] = []
        self.failures_remaining = 0
        self.page_size = 1000
        self.last_body: FakeBody | None = None

    def _maybe_fail(self, operation: str) -> None:
        self.calls.append(operation)
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise RuntimeError(f"{operation} failure")

    def put_object(self, **kwargs):
        self._maybe_fail("put_object")
        self.objects[kwargs["Key"]] = (kwargs["Body"], kwargs["ContentType"])
        return {"ETag": '"etag-1"'}

    def get_object(self, **kwargs):
        self._maybe_fail("get_object")
        if kwargs["Key"] not in self.objects:
            raise client_error("NoSuchKey", "GetObject")
        data, content_type = self.objects[kwargs["Key"]]
        self.last_body = FakeBody(data)
        return {
            "Body": self.last_body,
            "ContentType": content_type,
            "ContentLength": len(data),
            "LastModified": UPLOADED,
            "ETag": '"etag-1"',
        }

    def delete_object(self, **kwargs):
        self._maybe_fail("delete_object")
        self.objects.pop(kwargs["Key"], None)
        return {}

    def list_objects_v2(self, **kwargs):
        self._maybe_fail("list_objects_v2")
        keys = [key for key in sorted(self.objects) if key.startswith(kwargs["Prefix"])]
        start = int(kwargs.get("ContinuationToken", 0))
        page = keys[start : start + self.page_size]
        response = {
            "Contents": [
                {"Key": key, "Size": len(self.objects[key][0]), "LastModified": UPLOADED, "ETag": '"x"'}
                for key in page
            ],
            "IsTruncated": start + self.page_size < len(keys),
        }
        if response["IsTruncated"]:
            response["NextContinuationToken"] = str(start + self.page_size)
        return response


@pytest.fixture
def fake_client(monkeypatch):
    client = FakeClient()

    class DummySession:
        def client(self, *_args, **_kwargs):  # noqa: D401 - mimic boto3 session
            return client

    monkeypatch.setattr("bucketdav.gateway.storage.boto3.session.Session", lambda: DummySession())
    return client


def s3_settings(**overrides) -> GatewaySettings:
    values = dict(
        s3_bucket="bucket",
        s3_endpoint_url="http://example.com",
        s3_max_retries=2,
        s3_retry_base_seconds=0.0,
        s3_retry_max_seconds=0.0,
    )
    values.update(overrides)
    return GatewaySettings(**values)


@pytest.mark.asyncio
async def test_put_get_roundtrip(fake_client) -> None:
    store = S3BlobStore(s3_settings())
    record = await store.put("/notes/todo.txt", b"buy milk", "text/plain")
    assert record.size == 8
    assert record.etag == "etag-1"
    assert "notes/todo.txt" in fake_client.objects

    stored = await store.get("notes/todo.txt")
    data = b"".join([chunk async for chunk in stored.body])
    assert data == b"buy milk"
    assert stored.record.content_type == "text/plain"
    assert stored.record.last_modified == UPLOADED
    assert fake_client.last_body.closed is True


@pytest.mark.asyncio
async def test_get_missing_maps_to_not_found_without_retry(fake_client) -> None:
    store = S3BlobStore(s3_settings())
    with pytest.raises(ObjectNotFound):
        await store.get("missing.txt")
    assert fake_client.calls == ["get_object"]


@pytest.mark.asyncio
async def test_retries_until_success(fake_client) -> None:
    store = S3BlobStore(s3_settings())
    fake_client.failures_remaining = 1
    await store.put("key.bin", b"data", "application/octet-stream")
    assert fake_client.calls == ["put_object", "put_object"]


@pytest.mark.asyncio
async def test_exhausted_retries_raise_store_failure(fake_client) -> None:
    store = S3BlobStore(s3_settings(s3_max_retries=1))
    fake_client.failures_remaining = 5
    with pytest.raises(StoreFailure) as exc:
        await store.delete("key.bin")
    assert exc.value.status_code == 500
    assert fake_client.calls == ["delete_object", "delete_object"]


@pytest.mark.asyncio
async def test_delete_missing_is_not_an_error(fake_client) -> None:
    store = S3BlobStore(s3_settings())
    await store.delete("never-existed.txt")


@pytest.mark.asyncio
async def test_list_follows_continuation_tokens(fake_client) -> None:
    store = S3BlobStore(s3_settings())
    fake_client.page_size = 2
    for name in ["a", "b", "c", "d", "e"]:
        fake_client.objects[f"dir/{name}.txt"] = (name.encode(), "text/plain")
    fake_client.objects["elsewhere.txt"] = (b"x", "text/plain")

    records = await store.list("dir/")
    assert [record.key for record in records] == [f"dir/{name}.txt" for name in "abcde"]
    assert fake_client.calls.count("list_objects_v2") == 3
    assert all(record.content_type is None for record in records)


@pytest.mark.asyncio
async def test_circuit_breaker_blocks_after_failures(monkeypatch, fake_client) -> None:
    current_time = [0.0]
    monkeypatch.setattr("bucketdav.gateway.storage.time.monotonic", lambda: current_time[0])

    store = S3BlobStore(
        s3_settings(s3_max_retries=0, s3_circuit_breaker_failures=2, s3_circuit_breaker_reset_seconds=5.0)
    )
    fake_client.failures_remaining = 10

    for _ in range(2):
        with pytest.raises(StoreFailure):
            await store.list("")
    calls_before_open = len(fake_client.calls)
    assert store.status()["circuit_open"] is True

    with pytest.raises(StoreFailure):
        await store.list("")
    assert len(fake_client.calls) == calls_before_open

    fake_client.failures_remaining = 0
    current_time[0] += 6.0
    assert await store.list("") == []
    assert len(fake_client.calls) == calls_before_open + 1


def test_circuit_breaker_half_opens_after_timeout(monkeypatch) -> None:
    current_time = [100.0]
    monkeypatch.setattr("bucketdav.gateway.storage.time.monotonic", lambda: current_time[0])
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout=10.0)

    breaker.record_failure()
    assert breaker.allow_request()
    breaker.record_failure()
    assert breaker.is_open
    assert not breaker.allow_request()

    current_time[0] += 10.0
    assert breaker.allow_request()
    assert breaker.consecutive_failures == 0

    breaker.record_failure()
    assert breaker.allow_request()


def test_circuit_breaker_clamps_settings() -> None:
    breaker = CircuitBreaker(failure_threshold=0, reset_timeout=-1.0)
    assert breaker.failure_threshold == 1
    assert breaker.reset_timeout == 0.0


def test_build_store_selects_s3(fake_client) -> None:
    assert isinstance(build_store(s3_settings()), S3BlobStore)
