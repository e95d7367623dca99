"""Blob storage adapters: objects on local disk or in S3-compatible storage."""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

import boto3
import structlog
from botocore.exceptions import ClientError

from ..common.settings import GatewaySettings
from .content_types import DEFAULT_CONTENT_TYPE
from .errors import InvalidPath, ObjectNotFound, StoreFailure

LOGGER = structlog.get_logger("bucketdav.storage")

CHUNK_SIZE = 64 * 1024
NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass(frozen=True)
class ObjectRecord:
    """Metadata of one stored object as reported by the store."""

    key: str
    size: int
    last_modified: datetime
    content_type: Optional[str] = None
    etag: Optional[str] = None


@dataclass(frozen=True)
class StoredObject:
    record: ObjectRecord
    body: AsyncIterator[bytes]
    release: Optional[Callable[[], None]] = None

    async def aclose(self) -> None:
        """Release the body without reading it."""
        await self.body.aclose()
        if self.release is not None:
            self.release()


def sanitize_key(storage_dir: Path, key: str) -> Path:
    root = storage_dir.resolve()
    candidate = root.joinpath(*key.split("/"))
    resolved = candidate.resolve(strict=False)
    if resolved == root or not resolved.is_relative_to(root):
        raise InvalidPath(reason="key escapes storage root")
    return resolved


class BlobStore:
    async def get(self, key: str) -> StoredObject:  # pragma: no cover - interface
        raise NotImplementedError

    async def put(self, key: str, data: bytes, content_type: str) -> ObjectRecord:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def list(self, prefix: str) -> list[ObjectRecord]:
        raise NotImplementedError

    def status(self) -> dict[str, object]:
        raise NotImplementedError


@dataclass
class CircuitBreaker:
    """Rejects calls for ``reset_timeout`` seconds after ``failure_threshold`` consecutive failures."""

    failure_threshold: int
    reset_timeout: float
    consecutive_failures: int = 0
    opened_at: Optional[float] = None

    def __post_init__(self) -> None:
        self.failure_threshold = max(1, self.failure_threshold)
        self.reset_timeout = max(0.0, self.reset_timeout)

    @property
    def is_open(self) -> bool:
        if self.opened_at is None:
            return False
        if time.monotonic() - self.opened_at < self.reset_timeout:
            return True
        # cool-down elapsed: let the next call through with a clean slate
        self.record_success()
        return False

    def allow_request(self) -> bool:
        return not self.is_open

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self.opened_at = None

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.failure_threshold:
            self.opened_at = time.monotonic()


async def _iter_file(path: Path) -> AsyncIterator[bytes]:
    with path.open("rb") as file_obj:
        while True:
            chunk = await asyncio.to_thread(file_obj.read, CHUNK_SIZE)
            if not chunk:
                break
            yield chunk


class LocalBlobStore(BlobStore):
    """Objects live under ``objects/``; content type and etag in ``meta/`` sidecars."""

    def __init__(self, settings: GatewaySettings):
        self._settings = settings
        self._root = settings.storage_path
        self._objects = self._root / "objects"
        self._meta = self._root / "meta"
        self._tmp = self._root / "tmp"

    def _object_path(self, key: str) -> Path:
        if key.endswith("/"):
            raise InvalidPath(reason="directory keys cannot hold data on local storage")
        return sanitize_key(self._objects, key)

    def _meta_path(self, key: str) -> Path:
        # flat, hash-named sidecars never collide with object keys such as "a.json/b"
        return self._meta / f"{hashlib.sha256(key.encode('utf-8')).hexdigest()}.json"

    def _read_meta(self, key: str) -> dict:
        path = self._meta_path(key)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError):
            LOGGER.warning("object_metadata_unreadable", key=key)
            return {}

    def _record(self, key: str, path: Path) -> ObjectRecord:
        stat = path.stat()
        meta = self._read_meta(key)
        uploaded = meta.get("uploaded")
        last_modified = (
            datetime.fromisoformat(uploaded) if uploaded else datetime.fromtimestamp(stat.st_mtime, tz=UTC)
        )
        return ObjectRecord(
            key=key,
            size=stat.st_size,
            last_modified=last_modified,
            content_type=meta.get("content_type"),
            etag=meta.get("etag"),
        )

    def _stat(self, key: str) -> tuple[ObjectRecord, Path]:
        path = self._object_path(key)
        if not path.is_file():
            raise ObjectNotFound(key)
        try:
            record = self._record(key, path)
        except FileNotFoundError as exc:
            raise ObjectNotFound(key) from exc
        if record.content_type is None:
            record = ObjectRecord(
                key=record.key,
                size=record.size,
                last_modified=record.last_modified,
                content_type=DEFAULT_CONTENT_TYPE,
                etag=record.etag,
            )
        return record, path

    async def get(self, key: str) -> StoredObject:
        record, path = await asyncio.to_thread(self._stat, key)
        return StoredObject(record=record, body=_iter_file(path))

    def _write(self, key: str, data: bytes, content_type: str) -> ObjectRecord:
        """Stage object and sidecar, then swap them in; a failed object swap restores the old sidecar."""
        path = self._object_path(key)
        meta_path = self._meta_path(key)
        for directory in (self._tmp, self._meta, path.parent):
            directory.mkdir(parents=True, exist_ok=True)

        uploaded = datetime.now(UTC)
        etag = hashlib.md5(data).hexdigest()
        token = uuid.uuid4().hex
        staged_object = self._tmp / token
        staged_meta = self._tmp / f"{token}.json"
        previous_meta = meta_path.read_bytes() if meta_path.is_file() else None
        try:
            staged_object.write_bytes(data)
            staged_meta.write_text(
                json.dumps({"key": key, "content_type": content_type, "etag": etag, "uploaded": uploaded.isoformat()}),
                encoding="utf-8",
            )
            os.replace(staged_meta, meta_path)
            try:
                os.replace(staged_object, path)
            except OSError:
                if previous_meta is None:
                    meta_path.unlink(missing_ok=True)
                else:
                    meta_path.write_bytes(previous_meta)
                raise
        finally:
            staged_object.unlink(missing_ok=True)
            staged_meta.unlink(missing_ok=True)
        return ObjectRecord(key=key, size=len(data), last_modified=uploaded, content_type=content_type, etag=etag)

    async def put(self, key: str, data: bytes, content_type: str) -> ObjectRecord:
        try:
            return await asyncio.to_thread(self._write, key, data, content_type)
        except OSError as exc:
            raise StoreFailure("Failed to upload file", reason=str(exc)) from exc

    def _prune(self, path: Path) -> None:
        root = self._objects.resolve()
        parent = path.parent
        while parent != root and parent.exists():
            try:
                parent.rmdir()
            except OSError:
                break
            parent = parent.parent

    def _remove(self, key: str) -> None:
        path = self._object_path(key)
        # a directory, or a path running through a file, holds no object: nothing to delete
        if not path.is_file():
            return
        try:
            path.unlink()
        except (FileNotFoundError, NotADirectoryError):
            return
        self._meta_path(key).unlink(missing_ok=True)
        self._prune(path)

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(self._remove, key)
        except OSError as exc:
            raise StoreFailure("Failed to delete file", reason=str(exc)) from exc

    def _scan(self, prefix: str) -> list[ObjectRecord]:
        if not self._objects.exists():
            return []
        root = self._objects.resolve()
        records = []
        for item in root.rglob("*"):
            if not item.is_file():
                continue
            key = item.relative_to(root).as_posix()
            if not key.startswith(prefix):
                continue
            try:
                records.append(self._record(key, item))
            except FileNotFoundError:
                continue
        records.sort(key=lambda record: record.key)
        return records

    async def list(self, prefix: str) -> list[ObjectRecord]:
        try:
            return await asyncio.to_thread(self._scan, prefix)
        except OSError as exc:
            raise StoreFailure("Failed to list files", reason=str(exc)) from exc

    def status(self) -> dict[str, object]:
        storage = self._root
        storage.mkdir(parents=True, exist_ok=True)
        return {
            "backend": "local",
            "storage_path": str(storage),
            "writable": storage.exists() and os.access(storage, os.W_OK),
        }


def _is_not_found(exc: Exception) -> bool:
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code", "") in NOT_FOUND_CODES
    return False


def _strip_etag(value: Optional[str]) -> Optional[str]:
    return value.strip('"') if value else None


class S3BlobStore(BlobStore):
    def __init__(self, settings: GatewaySettings):
        self._settings = settings
        session = boto3.session.Session()
        client_args: dict[str, Optional[str]] = {
            "endpoint_url": settings.s3_endpoint_url,
            "region_name": settings.s3_region,
        }
        self._client = session.client("s3", **{k: v for k, v in client_args.items() if v})
        self._bucket = settings.s3_bucket
        self._max_retries = max(0, settings.s3_max_retries)
        self._retry_base = max(0.0, settings.s3_retry_base_seconds)
        self._retry_max = max(self._retry_base, settings.s3_retry_max_seconds)
        self._breaker = CircuitBreaker(
            failure_threshold=max(1, settings.s3_circuit_breaker_failures),
            reset_timeout=max(0.0, settings.s3_circuit_breaker_reset_seconds),
        )

    async def get(self, key: str) -> StoredObject:
        try:
            response = await self._call_with_retry(
                self._client.get_object,
                Bucket=self._bucket,
                Key=self._sanitize_key(key),
            )
        except ClientError as exc:
            if _is_not_found(exc):
                raise ObjectNotFound(key) from exc
            raise StoreFailure("Failed to read file", reason=str(exc)) from exc
        record = ObjectRecord(
            key=key,
            size=int(response.get("ContentLength", 0)),
            last_modified=response.get("LastModified") or datetime.now(UTC),
            content_type=response.get("ContentType") or DEFAULT_CONTENT_TYPE,
            etag=_strip_etag(response.get("ETag")),
        )
        body = response["Body"]
        return StoredObject(record=record, body=self._stream(body), release=getattr(body, "close", None))

    async def _stream(self, body) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await asyncio.to_thread(body.read, CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            close = getattr(body, "close", None)
            if close is not None:
                close()

    async def put(self, key: str, data: bytes, content_type: str) -> ObjectRecord:
        try:
            response = await self._call_with_retry(
                self._client.put_object,
                Bucket=self._bucket,
                Key=self._sanitize_key(key),
                Body=data,
                ContentType=content_type,
            )
        except ClientError as exc:
            raise StoreFailure("Failed to upload file", reason=str(exc)) from exc
        return ObjectRecord(
            key=key,
            size=len(data),
            last_modified=datetime.now(UTC),
            content_type=content_type,
            etag=_strip_etag((response or {}).get("ETag")),
        )

    async def delete(self, key: str) -> None:
        try:
            await self._call_with_retry(
                self._client.delete_object,
                Bucket=self._bucket,
                Key=self._sanitize_key(key),
            )
        except ClientError as exc:
            if _is_not_found(exc):
                return
            raise StoreFailure("Failed to delete file", reason=str(exc)) from exc

    async def list(self, prefix: str) -> list[ObjectRecord]:
        records: list[ObjectRecord] = []
        kwargs: dict[str, object] = {"Bucket": self._bucket, "Prefix": prefix}
        while True:
            try:
                page = await self._call_with_retry(self._client.list_objects_v2, **kwargs)
            except ClientError as exc:
                raise StoreFailure("Failed to list files", reason=str(exc)) from exc
            for item in page.get("Contents", []):
                records.append(
                    ObjectRecord(
                        key=item["Key"],
                        size=int(item.get("Size", 0)),
                        last_modified=item["LastModified"],
                        etag=_strip_etag(item.get("ETag")),
                    )
                )
            if not page.get("IsTruncated"):
                return records
            kwargs["ContinuationToken"] = page["NextContinuationToken"]

    def status(self) -> dict[str, object]:
        return {
            "backend": "s3",
            "bucket": self._bucket,
            "endpoint": self._settings.s3_endpoint_url,
            "circuit_open": self._breaker.is_open,
        }

    def _sanitize_key(self, key: str) -> str:
        if ".." in key:
            raise InvalidPath(reason="path traversal")
        return key.lstrip("/")

    async def _call_with_retry(self, func: Callable[..., object], **kwargs) -> object:
        if not self._breaker.allow_request():
            raise StoreFailure(reason="storage backend temporarily unavailable")

        attempt = 0
        while True:
            try:
                result = await asyncio.to_thread(func, **kwargs)
                self._breaker.record_success()
                return result
            except ClientError as exc:
                if _is_not_found(exc):
                    self._breaker.record_success()
                    raise
                failure = exc
            except Exception as exc:  # noqa: BLE001
                failure = exc
            attempt += 1
            if attempt > self._max_retries:
                self._breaker.record_failure()
                raise StoreFailure(reason=str(failure)) from failure
            delay = min(self._retry_base * (2 ** (attempt - 1)), self._retry_max)
            LOGGER.warning("s3_call_retry", operation=getattr(func, "__name__", "unknown"), attempt=attempt, error=str(failure))
            if delay:
                await asyncio.sleep(delay)


def build_store(settings: GatewaySettings) -> BlobStore:
    if settings.s3_bucket:
        if not settings.s3_endpoint_url:
            raise RuntimeError("S3 configuration incomplete for gateway")
        return S3BlobStore(settings)
    return LocalBlobStore(settings)
