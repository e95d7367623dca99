"""Per-verb operations of the gateway.

Each operation resolves its path first, so a rejected path never reaches
the store, then performs a single store call and, for mutations, queues
listing invalidation on the request's background tasks before responding.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.parse import quote

import structlog
from fastapi import BackgroundTasks, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from opentelemetry import trace

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.schemas import UploadResult
from .content_types import content_type_for
from .errors import GatewayError, InvalidPath, PayloadTooLarge, StoreFailure
from .listing import DirectoryListing, http_date, render_multistatus
from .listing_cache import CacheCoordinator, CachedResponse
from .paths import base_name, directory_path, resolve_key, resolve_prefix
from .storage import BlobStore

LOGGER = structlog.get_logger("bucketdav.gateway")
TRACER = trace.get_tracer("bucketdav.gateway")

OBJECTS_STORED_COUNTER = GLOBAL_REGISTRY.register(Counter("bucketdav_objects_stored_total", "Objects written"))
OBJECTS_DELETED_COUNTER = GLOBAL_REGISTRY.register(Counter("bucketdav_objects_deleted_total", "Objects deleted"))
OBJECTS_SERVED_COUNTER = GLOBAL_REGISTRY.register(Counter("bucketdav_objects_served_total", "Objects fetched"))
BYTES_WRITTEN_COUNTER = GLOBAL_REGISTRY.register(Counter("bucketdav_bytes_written_total", "Bytes written to storage"))
BYTES_SERVED_COUNTER = GLOBAL_REGISTRY.register(Counter("bucketdav_bytes_served_total", "Bytes served from storage"))
LISTINGS_RENDERED_COUNTER = GLOBAL_REGISTRY.register(
    Counter("bucketdav_listings_rendered_total", "Directory listings rendered from storage")
)
UPLOAD_ITEM_FAILURES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("bucketdav_upload_item_failures_total", "Multi-upload submissions that failed")
)


@dataclass(frozen=True)
class Submission:
    """One named file inside a multi-upload request."""

    name: str
    data: bytes


def content_disposition(name: str) -> str:
    fallback = name.encode("ascii", "ignore").decode("ascii").replace('"', "")
    value = f'inline; filename="{fallback}"'
    if fallback != name:
        value += f"; filename*=UTF-8''{quote(name, safe='')}"
    return value


class Gateway:
    def __init__(
        self,
        store: BlobStore,
        cache: CacheCoordinator,
        *,
        cors_headers: Optional[dict[str, str]] = None,
        max_upload_bytes: Optional[int] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.cors_headers = dict(cors_headers or {})
        self.max_upload_bytes = max_upload_bytes

    def _check_size(self, size: int) -> None:
        if self.max_upload_bytes is not None and size > self.max_upload_bytes:
            raise PayloadTooLarge(f"File exceeds max size: {self.max_upload_bytes} bytes")

    def _text(self, body: str, status_code: int = status.HTTP_200_OK) -> PlainTextResponse:
        return PlainTextResponse(body, status_code=status_code, headers=self.cors_headers)

    async def fetch(self, raw_path: str, *, include_body: bool = True) -> Response:
        key = resolve_key(raw_path)
        with TRACER.start_as_current_span("gateway.fetch", attributes={"bucketdav.key": key}) as span:
            stored = await self.store.get(key)
            record = stored.record
            headers = {
                **self.cors_headers,
                "Content-Length": str(record.size),
                "Last-Modified": http_date(record.last_modified),
                "Content-Disposition": content_disposition(base_name(key)),
            }
            if record.etag:
                headers["ETag"] = f'"{record.etag}"'
            span.set_attribute("bucketdav.bytes", record.size)
            OBJECTS_SERVED_COUNTER.inc()
            LOGGER.info("object_served", key=key, bytes=record.size, head=not include_body)
            if not include_body:
                await stored.aclose()
                return Response(status_code=status.HTTP_200_OK, media_type=record.content_type, headers=headers)
            BYTES_SERVED_COUNTER.inc(record.size)
            return StreamingResponse(stored.body, media_type=record.content_type, headers=headers)

    async def store_object(self, raw_path: str, data: bytes, origin: str, background: BackgroundTasks) -> Response:
        key = resolve_key(raw_path)
        self._check_size(len(data))
        content_type = content_type_for(key)
        with TRACER.start_as_current_span("gateway.store", attributes={"bucketdav.key": key}) as span:
            try:
                record = await self.store.put(key, data, content_type)
            except StoreFailure as exc:
                LOGGER.error("object_store_failed", key=key, error=str(exc))
                raise StoreFailure("Failed to upload file", reason=exc.reason) from exc
            self.cache.schedule_invalidation(background, origin, [key])
            OBJECTS_STORED_COUNTER.inc()
            BYTES_WRITTEN_COUNTER.inc(record.size)
            span.set_attribute("bucketdav.bytes", record.size)
            LOGGER.info("object_stored", key=key, bytes=record.size, content_type=content_type)
            return self._text("File uploaded successfully")

    async def delete_object(self, raw_path: str, origin: str, background: BackgroundTasks) -> Response:
        key = resolve_key(raw_path)
        with TRACER.start_as_current_span("gateway.delete", attributes={"bucketdav.key": key}):
            try:
                await self.store.delete(key)
            except StoreFailure as exc:
                LOGGER.error("object_delete_failed", key=key, error=str(exc))
                raise StoreFailure("Failed to delete file", reason=exc.reason) from exc
            self.cache.schedule_invalidation(background, origin, [key])
            OBJECTS_DELETED_COUNTER.inc()
            LOGGER.info("object_deleted", key=key)
            return self._text("File deleted successfully")

    async def _store_submission(self, submission: Submission) -> tuple[UploadResult, Optional[str]]:
        try:
            key = resolve_key(submission.name)
            self._check_size(len(submission.data))
            content_type = content_type_for(key)
            await self.store.put(key, submission.data, content_type)
        except GatewayError as exc:
            UPLOAD_ITEM_FAILURES_COUNTER.inc()
            error = exc.reason if isinstance(exc, StoreFailure) and exc.reason else exc.message
            LOGGER.warning("upload_item_failed", name=submission.name, error=error)
            return UploadResult.failed(submission.name, error), None
        OBJECTS_STORED_COUNTER.inc()
        BYTES_WRITTEN_COUNTER.inc(len(submission.data))
        return UploadResult.success(key, content_type), key

    async def store_many(
        self, submissions: Iterable[Submission], origin: str, background: BackgroundTasks
    ) -> JSONResponse:
        """Store every submission independently and report one outcome per item."""
        results: list[UploadResult] = []
        stored_keys: list[str] = []
        with TRACER.start_as_current_span("gateway.store_many") as span:
            for submission in submissions:
                result, key = await self._store_submission(submission)
                results.append(result)
                if key is not None:
                    stored_keys.append(key)
            self.cache.schedule_invalidation(background, origin, stored_keys)
            failed = len(results) - len(stored_keys)
            span.set_attribute("bucketdav.items", len(results))
            span.set_attribute("bucketdav.failed_items", failed)
            LOGGER.info("multi_upload_completed", items=len(results), failed=failed)
        return JSONResponse([result.to_wire() for result in results], headers=self.cors_headers)

    async def list_directory(
        self,
        raw_path: str,
        origin: str,
        background: BackgroundTasks,
        *,
        multistatus: bool = False,
    ) -> Response:
        prefix = resolve_prefix(raw_path)
        status_code = status.HTTP_207_MULTI_STATUS if multistatus else status.HTTP_200_OK
        url = self.cache.listing_url(origin, directory_path(prefix))
        with TRACER.start_as_current_span("gateway.list", attributes={"bucketdav.prefix": prefix}) as span:
            cached = await self.cache.lookup(url)
            if cached is not None and cached.source_path == raw_path:
                span.set_attribute("bucketdav.cache_hit", True)
                return cached.to_response(status_code)

            try:
                records = await self.store.list(prefix)
            except StoreFailure as exc:
                LOGGER.error("listing_failed", prefix=prefix, error=str(exc))
                raise StoreFailure("Failed to list files", reason=exc.reason) from exc
            body = render_multistatus(raw_path, DirectoryListing(prefix=prefix, records=records))
            LISTINGS_RENDERED_COUNTER.inc()
            span.set_attribute("bucketdav.cache_hit", False)
            span.set_attribute("bucketdav.entries", len(records))
            LOGGER.info("listing_rendered", prefix=prefix, entries=len(records))

            rendered = CachedResponse(
                media_type="application/xml",
                body=body,
                headers=self.cors_headers,
                source_path=raw_path,
            )
            self.cache.schedule_store(background, url, rendered)
            return rendered.to_response(status_code, cache_status="MISS")

    async def flush_cache(self, origin: str, background: BackgroundTasks) -> Response:
        url = self.cache.schedule_directory_invalidation(background, origin)
        LOGGER.info("listing_cache_flush_requested", url=url)
        return self._text("cache deleted successfully")
