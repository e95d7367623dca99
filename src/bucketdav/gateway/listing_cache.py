"""Read-through cache of rendered directory listings.

Entries are keyed by the canonical listing URL of a directory
(``<origin>/<prefix>``). Mutations never wait on the cache: invalidation is
queued on the request's background tasks, which run after the response has
been sent, and any failure there is logged and dropped.
"""

from __future__ import annotations

import base64
import json
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

import structlog
from fastapi import BackgroundTasks, Response
from redis.asyncio import Redis, from_url as redis_from_url

from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.settings import GatewaySettings
from .paths import ROOT_DIRECTORY, ancestor_directories, parent_directory

LOGGER = structlog.get_logger("bucketdav.listing_cache")

CACHE_HITS_COUNTER = GLOBAL_REGISTRY.register(Counter("bucketdav_listing_cache_hits_total", "Listing cache hits"))
CACHE_MISSES_COUNTER = GLOBAL_REGISTRY.register(Counter("bucketdav_listing_cache_misses_total", "Listing cache misses"))
INVALIDATIONS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("bucketdav_listing_cache_invalidations_total", "Listing cache entries invalidated")
)
INVALIDATION_FAILURES_COUNTER = GLOBAL_REGISTRY.register(
    Counter("bucketdav_listing_cache_invalidation_failures_total", "Listing cache invalidations that failed")
)


@dataclass(frozen=True)
class CachedResponse:
    """A rendered listing plus the request path whose href it embeds."""

    media_type: str
    body: bytes
    source_path: str
    headers: dict[str, str] = field(default_factory=dict)

    def to_response(self, status_code: int = 200, cache_status: str = "HIT") -> Response:
        headers = dict(self.headers)
        headers["X-Listing-Cache"] = cache_status
        return Response(content=self.body, status_code=status_code, media_type=self.media_type, headers=headers)

    def dumps(self) -> str:
        return json.dumps(
            {
                "media_type": self.media_type,
                "source_path": self.source_path,
                "headers": self.headers,
                "body": base64.b64encode(self.body).decode("ascii"),
            }
        )

    @classmethod
    def loads(cls, payload: str | bytes) -> "CachedResponse":
        data = json.loads(payload)
        return cls(
            media_type=data["media_type"],
            body=base64.b64decode(data["body"]),
            source_path=data["source_path"],
            headers=dict(data.get("headers") or {}),
        )


class ListingCacheBackend:
    async def get(self, url: str) -> Optional[CachedResponse]:  # pragma: no cover - interface
        raise NotImplementedError

    async def set(self, url: str, response: CachedResponse, ttl_seconds: int) -> None:
        raise NotImplementedError

    async def delete(self, url: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None

    def status(self) -> dict[str, object]:
        raise NotImplementedError


class MemoryListingCache(ListingCacheBackend):
    """Per-process cache; entries expire lazily on read."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[float, CachedResponse]] = {}

    async def get(self, url: str) -> Optional[CachedResponse]:
        entry = self._entries.get(url)
        if entry is None:
            return None
        expires_at, response = entry
        if time.monotonic() >= expires_at:
            self._entries.pop(url, None)
            return None
        return response

    async def set(self, url: str, response: CachedResponse, ttl_seconds: int) -> None:
        self._entries[url] = (time.monotonic() + ttl_seconds, response)

    async def delete(self, url: str) -> None:
        self._entries.pop(url, None)

    def __contains__(self, url: str) -> bool:
        return url in self._entries

    def status(self) -> dict[str, object]:
        return {"backend": "memory", "entries": len(self._entries)}


class RedisListingCache(ListingCacheBackend):
    """Shared cache in Redis; the TTL is enforced by the server."""

    def __init__(self, redis: Redis, namespace: str = "bucketdav:listing:") -> None:
        self._redis = redis
        self._namespace = namespace

    def _key(self, url: str) -> str:
        return f"{self._namespace}{url}"

    async def get(self, url: str) -> Optional[CachedResponse]:
        payload = await self._redis.get(self._key(url))
        if payload is None:
            return None
        return CachedResponse.loads(payload)

    async def set(self, url: str, response: CachedResponse, ttl_seconds: int) -> None:
        await self._redis.set(self._key(url), response.dumps(), ex=ttl_seconds)

    async def delete(self, url: str) -> None:
        await self._redis.delete(self._key(url))

    async def close(self) -> None:
        await self._redis.aclose()

    def status(self) -> dict[str, object]:
        return {"backend": "redis", "namespace": self._namespace}


class CacheCoordinator:
    def __init__(
        self,
        backend: ListingCacheBackend,
        *,
        enabled: bool = True,
        ttl_seconds: int = 604800,
        invalidate_ancestors: bool = False,
    ) -> None:
        self.backend = backend
        self.enabled = enabled
        self.ttl_seconds = ttl_seconds
        self.invalidate_ancestors = invalidate_ancestors

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> "CacheCoordinator":
        if settings.listing_cache_redis_url:
            backend: ListingCacheBackend = RedisListingCache(
                redis_from_url(str(settings.listing_cache_redis_url), decode_responses=False)
            )
        else:
            backend = MemoryListingCache()
        return cls(
            backend,
            enabled=settings.listing_cache_enabled,
            ttl_seconds=settings.listing_cache_ttl_seconds,
            invalidate_ancestors=settings.listing_cache_invalidate_ancestors,
        )

    @staticmethod
    def listing_url(origin: str, directory: str) -> str:
        return origin.rstrip("/") + (directory if directory.startswith("/") else "/" + directory)

    def affected_directories(self, key: str) -> list[str]:
        if self.invalidate_ancestors:
            return ancestor_directories(key)
        return [parent_directory(key)]

    async def lookup(self, url: str) -> Optional[CachedResponse]:
        if not self.enabled:
            return None
        try:
            cached = await self.backend.get(url)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("listing_cache_lookup_failed", url=url, error=str(exc))
            return None
        if cached is None:
            CACHE_MISSES_COUNTER.inc()
            return None
        CACHE_HITS_COUNTER.inc()
        LOGGER.debug("listing_cache_hit", url=url)
        return cached

    async def store(self, url: str, response: CachedResponse, ttl_seconds: Optional[int] = None) -> None:
        if not self.enabled:
            return
        try:
            await self.backend.set(url, response, ttl_seconds or self.ttl_seconds)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("listing_cache_store_failed", url=url, error=str(exc))

    async def invalidate(self, url: str) -> None:
        await self.backend.delete(url)
        INVALIDATIONS_COUNTER.inc()
        LOGGER.debug("listing_cache_invalidated", url=url)

    async def invalidate_quietly(self, urls: Iterable[str]) -> None:
        for url in urls:
            try:
                await self.invalidate(url)
            except Exception as exc:  # noqa: BLE001
                INVALIDATION_FAILURES_COUNTER.inc()
                LOGGER.warning("listing_cache_invalidation_failed", url=url, error=str(exc))

    def schedule_invalidation(self, background: BackgroundTasks, origin: str, keys: Iterable[str]) -> list[str]:
        """Queue invalidation of the listings containing ``keys``; returns the URLs queued."""
        urls: list[str] = []
        for key in keys:
            for directory in self.affected_directories(key):
                url = self.listing_url(origin, directory)
                if url not in urls:
                    urls.append(url)
        if urls:
            background.add_task(self.invalidate_quietly, urls)
        return urls

    def schedule_directory_invalidation(
        self, background: BackgroundTasks, origin: str, directory: str = ROOT_DIRECTORY
    ) -> str:
        url = self.listing_url(origin, directory)
        background.add_task(self.invalidate_quietly, [url])
        return url

    def schedule_store(self, background: BackgroundTasks, url: str, response: CachedResponse) -> None:
        if self.enabled:
            background.add_task(self.store, url, response)

    def status(self) -> dict[str, object]:
        try:
            backend_status = self.backend.status()
        except Exception as exc:  # noqa: BLE001
            backend_status = {"error": str(exc)}
        return {"enabled": self.enabled, "ttl_seconds": self.ttl_seconds, **backend_status}

    async def close(self) -> None:
        await self.backend.close()
