from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from bucketdav.common.settings import GatewaySettings
from bucketdav.gateway.app import create_app
from bucketdav.gateway.listing_cache import CacheCoordinator, MemoryListingCache
from bucketdav.gateway.storage import LocalBlobStore


@pytest.fixture
def settings(tmp_path: Path) -> GatewaySettings:
    return GatewaySettings(storage_path=tmp_path / "storage", metrics_token="metrics-secret")


@pytest.fixture
def local_store(settings: GatewaySettings) -> LocalBlobStore:
    return LocalBlobStore(settings)


@pytest.fixture
def memory_cache() -> MemoryListingCache:
    return MemoryListingCache()


@pytest.fixture
def coordinator(memory_cache: MemoryListingCache) -> CacheCoordinator:
    return CacheCoordinator(memory_cache, ttl_seconds=60)


@pytest.fixture
def client(settings: GatewaySettings, local_store: LocalBlobStore, coordinator: CacheCoordinator) -> TestClient:
    app = create_app(settings, store=local_store, cache=coordinator)
    with TestClient(app) as test_client:
        yield test_client
