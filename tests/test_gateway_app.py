from __future__ import annotations

import xml.etree.ElementTree as ET

import pytest
from fastapi.testclient import TestClient

from bucketdav.gateway.app import create_app, is_directory_request
from bucketdav.gateway.listing_cache import CacheCoordinator, MemoryListingCache

NS = {"D": "DAV:"}


def listed_hrefs(body: bytes) -> list[str]:
    root = ET.fromstring(body)
    return [response.findtext("D:href", namespaces=NS) for response in root.findall("D:response", NS)]


def test_file_lifecycle(client: TestClient) -> None:
    put = client.put("/notes/todo.txt", content=b"buy milk")
    assert put.status_code == 200
    assert put.text == "File uploaded successfully"

    fetched = client.get("/notes/todo.txt")
    assert fetched.status_code == 200
    assert fetched.content == b"buy milk"
    assert fetched.headers["content-type"].startswith("text/plain")
    assert fetched.headers["content-disposition"] == 'inline; filename="todo.txt"'

    listing = client.get("/notes/")
    assert listing.status_code == 200
    assert listing.headers["content-type"].startswith("application/xml")
    assert listed_hrefs(listing.content) == ["/notes/", "/notes%2Ftodo.txt"]
    assert b"<D:getcontentlength>8</D:getcontentlength>" in listing.content

    deleted = client.delete("/notes/todo.txt")
    assert deleted.status_code == 200
    assert deleted.text == "File deleted successfully"

    missing = client.get("/notes/todo.txt")
    assert missing.status_code == 404
    assert missing.text == "File not found: notes/todo.txt"
    assert missing.headers["access-control-allow-origin"] == "*"


def test_head_returns_headers_only(client: TestClient) -> None:
    client.put("/a.bin", content=b"12345")
    response = client.head("/a.bin")
    assert response.status_code == 200
    assert response.headers["content-length"] == "5"
    assert response.content == b""


@pytest.mark.parametrize("path", ["/notes/%252E%252E/secret", "/notes/..%2Fsecret", "/notes/%2e%2e%2fsecret"])
def test_traversal_is_rejected_for_every_verb(client: TestClient, path: str) -> None:
    for method in ["GET", "PUT", "DELETE", "PROPFIND"]:
        response = client.request(method, path, content=b"x" if method == "PUT" else None)
        assert response.status_code == 400, method
        assert response.text == "Invalid path"
    assert client.get("/").content.count(b"<D:response>") == 1


def test_delete_missing_object_succeeds(client: TestClient) -> None:
    assert client.delete("/never/existed.txt").status_code == 200


def test_delete_of_non_object_paths_succeeds(client: TestClient) -> None:
    client.put("/notes/todo.txt", content=b"buy milk")
    client.put("/a", content=b"x")

    assert client.delete("/notes").status_code == 200
    assert client.delete("/a/b").status_code == 200
    assert client.get("/notes/todo.txt").content == b"buy milk"
    assert client.get("/a").content == b"x"


def test_control_characters_never_reach_listings(client: TestClient) -> None:
    response = client.put("/bad%01name.txt", content=b"x")
    assert response.status_code == 400
    assert response.text == "Invalid path"

    client.put("/good%09name.txt", content=b"x")
    assert listed_hrefs(client.get("/").content) == ["/", "/good%09name.txt"]


def test_double_slash_write_invalidates_canonical_listing(client: TestClient) -> None:
    assert client.get("/a/").headers["x-listing-cache"] == "MISS"
    assert client.put("/a//b.txt", content=b"b").status_code == 200
    refreshed = client.get("/a/")
    assert refreshed.headers["x-listing-cache"] == "MISS"
    assert listed_hrefs(refreshed.content) == ["/a/", "/a%2Fb.txt"]


def test_upload_too_large(settings, local_store, coordinator) -> None:
    app = create_app(settings.model_copy(update={"max_upload_bytes": 4}), store=local_store, cache=coordinator)
    with TestClient(app) as small_client:
        response = small_client.put("/big.bin", content=b"123456")
    assert response.status_code == 413


def test_listing_cache_hits_until_directory_changes(client: TestClient) -> None:
    client.put("/notes/a.txt", content=b"a")

    assert client.get("/notes/").headers["x-listing-cache"] == "MISS"
    assert client.get("/notes/").headers["x-listing-cache"] == "HIT"

    client.put("/notes/b.txt", content=b"b")
    refreshed = client.get("/notes/")
    assert refreshed.headers["x-listing-cache"] == "MISS"
    assert listed_hrefs(refreshed.content)[1:] == ["/notes%2Fa.txt", "/notes%2Fb.txt"]

    client.delete("/notes/a.txt")
    after_delete = client.get("/notes/")
    assert after_delete.headers["x-listing-cache"] == "MISS"
    assert listed_hrefs(after_delete.content)[1:] == ["/notes%2Fb.txt"]


def test_root_listing_is_not_invalidated_by_nested_writes(client: TestClient) -> None:
    assert client.get("/").headers["x-listing-cache"] == "MISS"
    client.put("/notes/a.txt", content=b"a")
    stale = client.get("/")
    assert stale.headers["x-listing-cache"] == "HIT"
    assert listed_hrefs(stale.content) == ["/"]

    client.post("/cache/flush")
    fresh = client.get("/")
    assert fresh.headers["x-listing-cache"] == "MISS"
    assert listed_hrefs(fresh.content) == ["/", "/notes%2Fa.txt"]


def test_ancestor_invalidation_refreshes_root(settings, local_store) -> None:
    cache = CacheCoordinator(MemoryListingCache(), invalidate_ancestors=True)
    with TestClient(create_app(settings, store=local_store, cache=cache)) as ancestor_client:
        ancestor_client.get("/")
        ancestor_client.put("/notes/deep/a.txt", content=b"a")
        assert ancestor_client.get("/").headers["x-listing-cache"] == "MISS"


def test_propfind_returns_multistatus(client: TestClient) -> None:
    client.put("/docs/readme.md", content=b"# hi")
    response = client.request("PROPFIND", "/docs/")
    assert response.status_code == 207
    assert listed_hrefs(response.content) == ["/docs/", "/docs%2Freadme.md"]
    # a cached GET rendering is reused with the PROPFIND status
    assert client.request("PROPFIND", "/docs/").status_code == 207
    assert client.get("/docs/").status_code == 200


def test_multi_upload_reports_per_file(client: TestClient) -> None:
    files = [
        ("file", ("a.txt", b"a", "text/plain")),
        ("file", ("../evil.txt", b"x", "text/plain")),
        ("file", ("docs/b.txt", b"b", "text/plain")),
    ]
    response = client.post("/upload", files=files)
    assert response.status_code == 200
    assert response.json() == [
        {"name": "a.txt", "status": "success", "contentType": "text/plain"},
        {"name": "../evil.txt", "status": "failed", "error": "Invalid path"},
        {"name": "docs/b.txt", "status": "success", "contentType": "text/plain"},
    ]
    assert client.get("/docs/b.txt").content == b"b"


def test_cache_flush_endpoint(client: TestClient) -> None:
    response = client.post("/cache/flush")
    assert response.status_code == 200
    assert response.text == "cache deleted successfully"


def test_preflight(client: TestClient) -> None:
    response = client.options("/anything/here")
    assert response.status_code == 204
    assert "PROPFIND" in response.headers["allow"]
    assert response.headers["dav"] == "1"
    assert response.headers["access-control-allow-origin"] == "*"


def test_metrics_requires_token(client: TestClient) -> None:
    assert client.get("/metrics").status_code == 401
    client.put("/m.txt", content=b"m")
    response = client.get("/metrics", headers={"Authorization": "Bearer metrics-secret"})
    assert response.status_code == 200
    assert "bucketdav_requests_total" in response.text
    assert "bucketdav_objects_stored_total" in response.text


def test_health_and_status(client: TestClient) -> None:
    health = client.get("/healthz")
    assert health.status_code == 200
    assert health.json()["status"] == "healthy"
    assert health.json()["checks"]["backend"] == "local"

    status = client.get("/status").json()
    assert status["store"]["backend"] == "local"
    assert status["listing_cache"]["backend"] == "memory"
    assert status["multi_upload_path"] == "/upload"


def test_is_directory_request() -> None:
    assert is_directory_request("/")
    assert is_directory_request("/notes/")
    assert not is_directory_request("/notes")
