"""File-extension to content-type lookup used when objects are stored."""

from __future__ import annotations

import mimetypes

DEFAULT_CONTENT_TYPE = "application/octet-stream"

# Entries the platform mime database gets wrong or lacks on minimal images.
EXTENSION_OVERRIDES = {
    "txt": "text/plain",
    "md": "text/markdown",
    "csv": "text/csv",
    "json": "application/json",
    "xml": "application/xml",
    "html": "text/html",
    "htm": "text/html",
    "css": "text/css",
    "js": "application/javascript",
    "mjs": "application/javascript",
    "svg": "image/svg+xml",
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "ico": "image/x-icon",
    "pdf": "application/pdf",
    "zip": "application/zip",
    "gz": "application/gzip",
    "tar": "application/x-tar",
    "mp3": "audio/mpeg",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "wasm": "application/wasm",
    "woff": "font/woff",
    "woff2": "font/woff2",
}


def extension_of(key: str) -> str:
    name = key.rsplit("/", 1)[-1]
    if "." not in name:
        return ""
    return name.rsplit(".", 1)[-1].lower()


def content_type_for(key: str) -> str:
    extension = extension_of(key)
    if not extension:
        return DEFAULT_CONTENT_TYPE
    if extension in EXTENSION_OVERRIDES:
        return EXTENSION_OVERRIDES[extension]
    guessed, _ = mimetypes.guess_type(f"file.{extension}", strict=False)
    return guessed or DEFAULT_CONTENT_TYPE
