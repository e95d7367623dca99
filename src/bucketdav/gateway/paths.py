"""Turn untrusted request paths into canonical storage keys and listing prefixes.

Every path reaching the store goes through :func:`resolve_key` or
:func:`resolve_prefix`. Decoding is repeated until the string is stable so a
traversal hidden behind several layers of percent-encoding (``%252e%252e``)
is rejected the same way as a literal ``..``.
"""

from __future__ import annotations

import re
from urllib.parse import unquote

from .errors import InvalidPath

ROOT_DIRECTORY = "/"
MAX_DECODE_ROUNDS = 4

# characters XML 1.0 cannot carry, NUL included; keys end up in listing documents
_FORBIDDEN_CHARACTERS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]")
_REPEATED_SLASHES = re.compile("/{2,}")


def decode_path(raw_path: str) -> str:
    """Percent-decode ``raw_path`` until it no longer changes, validate it and collapse repeated slashes."""
    decoded = raw_path
    for _ in range(MAX_DECODE_ROUNDS):
        try:
            candidate = unquote(decoded, errors="strict")
        except UnicodeDecodeError as exc:
            raise InvalidPath(reason="path is not valid UTF-8") from exc
        if candidate == decoded:
            break
        decoded = candidate
    else:
        raise InvalidPath(reason="path is encoded too many times")

    if ".." in decoded:
        raise InvalidPath(reason="path traversal")
    if _FORBIDDEN_CHARACTERS.search(decoded):
        raise InvalidPath(reason="control character in path")
    return _REPEATED_SLASHES.sub("/", decoded)


def resolve_key(raw_path: str) -> str:
    """Resolve a raw path to the key of a single object."""
    key = decode_path(raw_path).lstrip("/")
    if not key.strip():
        raise InvalidPath("Invalid filename", reason="empty object key")
    return key


def resolve_prefix(raw_path: str) -> str:
    """Resolve a raw path to a listing prefix; ``""`` is the root directory."""
    prefix = decode_path(raw_path).lstrip("/")
    if not prefix:
        return ""
    return prefix.rstrip("/") + "/"


def directory_path(prefix: str) -> str:
    """Listing path for a prefix produced by :func:`resolve_prefix`."""
    return "/" + prefix


def parent_directory(key: str) -> str:
    """Directory whose listing contains ``key``, as a listing path.

    >>> parent_directory("notes/todo.txt")
    '/notes/'
    >>> parent_directory("todo.txt")
    '/'
    """
    head, sep, _ = key.rpartition("/")
    if not sep or not head:
        return ROOT_DIRECTORY
    return f"/{head}/"


def ancestor_directories(key: str) -> list[str]:
    """Every directory above ``key``, nearest first and ending with the root."""
    directories = []
    current = parent_directory(key)
    while current != ROOT_DIRECTORY:
        directories.append(current)
        current = parent_directory(current.strip("/"))
    directories.append(ROOT_DIRECTORY)
    return directories


def display_name(prefix: str) -> str:
    segments = [segment for segment in prefix.split("/") if segment]
    return segments[-1] if segments else "root"


def base_name(key: str) -> str:
    return key.rsplit("/", 1)[-1]
