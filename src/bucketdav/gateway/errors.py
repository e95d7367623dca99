"""Error taxonomy shared by the gateway handlers and storage adapters."""

from __future__ import annotations

from typing import Optional

from fastapi import status


class GatewayError(Exception):
    """Base class for failures that map onto a client-visible HTTP response."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    message = "Internal error"

    def __init__(self, message: Optional[str] = None, *, reason: Optional[str] = None) -> None:
        self.message = message or self.message
        self.reason = reason
        super().__init__(self.message if reason is None else f"{self.message}: {reason}")


class InvalidPath(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Invalid path"


class ObjectNotFound(GatewayError):
    status_code = status.HTTP_404_NOT_FOUND
    message = "File not found"

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"File not found: {key}")


class StoreFailure(GatewayError):
    """Backend error on put, delete, list or a non-404 get."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    message = "Storage backend failure"


class PayloadTooLarge(GatewayError):
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    message = "Payload too large"
