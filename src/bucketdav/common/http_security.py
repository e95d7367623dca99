"""HTTP access and CORS helpers for the gateway's endpoints."""

from __future__ import annotations

import hmac
from ipaddress import ip_address
from typing import Optional

from fastapi import HTTPException, Request, status
from pydantic import SecretStr

DAV_METHODS = "GET, HEAD, PUT, POST, DELETE, OPTIONS, PROPFIND"


def _is_loopback(host: Optional[str]) -> bool:
    if not host:
        return False
    try:
        return ip_address(host).is_loopback
    except ValueError:
        return host == "localhost"


def require_metrics_access(request: Request, token: Optional[SecretStr]) -> None:
    """Allow ``/metrics`` with the configured bearer token, or from loopback when none is set."""
    if token is not None:
        supplied = request.headers.get("authorization", "")
        if not hmac.compare_digest(supplied.encode(), f"Bearer {token.get_secret_value()}".encode()):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    if not _is_loopback(request.client.host if request.client else None):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access restricted to localhost")


def cors_headers(allow_origin: str) -> dict[str, str]:
    """Headers attached to every gateway response a browser client may read."""
    return {
        "Access-Control-Allow-Origin": allow_origin,
        "Access-Control-Allow-Methods": DAV_METHODS,
        "Access-Control-Allow-Headers": "Authorization, Content-Type, Depth, Destination, Overwrite",
        "Access-Control-Expose-Headers": "Content-Disposition, Content-Length, ETag, Last-Modified, X-Listing-Cache",
    }
