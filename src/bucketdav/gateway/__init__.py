"""HTTP gateway exposing blob storage as a browsable file tree."""

from .app import create_app

__all__ = ["create_app"]
