"""bucketdav: a WebDAV-style file gateway over blob storage."""

__version__ = "0.1.0"
