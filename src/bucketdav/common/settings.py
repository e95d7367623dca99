"""Application configuration models shared by services."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, RedisDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class GatewaySettings(BaseSettings):
    """Configuration for the WebDAV storage gateway."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)
    storage_path: Path = env_field(Path("./storage"), "BUCKETDAV_STORAGE_PATH")
    s3_endpoint_url: Optional[str] = env_field(None, "BUCKETDAV_S3_ENDPOINT")
    s3_bucket: Optional[str] = env_field(None, "BUCKETDAV_S3_BUCKET")
    s3_region: Optional[str] = env_field(None, "BUCKETDAV_S3_REGION")
    s3_max_retries: int = env_field(3, "BUCKETDAV_S3_MAX_RETRIES")
    s3_retry_base_seconds: float = env_field(0.2, "BUCKETDAV_S3_RETRY_BASE")
    s3_retry_max_seconds: float = env_field(2.0, "BUCKETDAV_S3_RETRY_MAX")
    s3_circuit_breaker_failures: int = env_field(5, "BUCKETDAV_S3_CIRCUIT_FAILURES")
    s3_circuit_breaker_reset_seconds: float = env_field(30.0, "BUCKETDAV_S3_CIRCUIT_RESET")
    listing_cache_enabled: bool = env_field(True, "BUCKETDAV_LISTING_CACHE_ENABLED")
    listing_cache_ttl_seconds: int = env_field(604800, "BUCKETDAV_LISTING_CACHE_TTL")  # one week
    listing_cache_redis_url: Optional[RedisDsn] = env_field(None, "BUCKETDAV_LISTING_CACHE_REDIS_URL")
    listing_cache_invalidate_ancestors: bool = env_field(False, "BUCKETDAV_LISTING_CACHE_INVALIDATE_ANCESTORS")
    multi_upload_path: str = env_field("/upload", "BUCKETDAV_MULTI_UPLOAD_PATH")
    cache_flush_path: str = env_field("/cache/flush", "BUCKETDAV_CACHE_FLUSH_PATH")
    max_upload_bytes: int = env_field(100 * 1024 * 1024, "BUCKETDAV_MAX_UPLOAD_BYTES")  # 100MB default
    cors_allow_origin: str = env_field("*", "BUCKETDAV_CORS_ALLOW_ORIGIN")
    metrics_token: Optional[SecretStr] = env_field(None, "BUCKETDAV_METRICS_TOKEN")
    bind_host: str = env_field("0.0.0.0", "BUCKETDAV_BIND_HOST")
    bind_port: int = env_field(8080, "BUCKETDAV_BIND_PORT")
    log_level: str = env_field("INFO", "BUCKETDAV_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "BUCKETDAV_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "BUCKETDAV_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "BUCKETDAV_OTEL_SAMPLER_RATIO")

    @field_validator("multi_upload_path", "cache_flush_path", mode="before")
    @classmethod
    def _normalize_endpoint_path(cls, value):
        if isinstance(value, str):
            return "/" + value.strip().strip("/")
        return value

    @field_validator("listing_cache_ttl_seconds")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("listing cache TTL must be positive")
        return value
