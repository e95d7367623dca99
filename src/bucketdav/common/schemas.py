"""Wire models returned by the gateway's JSON endpoints."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class UploadResult(BaseModel):
    """Outcome of one submission inside a multi-file upload."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    status: Literal["success", "failed"]
    content_type: Optional[str] = Field(default=None, alias="contentType")
    error: Optional[str] = None

    @classmethod
    def success(cls, name: str, content_type: str) -> "UploadResult":
        return cls(name=name, status="success", content_type=content_type)

    @classmethod
    def failed(cls, name: str, error: str) -> "UploadResult":
        return cls(name=name, status="failed", error=error)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class HealthReport(BaseModel):
    """Body of the readiness probe."""

    status: Literal["healthy", "unhealthy"] = "healthy"
    checks: dict[str, object] = Field(default_factory=dict)
