from __future__ import annotations

from pydantic import BaseModel, Field


class ProposeRequest(BaseModel):
    image_reference: str = Field(..., min_length=1, description="Container image (name:tag or digest)")
    replica_count: int = Field(..., ge=0)
    exposed_port: int = Field(..., ge=1, le=65535, description="Port the application listens on")


class ProposeResponse(BaseModel):
    revision: int
    image_reference: str
    replica_count: int
    exposed_port: int
    source: str
    created_at: str
