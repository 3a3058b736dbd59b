"""Shared Pydantic schemas for Planward-Engine."""

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    service: str = "planward-engine"
    billing_enabled: bool = False
