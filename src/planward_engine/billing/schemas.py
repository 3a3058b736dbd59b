"""Pydantic schemas for entitlement and catalog endpoints."""

from typing import Any

from pydantic import BaseModel, Field, model_validator


class TeamEntitlementsResponse(BaseModel):
    team_id: str
    features: dict[str, bool] = Field(default_factory=dict)
    limits: dict[str, int | float] = Field(default_factory=dict)
    plan_ids: list[str] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)


class LimitCheck(BaseModel):
    key: str = Field(..., min_length=1)
    minimum: int | float | None = None


class EntitlementCheckRequest(BaseModel):
    feature: str | None = None
    limit: LimitCheck | None = None

    @model_validator(mode="after")
    def _require_something(self) -> "EntitlementCheckRequest":
        if not self.feature and self.limit is None:
            raise ValueError("Provide a feature or a limit to check")
        return self


class EntitlementCheckResponse(BaseModel):
    allowed: bool
    detail: str = ""
    entitlements: TeamEntitlementsResponse | None = None


class CatalogPlanResponse(BaseModel):
    id: str
    name: str
    description: str = ""
    tier: str
    plan_level: int | float | None = None
    features: list[str] = Field(default_factory=list)
    limits: dict[str, int | float] = Field(default_factory=dict)
    lowest_price: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
