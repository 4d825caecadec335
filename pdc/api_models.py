from __future__ import annotations

from pydantic import BaseModel, Field

from .models import Strategy
from .settings import settings


class InitRequest(BaseModel):
    image: str = Field(..., description="Image reference of the first stable version (name:tag)")
    strategy: Strategy = Field(Strategy(settings.default_strategy), description="blue-green|canary")
    total_capacity: int = Field(
        settings.default_capacity, ge=1, le=100, description="Replicas shared by the stable and candidate pools"
    )
    health_timeout_s: float | None = Field(None, gt=0, le=3600, description="Readiness deadline")


class DeployRequest(BaseModel):
    image: str
    weight: int = Field(0, ge=0, le=100, description="Initial candidate traffic weight (percentage)")
    health_timeout_s: float | None = Field(None, gt=0, le=3600)


class ShiftRequest(BaseModel):
    weight: int = Field(..., ge=0, le=100)
    health_timeout_s: float | None = Field(None, gt=0, le=3600)


class PromoteRequest(BaseModel):
    health_timeout_s: float | None = Field(None, gt=0, le=3600)
