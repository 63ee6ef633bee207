"""Pydantic schemas for health check responses."""

from typing import Literal

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response body for the health check endpoint."""

    status: Literal["ok"] = Field(default="ok", description="Service status")
    environment: str = Field(description="Current app environment (e.g. dev, prod)")
    database: Literal["connected", "disconnected"] | None = Field(
        default=None,
        description="Database connectivity status when check is performed",
    )
    pipeline: Literal["running", "stopped"] = Field(
        default="stopped",
        description="Whether the review pipeline engine accepts submissions",
    )
    model: str | None = Field(default=None, description="Inference model used by analysis stages")
