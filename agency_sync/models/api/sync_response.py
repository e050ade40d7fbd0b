"""
Sync API response models.
Used by routes for output formatting.
"""

from typing import Any

from pydantic import BaseModel, Field


class JobOutcome(BaseModel):
    id: str = Field(..., description="Job ID")
    status: str = Field(..., description="Terminal status (succeeded | failed)")
    result: dict[str, Any] | None = Field(None, description="Operation result on success")
    error: str | None = Field(None, description="Category-prefixed error on failure")


class RunSyncResponse(BaseModel):
    """Response for POST /sync/run."""

    processed: int = Field(..., description="Jobs claimed and finished by this call")
    results: list[JobOutcome] = Field(default_factory=list)


class CronTickResponse(BaseModel):
    agencies: int
    queued_renew: int
    queued_pull: int


class WebhookAckResponse(BaseModel):
    ok: bool = True
    queued: bool = False
    reason: str | None = None
