"""
Sync API request models.
Used by routes for input validation.
"""

from pydantic import BaseModel, ConfigDict, Field


class RunSyncRequest(BaseModel):
    """Body of POST /sync/run; limit is clamped server-side."""

    limit: int | None = Field(default=None, description="Max jobs to process (1-50, default 10)")


class CronTickRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    queue_pull: bool = Field(
        default=True, alias="queuePull", description="Also queue a safety pull per channel"
    )
