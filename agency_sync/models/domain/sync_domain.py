# models/domain/sync_domain.py
"""
Domain models for the sync engine's own tables: jobs, credentials,
push channels and integration connections.
"""

from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class JobProvider(StrEnum):
    CALENDAR = "calendar"
    INVOICING = "invoicing"
    SPREADSHEET = "spreadsheet"


class JobStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED)


# Allowed forward moves; anything else is a bug in the caller
JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED}),
    JobStatus.SUCCEEDED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Check a job status move against the pending -> running -> terminal order."""
    return target in JOB_TRANSITIONS[current]


def transition_sources(target: JobStatus) -> list[str]:
    """Statuses a job may move to `target` from, for conditional UPDATEs."""
    return [str(status) for status in JobStatus if can_transition(status, target)]


class SyncJob(BaseModel):
    """One unit of integration work (row of sync_jobs)."""

    id: str
    agency_id: str
    provider: JobProvider
    kind: str
    status: JobStatus = JobStatus.PENDING
    payload: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class CredentialProvider(StrEnum):
    GOOGLE = "google"
    INVOICING = "invoicing"


# Calendar and spreadsheet jobs run on the agency's Google grant
OAUTH_PROVIDER_FOR_JOB: dict[JobProvider, CredentialProvider] = {
    JobProvider.CALENDAR: CredentialProvider.GOOGLE,
    JobProvider.SPREADSHEET: CredentialProvider.GOOGLE,
}


class Credential(BaseModel):
    """Decrypted OAuth token set for one (agency, provider)."""

    agency_id: str
    provider: CredentialProvider = CredentialProvider.GOOGLE
    access_token: str | None = None
    refresh_token: str | None = None
    scope: str | None = None
    token_type: str | None = None
    expiry_timestamp: datetime | None = None

    def seconds_until_expiry(self, now: datetime | None = None) -> float | None:
        if not self.expiry_timestamp:
            return None
        now = now or datetime.now(UTC)
        return (self.expiry_timestamp - now).total_seconds()

    def needs_refresh(self, skew_seconds: int, now: datetime | None = None) -> bool:
        """True when the token expires within the skew window (unknown expiry counts as fresh)."""
        remaining = self.seconds_until_expiry(now)
        if remaining is None:
            return False
        return remaining <= skew_seconds


class ApiSecret(BaseModel):
    """Id/secret pair for providers that issue their own short-lived tokens."""

    agency_id: str
    provider: CredentialProvider = CredentialProvider.INVOICING
    client_id: str = ""
    client_secret: str = ""
    base_url: str | None = None

    def is_complete(self) -> bool:
        return bool(self.client_id and self.client_secret)


class ChannelScope(StrEnum):
    COMPANY = "company"
    PER_ENTITY = "per_entity"


class WebhookChannel(BaseModel):
    """One push subscription on a watched calendar (row of google_calendar_watches)."""

    id: str
    agency_id: str
    scope: ChannelScope = ChannelScope.COMPANY
    target_id: str | None = None
    calendar_id: str = "primary"
    channel_id: str | None = None
    channel_token: str | None = None
    resource_id: str | None = None
    expiration: datetime | None = None
    sync_token: str | None = None
    last_pulled_at: datetime | None = None

    def renewal_due(self, threshold: timedelta, now: datetime | None = None) -> bool:
        """Renew when expiry is unknown or falls inside the threshold window."""
        if not self.expiration:
            return True
        now = now or datetime.now(UTC)
        return self.expiration - now <= threshold


class ConnectionStatus(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ERROR = "error"


class IntegrationConnection(BaseModel):
    """Per-agency, per-provider connection metadata (row of integrations)."""

    agency_id: str
    provider: str
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    config: dict[str, Any] = Field(default_factory=dict)
    connected_at: datetime | None = None
