"""
FastAPI dependencies shared by the sync routes; tests override these.
"""

from fastapi import Request

from agency_sync.repositories.sync_job_repository import SyncJobRepository, sync_job_repository
from agency_sync.repositories.webhook_channel_repository import (
    WebhookChannelRepository,
    webhook_channel_repository,
)
from agency_sync.services.sync.dispatcher import JobDispatcher
from agency_sync.services.sync.factory import (
    SyncDependencies,
    build_dispatcher,
    build_reconciliation,
)
from agency_sync.services.sync.reconciliation import ReconciliationScheduler


def _sync_dependencies(request: Request) -> SyncDependencies:
    deps = getattr(request.app.state, "sync_deps", None)
    if deps is None:
        deps = request.app.state.sync_deps = SyncDependencies()
    return deps


def get_dispatcher(request: Request) -> JobDispatcher:
    return build_dispatcher(_sync_dependencies(request))


def get_reconciliation() -> ReconciliationScheduler:
    return build_reconciliation()


def get_job_repository() -> SyncJobRepository:
    return sync_job_repository


def get_channel_repository() -> WebhookChannelRepository:
    return webhook_channel_repository
