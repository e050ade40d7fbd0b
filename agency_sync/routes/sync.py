"""
Sync trigger endpoints, invoked by schedulers and the web app.

Both endpoints are protected by a shared secret sent either as a header or
as ?key= (some schedulers cannot set headers). The secret is checked before
the body is read, so an unauthenticated caller gets 401 whatever it sends.
"""

import hmac
from typing import TypeVar

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from agency_sync.config import settings
from agency_sync.infrastructure.observability.logging import get_logger
from agency_sync.models.api.sync_request import CronTickRequest, RunSyncRequest
from agency_sync.models.api.sync_response import CronTickResponse, RunSyncResponse
from agency_sync.routes.dependencies import get_dispatcher, get_reconciliation
from agency_sync.services.sync.dispatcher import JobDispatcher
from agency_sync.services.sync.reconciliation import ReconciliationScheduler

logger = get_logger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])

RequestModel = TypeVar("RequestModel", bound=BaseModel)


def require_shared_secret(configured: str | None, *candidates: str | None, name: str) -> None:
    """401 unless one candidate equals the configured secret; 500 if none is configured."""
    if not configured:
        logger.error("Shared secret not configured", secret_name=name)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Server missing {name}",
        )
    for candidate in candidates:
        if candidate and hmac.compare_digest(candidate.encode(), configured.encode()):
            return
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def require_runner_secret(
    x_sync_secret: str | None = Header(default=None),
    key: str | None = Query(default=None),
) -> None:
    require_shared_secret(settings.SYNC_RUNNER_SECRET, x_sync_secret, key, name="SYNC_RUNNER_SECRET")


def require_cron_secret(
    x_cron_secret: str | None = Header(default=None),
    key: str | None = Query(default=None),
) -> None:
    require_shared_secret(settings.CRON_SECRET, x_cron_secret, key, name="CRON_SECRET")


async def read_optional_body(request: Request, model: type[RequestModel]) -> RequestModel | None:
    """Parse an optional JSON body; an empty body is None, an invalid one is 422."""
    raw = await request.body()
    if not raw.strip():
        return None
    try:
        return model.model_validate_json(raw)
    except PydanticValidationError as e:
        raise RequestValidationError(e.errors(include_url=False)) from e


@router.post(
    "/run", response_model=RunSyncResponse, dependencies=[Depends(require_runner_secret)]
)
async def run_sync(request: Request, dispatcher: JobDispatcher = Depends(get_dispatcher)):
    """Process one batch of pending sync jobs."""
    body = await read_optional_body(request, RunSyncRequest)
    limit = settings.clamp_dispatch_limit(body.limit if body else None)
    summary = await dispatcher.run_batch(limit)
    return RunSyncResponse(**summary)


@router.post(
    "/cron-tick", response_model=CronTickResponse, dependencies=[Depends(require_cron_secret)]
)
async def cron_tick(
    request: Request, scheduler: ReconciliationScheduler = Depends(get_reconciliation)
):
    """Queue channel renewals and safety-net pulls for every agency with channels."""
    body = await read_optional_body(request, CronTickRequest)
    queue_pull = body.queue_pull if body else True
    return CronTickResponse(**await scheduler.tick(queue_pull=queue_pull))
