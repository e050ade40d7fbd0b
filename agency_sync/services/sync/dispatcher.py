"""
Job dispatcher: drains pending sync jobs in creation order.

Each job is claimed with a conditional UPDATE, routed by (provider, kind) to
its handler, and always finishes in exactly one terminal state. A failing
job never prevents later jobs in the same batch from running.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
import pydantic

from agency_sync.config import settings
from agency_sync.db.helpers import DatabaseError
from agency_sync.infrastructure.observability.logging import (
    bind_job_context,
    clear_job_context,
    get_logger,
)
from agency_sync.models.domain.job_payloads import JobPayload, JobResult
from agency_sync.models.domain.sync_domain import (
    OAUTH_PROVIDER_FOR_JOB,
    JobProvider,
    JobStatus,
    SyncJob,
)
from agency_sync.repositories.sync_job_repository import SyncJobRepository
from agency_sync.services.infrastructure.provider_http import ProviderApiError
from agency_sync.services.sync.errors import (
    AuthenticationError,
    ErrorCategory,
    SyncError,
    ValidationError,
    classify_status,
    truncate_message,
)
from agency_sync.services.sync.token_manager import OAuthTokenManager

logger = get_logger(__name__)

LAST_ERROR_MAX_LENGTH = 1000

RunFn = Callable[[str, str | None, Any], Awaitable[JobResult]]
FailureMarkerFn = Callable[[str, Any, str], Awaitable[None]]


@dataclass(slots=True)
class JobHandler:
    """How to run one (provider, kind) operation."""

    payload_model: type[JobPayload]
    run: RunFn
    needs_oauth_token: bool = False
    on_failure: FailureMarkerFn | None = None


def classify_exception(exc: Exception) -> ErrorCategory:
    """Map any failure raised by a handler onto the error taxonomy."""
    if isinstance(exc, SyncError):
        return exc.category
    if isinstance(exc, ProviderApiError):
        if exc.status_code is None:
            return ErrorCategory.INTERNAL
        return classify_status(exc.status_code)
    if isinstance(exc, httpx.RequestError):
        return ErrorCategory.TRANSIENT
    if isinstance(exc, DatabaseError):
        return ErrorCategory.TRANSIENT if exc.recoverable else ErrorCategory.INTERNAL
    return ErrorCategory.INTERNAL


def format_last_error(exc: Exception) -> str:
    message = str(exc) or type(exc).__name__
    return truncate_message(f"{classify_exception(exc)}: {message}", LAST_ERROR_MAX_LENGTH)


class JobDispatcher:
    def __init__(
        self,
        jobs: SyncJobRepository,
        token_manager: OAuthTokenManager,
        handlers: dict[tuple[JobProvider, str], JobHandler],
    ):
        self.jobs = jobs
        self.token_manager = token_manager
        self.handlers = handlers

    async def run_batch(self, limit: int | None = None) -> dict[str, Any]:
        """
        Process up to `limit` pending jobs, oldest first.

        Jobs claimed by a concurrent dispatcher are skipped and not reported.

        Returns:
            dict: {"processed": int, "results": [{"id", "status", "result" | "error"}]}
        """
        limit = settings.clamp_dispatch_limit(limit)
        pending = await self.jobs.fetch_pending(limit)
        results: list[dict[str, Any]] = []

        for candidate in pending:
            try:
                job = await self.jobs.claim(candidate.id)
            except Exception as e:
                logger.error("Failed to claim job", job_id=candidate.id, error=str(e))
                continue
            if job is None:
                logger.debug("Job already claimed elsewhere", job_id=candidate.id)
                continue
            results.append(await self.run_claimed(job))

        logger.info(
            "Dispatch batch finished",
            requested=limit,
            fetched=len(pending),
            processed=len(results),
            failed=sum(1 for r in results if r["status"] == JobStatus.FAILED),
        )
        return {"processed": len(results), "results": results}

    async def run_claimed(self, job: SyncJob) -> dict[str, Any]:
        """Run a job already in running state and write its terminal state."""
        bind_job_context(
            job_id=job.id, agency_id=job.agency_id, provider=str(job.provider), kind=job.kind
        )
        try:
            handler = self.handlers.get((job.provider, job.kind))
            payload = None
            try:
                if handler is None:
                    raise ValidationError(
                        f"Unknown job kind {job.provider}/{job.kind}", agency_id=job.agency_id
                    )
                payload = self._parse_payload(job, handler)
                result = await self._execute(job, handler, payload)
            except Exception as e:
                return await self._fail(job, handler, payload, e)

            try:
                result_json = result.to_json()
                await self.jobs.mark_succeeded(job.id, result_json)
            except Exception as e:
                logger.error("Failed to record job success", error=str(e))
                return await self._write_failure(job, format_last_error(e))

            logger.info("Job succeeded")
            return {"id": job.id, "status": JobStatus.SUCCEEDED, "result": result_json}
        finally:
            clear_job_context()

    def _parse_payload(self, job: SyncJob, handler: JobHandler) -> JobPayload:
        try:
            return handler.payload_model.model_validate(job.payload or {})
        except pydantic.ValidationError as e:
            raise ValidationError(
                f"Invalid payload: {e.errors(include_url=False)}", agency_id=job.agency_id
            ) from e

    async def _execute(self, job: SyncJob, handler: JobHandler, payload: JobPayload) -> JobResult:
        if not handler.needs_oauth_token:
            return await handler.run(job.agency_id, None, payload)

        credential_provider = OAUTH_PROVIDER_FOR_JOB[job.provider]
        access_token = await self.token_manager.get_valid_access_token(
            job.agency_id, credential_provider
        )
        try:
            return await handler.run(job.agency_id, access_token, payload)
        except ProviderApiError as e:
            if e.status_code != 401:
                raise
            # Token looked valid but was refused; refresh once and retry
            logger.info("Provider rejected access token, refreshing")
            access_token = await self.token_manager.get_valid_access_token(
                job.agency_id, credential_provider, rejected_token=access_token
            )
            try:
                return await handler.run(job.agency_id, access_token, payload)
            except ProviderApiError as retry_error:
                if retry_error.status_code != 401:
                    raise
                raise AuthenticationError(
                    f"Provider rejected a freshly refreshed token: {retry_error}",
                    agency_id=job.agency_id,
                    provider=str(credential_provider),
                ) from retry_error

    async def _fail(
        self,
        job: SyncJob,
        handler: JobHandler | None,
        payload: JobPayload | None,
        exc: Exception,
    ) -> dict[str, Any]:
        last_error = format_last_error(exc)
        logger.warning(
            "Job failed",
            error=last_error,
            error_type=type(exc).__name__,
            category=str(classify_exception(exc)),
        )

        if handler is not None and handler.on_failure is not None and payload is not None:
            try:
                await handler.on_failure(job.agency_id, payload, last_error)
            except Exception as marker_error:
                logger.error("Failed to mark entity error", error=str(marker_error))

        return await self._write_failure(job, last_error)

    async def _write_failure(self, job: SyncJob, last_error: str) -> dict[str, Any]:
        try:
            await self.jobs.mark_failed(job.id, last_error)
        except Exception as write_error:
            # Row stays running; the batch report still carries the failure
            logger.error(
                "Failed to record job failure", error=str(write_error), last_error=last_error
            )
        return {"id": job.id, "status": JobStatus.FAILED, "error": last_error}
