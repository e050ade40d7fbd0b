"""
Postgres repository for sync_jobs.

Status moves are conditional UPDATEs so that two dispatchers racing on the
same row cannot both claim it, and a terminal row is never rewritten.
"""

from typing import Any

from agency_sync.db.helpers import as_json, execute_query, fetch_all, fetch_one, with_db_retry
from agency_sync.infrastructure.observability.logging import get_logger
from agency_sync.models.domain.sync_domain import (
    JobProvider,
    JobStatus,
    SyncJob,
    transition_sources,
)

logger = get_logger(__name__)

JOB_COLUMNS = """
    id::text AS id, agency_id::text AS agency_id, provider, kind, status,
    payload, result, last_error, created_at, started_at, finished_at
"""


def _to_job(row: dict[str, Any] | None) -> SyncJob | None:
    if not row:
        return None
    row = dict(row)
    row["payload"] = row.get("payload") or {}
    return SyncJob.model_validate(row)


class SyncJobRepository:
    """Persistence helpers for sync_jobs."""

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def fetch_pending(self, limit: int) -> list[SyncJob]:
        query = f"""
            SELECT {JOB_COLUMNS}
            FROM sync_jobs
            WHERE status = 'pending'
            ORDER BY created_at ASC
            LIMIT %s
        """
        rows = await fetch_all(query, (limit,))
        return [_to_job(row) for row in rows]

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def claim(self, job_id: str) -> SyncJob | None:
        """Move pending -> running; None when another dispatcher got there first."""
        query = f"""
            UPDATE sync_jobs
            SET status = 'running', started_at = NOW(), last_error = NULL
            WHERE id = %s AND status = ANY(%s)
            RETURNING {JOB_COLUMNS}
        """
        return _to_job(await fetch_one(query, (job_id, transition_sources(JobStatus.RUNNING))))

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def mark_succeeded(self, job_id: str, result: dict[str, Any]) -> bool:
        query = """
            UPDATE sync_jobs
            SET status = 'succeeded', result = %s, last_error = NULL, finished_at = NOW()
            WHERE id = %s AND status = ANY(%s)
        """
        params = (as_json(result), job_id, transition_sources(JobStatus.SUCCEEDED))
        updated = await execute_query(query, params) > 0
        if not updated:
            logger.warning("Job success not recorded, row is not running", job_id=job_id)
        return updated

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def mark_failed(self, job_id: str, error: str) -> bool:
        query = """
            UPDATE sync_jobs
            SET status = 'failed', last_error = %s, finished_at = NOW()
            WHERE id = %s AND status = ANY(%s)
        """
        params = (error, job_id, transition_sources(JobStatus.FAILED))
        updated = await execute_query(query, params) > 0
        if not updated:
            logger.warning("Job failure not recorded, row is not running", job_id=job_id)
        return updated

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def enqueue(
        self,
        agency_id: str,
        provider: JobProvider,
        kind: str,
        payload: dict[str, Any] | None = None,
    ) -> SyncJob:
        query = f"""
            INSERT INTO sync_jobs (agency_id, provider, kind, status, payload)
            VALUES (%s, %s, %s, 'pending', %s)
            RETURNING {JOB_COLUMNS}
        """
        job = _to_job(
            await fetch_one(query, (agency_id, str(provider), kind, as_json(payload or {})))
        )
        logger.info("Sync job queued", job_id=job.id, agency_id=agency_id, provider=str(provider), kind=kind)
        return job

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get(self, job_id: str) -> SyncJob | None:
        query = f"SELECT {JOB_COLUMNS} FROM sync_jobs WHERE id = %s"
        return _to_job(await fetch_one(query, (job_id,)))


sync_job_repository = SyncJobRepository()
