"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and runs it once against the database:

    python -m agency_sync.jobs.worker dispatch
    python -m agency_sync.jobs.worker cron_tick
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable

from agency_sync.config import settings
from agency_sync.db.pool import db_pool
from agency_sync.infrastructure.observability.logging import get_logger, setup_logging
from agency_sync.services.sync.factory import (
    SyncDependencies,
    build_dispatcher,
    build_reconciliation,
)

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]


async def run_dispatch_batch() -> None:
    deps = SyncDependencies()
    try:
        summary = await build_dispatcher(deps).run_batch(settings.DISPATCH_DEFAULT_LIMIT)
        logger.info("Worker dispatch finished", processed=summary["processed"])
    finally:
        await deps.close()


async def run_cron_tick() -> None:
    summary = await build_reconciliation().tick()
    logger.info("Worker cron tick finished", **summary)


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "dispatch": run_dispatch_batch,
    "cron_tick": run_cron_tick,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "dispatch").strip().lower()


async def run_worker(job_name: str | None = None, *, manage_pool: bool = False) -> None:
    """Run the requested background job."""
    name = (job_name or _resolve_job_name()).strip().lower().replace("-", "_")
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)
    if not manage_pool:
        await JOB_REGISTRY[name]()
        return

    await db_pool.initialize()
    try:
        await JOB_REGISTRY[name]()
    finally:
        await db_pool.close()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL)
    asyncio.run(run_worker(_resolve_job_name(), manage_pool=True))


if __name__ == "__main__":
    main()
