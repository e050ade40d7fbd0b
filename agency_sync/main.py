"""
HTTP surface of the sync engine: trigger endpoints, the calendar push
webhook and health probes.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from agency_sync.config import settings
from agency_sync.db.pool import db_pool
from agency_sync.infrastructure.observability.logging import get_logger, log_request, setup_logging
from agency_sync.routes import health, sync, webhooks
from agency_sync.services.sync.factory import SyncDependencies

setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


async def _shutdown(app: FastAPI) -> None:
    failures = {}
    for name, close in (("provider_clients", app.state.sync_deps.close), ("database", db_pool.close)):
        try:
            await close()
        except Exception as e:
            logger.error("Shutdown step failed", step=name, error=str(e))
            failures[name] = str(e)

    if failures:
        logger.warning("Shutdown finished with errors", failures=failures)
    else:
        logger.info("Shutdown complete")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Sync engine starting", environment=settings.environment, debug=settings.debug)
    await db_pool.initialize()

    # One instance per process so per-credential refresh locks are shared by requests
    app.state.sync_deps = SyncDependencies()
    try:
        yield
    finally:
        logger.info("Sync engine stopping")
        await _shutdown(app)


app = FastAPI(
    title="Agency Sync Engine",
    description="Background sync of agency data with calendar, spreadsheet and invoicing providers",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(sync.router)
app.include_router(webhooks.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    log_request(
        request.method,
        request.url.path,
        response.status_code,
        round((time.perf_counter() - started) * 1000, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
