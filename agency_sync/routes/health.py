"""
Liveness and readiness probes.
"""

import time
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from agency_sync.config import settings
from agency_sync.db.pool import db_health_check
from agency_sync.services.infrastructure.encryption_service import validate_encryption_config

router = APIRouter()


async def _database_check() -> dict[str, Any]:
    started = time.monotonic()
    try:
        status = await db_health_check()
    except Exception as e:
        return {"ok": False, "error": f"{type(e).__name__}: {e}"}

    check = {
        "ok": bool(status.get("healthy")),
        "latency_ms": round((time.monotonic() - started) * 1000, 1),
        **status.get("pool_stats", {}),
    }
    if not check["ok"]:
        check["error"] = status.get("error", "Database unhealthy")
    return check


def _configuration_check() -> dict[str, Any]:
    issues = []
    if not settings.DATABASE_URL:
        issues.append("DATABASE_URL not set")
    if not settings.SYNC_RUNNER_SECRET:
        issues.append("SYNC_RUNNER_SECRET not set")
    if not settings.google_oauth_configured():
        issues.append("Google OAuth client not configured")
    if not validate_encryption_config():
        issues.append("ENCRYPTION_KEY missing or invalid")
    return {"ok": not issues, "issues": issues or None, "environment": settings.environment}


@router.get("/healthz")
async def healthz():
    """Process is up; no dependencies checked."""
    return {"status": "ok", "service": "agency-sync"}


@router.get("/readyz")
async def readyz():
    """503 until the database answers and required configuration is present."""
    checks = {"database": await _database_check(), "configuration": _configuration_check()}
    overall_ok = all(check["ok"] for check in checks.values())
    return JSONResponse(
        status_code=200 if overall_ok else 503,
        content={"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()},
    )
