"""
Health endpoints.

Lightweight liveness and readiness checks without exposing secrets.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from captionai.core.config import settings
from captionai.core.database import check_connection

logger = logging.getLogger("captionai")

root_router = APIRouter(tags=["health"])


@root_router.get("/healthz")
@root_router.get("/health")
def healthz():
    """Liveness check (no deps)."""
    return {"status": "ok", "time": datetime.now(timezone.utc).isoformat()}


@root_router.get("/readyz")
def readyz():
    """Readiness check: database connectivity when the durable store is in use."""
    if (settings.STORE_BACKEND or "memory").lower() != "database":
        return {"status": "ok", "store": "memory"}

    if not check_connection():
        logger.error("[readyz] database unreachable")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})
    return {"status": "ok", "store": "database"}
