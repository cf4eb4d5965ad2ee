"""
Health API.

Lightweight endpoints for operational monitoring without exposing secrets.
"""

import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from chatdash.core.database import check_connection
from chatdash.core.logging import latency_bucket_ms

root_router = APIRouter(tags=["health"])


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity."""
    start = time.perf_counter()
    connected = check_connection()
    latency_ms = (time.perf_counter() - start) * 1000
    if not connected:
        return JSONResponse(status_code=503, content={"status": "unavailable", "db": False})
    return {"status": "ok", "db": True, "latency_bucket": latency_bucket_ms(latency_ms)}
