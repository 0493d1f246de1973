"""
Health endpoints for operational monitoring (no secrets exposed).
"""
import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from membership.core.database import check_connection, get_engine, metadata

logger = logging.getLogger("membership")

router = APIRouter(tags=["health"])


@router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "unavailable", "db": False})

    try:
        present = set(inspect(get_engine()).get_table_names())
    except Exception as e:
        logger.warning("readyz.inspect_failed", extra={"error_type": e.__class__.__name__})
        return JSONResponse(status_code=503, content={"status": "unavailable", "db": True})

    missing = sorted(set(metadata.tables) - present)
    if missing:
        return JSONResponse(
            status_code=503,
            content={"status": "unavailable", "db": True, "missing_tables": missing},
        )
    return {"status": "ok", "db": True}
