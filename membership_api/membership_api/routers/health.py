"""Health-check endpoint."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text

from membership_api import __version__
from membership_api.dependencies import ServicesDep, SessionDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(session: SessionDep, services: ServicesDep) -> dict[str, Any]:
    """Return service health.

    Always HTTP 200 so load-balancers see the process as alive; ``db``
    reports whether the database answered and ``running_jobs`` lists jobs
    currently holding the in-process lock.
    """
    result: dict[str, Any] = {
        "status": "healthy",
        "version": __version__,
        "db": "ok",
        "running_jobs": services.runtime.job_lock.running_jobs,
    }
    try:
        await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("DB health check failed: %s", exc)
        result["db"] = "degraded"
    return result
