"""Operator endpoints for running jobs and reading the execution ledger."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query

from membership_api.dependencies import OperatorDep, ServicesDep
from membership_api.services.jobs import UnknownJobError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[OperatorDep])


@router.get("")
async def list_jobs(services: ServicesDep) -> dict[str, Any]:
    """Registered job names and which of them are running right now."""
    return {
        "jobs": services.runner.job_names,
        "running": services.runtime.job_lock.running_jobs,
    }


@router.post("/{job_name}/run")
async def run_job(job_name: str, services: ServicesDep) -> dict[str, Any]:
    """Run a job now.  A job that is already running is skipped, not queued."""
    if job_name not in services.runner.job_names:
        raise HTTPException(status_code=404, detail=f"Unknown job: {job_name}")
    logger.info("Manual run of job %s requested", job_name, extra={"job": job_name})
    try:
        return await services.runner.run(job_name)
    except UnknownJobError:
        raise HTTPException(status_code=404, detail=f"Unknown job: {job_name}")
    except Exception as exc:
        raise HTTPException(status_code=500, detail=f"Job {job_name} failed: {exc}") from exc


@router.get("/executions")
async def list_executions(
    services: ServicesDep,
    latest: bool = Query(default=False, description="Only the newest execution of each job."),
    job_name: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
) -> list[dict[str, Any]]:
    """Recent job executions, newest first."""
    if latest:
        executions = await services.ledger.latest_executions()
    else:
        executions = await services.ledger.recent_executions(limit=limit, job_name=job_name)
    return [execution.model_dump(mode="json") for execution in executions]
