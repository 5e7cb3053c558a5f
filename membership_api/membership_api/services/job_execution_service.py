"""Job execution ledger.

Every scheduled or manual job run is recorded as a ``running`` row that is
finalised exactly once.  Ledger writes use their own short sessions and
never stop the job they describe: if the ledger is unavailable the job
still runs and the failure is only logged.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from membership_core.models.job import JobExecution, JobExecutionStatus
from membership_core.state.database import session_scope
from membership_core.state.repository import JobExecutionRepository
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from membership_api.services.alert_service import AlertService

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class JobExecutionLedger:
    """Record job runs and alert on failures.

    Parameters
    ----------
    session_factory:
        Factory for the ledger's own sessions.
    alerts:
        Receives job failure and stuck job alerts.
    clock:
        Current-time source, injected by tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        alerts: AlertService,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._alerts = alerts
        self._clock = clock

    async def start_execution(self, job_name: str) -> str | None:
        """Insert a ``running`` record; ``None`` when the ledger write failed."""
        try:
            async with session_scope(self._session_factory) as session:
                row = await JobExecutionRepository(session).create(job_name, started_at=self._clock())
                execution_id = row.id
        except SQLAlchemyError as exc:
            logger.warning("Could not record start of job %s: %s", job_name, exc)
            return None
        logger.info("Job %s started", job_name, extra={"job": job_name, "execution_id": execution_id})
        return execution_id

    async def finish_execution(
        self,
        execution_id: str,
        status: JobExecutionStatus,
        result: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Finalise a running record.  ``False`` if it was missing or already final."""
        try:
            async with session_scope(self._session_factory) as session:
                repo = JobExecutionRepository(session)
                row = await repo.get(execution_id)
                if row is None:
                    logger.warning("Job execution %s not found; cannot finalise", execution_id)
                    return False
                finished_at = self._clock()
                duration_ms = max(0, int((finished_at - row.started_at).total_seconds() * 1000))
                finalised = await repo.finalize(
                    execution_id,
                    status,
                    finished_at=finished_at,
                    duration_ms=duration_ms,
                    result=result,
                    error_message=error_message,
                )
        except SQLAlchemyError as exc:
            logger.warning("Could not finalise job execution %s: %s", execution_id, exc)
            return False
        if not finalised:
            logger.warning("Job execution %s was already finalised", execution_id)
        else:
            logger.info(
                "Job %s finished with %s in %d ms",
                row.job_name,
                status.value,
                duration_ms,
                extra={"job": row.job_name, "execution_id": execution_id},
            )
        return finalised

    async def with_execution_logging(self, job_name: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run *fn* with its outcome recorded in the ledger.

        On success the returned value is stored as the result.  On an
        exception the run is recorded as failed, a debounced job failure
        alert is sent and the exception propagates.
        """
        execution_id = await self.start_execution(job_name)
        try:
            result = await fn()
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.error("Job %s failed: %s", job_name, message, exc_info=True, extra={"job": job_name})
            if execution_id is not None:
                await self.finish_execution(execution_id, JobExecutionStatus.FAILED, error_message=message)
            await self._alerts.job_failure_alert(job_name, message, execution_id)
            raise
        if execution_id is not None:
            stored = result if isinstance(result, dict) else {"result": result}
            await self.finish_execution(execution_id, JobExecutionStatus.SUCCESS, result=stored)
        return result

    async def latest_executions(self) -> list[JobExecution]:
        """The newest execution of every job."""
        async with session_scope(self._session_factory) as session:
            rows = await JobExecutionRepository(session).latest_per_job()
            return [JobExecution.model_validate(row) for row in rows]

    async def recent_executions(self, limit: int = 50, job_name: str | None = None) -> list[JobExecution]:
        async with session_scope(self._session_factory) as session:
            rows = await JobExecutionRepository(session).list_recent(limit=limit, job_name=job_name)
            return [JobExecution.model_validate(row) for row in rows]

    async def cleanup_stuck_jobs(self, max_age: timedelta = timedelta(hours=1)) -> dict[str, Any]:
        """Fail ``running`` records older than *max_age* and alert once."""
        cutoff = self._clock() - max_age
        minutes = int(max_age.total_seconds() // 60)
        async with session_scope(self._session_factory) as session:
            stuck = await JobExecutionRepository(session).fail_stuck(
                cutoff,
                f"Timed out: still running after {minutes} minutes",
            )
        if stuck:
            logger.warning("Marked %d stuck job execution(s) as failed", len(stuck))
            await self._alerts.stuck_jobs_alert(stuck, minutes)
        return {"success": True, "cleaned": len(stuck), "executions": [execution_id for execution_id, _ in stuck]}
