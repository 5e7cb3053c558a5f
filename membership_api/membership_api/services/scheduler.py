"""Background scheduler for the membership jobs.

Runs as an ``asyncio`` background task that wakes every few seconds and
starts any job whose next run time has passed.  Each due job runs in its
own task so a long reconciliation never delays the webhook sweep; the job
lock keeps a job from overlapping with itself.  Supports a small subset of
cron expressions without requiring a full cron parser dependency.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy.exc import InterfaceError, OperationalError

from membership_api.services.jobs import JobRunner

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Cron expression helpers
# ---------------------------------------------------------------------------

_EVERY_N_MINUTES_RE = re.compile(r"^\*/(\d{1,2})\s+\*\s+\*\s+\*\s+\*$")
_HOURLY_RE = re.compile(r"^(\d{1,2})\s+\*\s+\*\s+\*\s+\*$")
_DAILY_RE = re.compile(r"^(\d{1,2})\s+(\d{1,2})\s+\*\s+\*\s+\*$")
_WEEKLY_RE = re.compile(r"^(\d{1,2})\s+(\d{1,2})\s+\*\s+\*\s+(\d)$")


def compute_next_run(cron_expression: str, from_time: datetime) -> datetime:
    """Compute the next run time from a cron expression.

    Supports a practical subset of cron syntax:

    * ``*/N * * * *`` -- every *N* minutes, on minutes divisible by *N*.
    * ``M * * * *`` -- every hour at minute *M*.
    * ``M H * * *`` -- daily at hour *H*, minute *M*.
    * ``M H * * D`` -- weekly on day-of-week *D* (0=Sunday) at *H*:*M*.

    Fields are interpreted in the timezone of *from_time*.

    Parameters
    ----------
    cron_expression:
        Five-field cron string (minute, hour, day-of-month, month, day-of-week).
    from_time:
        The reference time to compute the *next* run after.

    Returns
    -------
    datetime
        The next execution time, in the timezone of *from_time*.

    Raises
    ------
    ValueError
        If the cron expression does not match any supported pattern.
    """
    expr = cron_expression.strip()

    # Every N minutes: "*/N * * * *"
    match = _EVERY_N_MINUTES_RE.match(expr)
    if match:
        step = int(match.group(1))
        if not 1 <= step <= 59:
            raise ValueError(f"Unsupported minute step in '{cron_expression}'")
        candidate = from_time.replace(second=0, microsecond=0) + timedelta(minutes=1)
        while candidate.minute % step != 0:
            candidate += timedelta(minutes=1)
        return candidate

    # Hourly: "M * * * *"
    match = _HOURLY_RE.match(expr)
    if match:
        minute = int(match.group(1))
        candidate = from_time.replace(minute=minute, second=0, microsecond=0)
        if candidate <= from_time:
            candidate += timedelta(hours=1)
        return candidate

    # Daily: "M H * * *"
    match = _DAILY_RE.match(expr)
    if match:
        minute = int(match.group(1))
        hour = int(match.group(2))
        candidate = from_time.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= from_time:
            candidate += timedelta(days=1)
        return candidate

    # Weekly: "M H * * D"
    match = _WEEKLY_RE.match(expr)
    if match:
        minute = int(match.group(1))
        hour = int(match.group(2))
        target_dow = int(match.group(3))  # 0=Sunday

        # Cron day-of-week: Sunday=0 ... Saturday=6; Python weekday(): Monday=0.
        python_dow = (target_dow - 1) % 7

        candidate = from_time.replace(hour=hour, minute=minute, second=0, microsecond=0)
        days_ahead = (python_dow - candidate.weekday()) % 7
        if days_ahead == 0 and candidate <= from_time:
            days_ahead = 7
        return candidate + timedelta(days=days_ahead)

    raise ValueError(
        f"Unsupported cron expression: '{cron_expression}'. "
        f"Supported patterns: '*/N * * * *', 'M * * * *' (hourly), "
        f"'M H * * *' (daily), 'M H * * D' (weekly)."
    )


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(UTC)


class JobScheduler:
    """AsyncIO background task that runs jobs on their cron schedules.

    Parameters
    ----------
    runner:
        Executes a job by name under the job lock and the ledger.
    schedules:
        Cron expression per job name.  Jobs with an invalid expression are
        logged and left out.
    timezone:
        IANA timezone the cron fields are interpreted in.
    poll_seconds:
        How often the loop checks for due jobs.
    shutdown_timeout:
        Seconds :meth:`stop` waits for running jobs before cancelling them.
    clock:
        Current-time source, injected by tests.
    """

    def __init__(
        self,
        runner: JobRunner,
        schedules: dict[str, str],
        *,
        timezone: str = "America/Sao_Paulo",
        poll_seconds: float = 30.0,
        shutdown_timeout: float = 30.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._runner = runner
        self._tz = ZoneInfo(timezone)
        self._poll_seconds = poll_seconds
        self._shutdown_timeout = shutdown_timeout
        self._clock = clock
        self._schedules: dict[str, str] = {}
        self._next_run: dict[str, datetime] = {}
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._job_tasks: set[asyncio.Task[None]] = set()

        now = self._now()
        for job_name, cron_expr in schedules.items():
            try:
                self._next_run[job_name] = compute_next_run(cron_expr, now)
            except ValueError as exc:
                logger.error("Invalid schedule for job %s: %s", job_name, exc)
                continue
            self._schedules[job_name] = cron_expr

    def _now(self) -> datetime:
        return self._clock().astimezone(self._tz)

    @property
    def running(self) -> bool:
        """Whether the scheduler loop is active."""
        return self._running

    @property
    def next_runs(self) -> dict[str, datetime]:
        return dict(self._next_run)

    async def start(self) -> None:
        """Start the scheduler background task."""
        if self._running:
            logger.warning("JobScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("JobScheduler started with %d job(s)", len(self._schedules))

    async def stop(self) -> None:
        """Stop the loop, then let in-flight jobs finish within the shutdown timeout.

        Jobs still running after the timeout are cancelled; their ledger rows
        stay ``running`` until the stuck-job cleanup marks them failed.
        """
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        in_flight = list(self._job_tasks)
        if in_flight:
            logger.info("Waiting up to %.0fs for %d running job(s)", self._shutdown_timeout, len(in_flight))
            _, pending = await asyncio.wait(in_flight, timeout=self._shutdown_timeout)
            for task in pending:
                logger.warning("Cancelling job task %s after the shutdown timeout", task.get_name())
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self._job_tasks.clear()
        logger.info("JobScheduler stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                self.tick()
            except asyncio.CancelledError:
                raise
            except (OperationalError, InterfaceError) as exc:
                logger.error("JobScheduler database error: %s", exc, exc_info=True)
            except Exception as exc:
                logger.critical("JobScheduler unexpected error: %s", exc, exc_info=True)
                raise
            await asyncio.sleep(self._poll_seconds)

    def tick(self) -> list[str]:
        """Start every job that is due and advance its next run time.

        Returns the names of the jobs started.
        """
        now = self._now()
        started: list[str] = []
        for job_name, cron_expr in self._schedules.items():
            if self._next_run[job_name] > now:
                continue
            self._next_run[job_name] = compute_next_run(cron_expr, now)
            task = asyncio.create_task(self._execute(job_name), name=f"job:{job_name}")
            self._job_tasks.add(task)
            task.add_done_callback(self._job_tasks.discard)
            started.append(job_name)
        return started

    async def _execute(self, job_name: str) -> None:
        logger.info("Running scheduled job %s", job_name, extra={"job": job_name})
        try:
            result = await self._runner.run(job_name)
        except Exception as exc:
            # The ledger has already recorded and alerted the failure.
            logger.error("Scheduled job %s failed: %s", job_name, exc, extra={"job": job_name})
            return
        logger.info("Scheduled job %s finished: %s", job_name, result, extra={"job": job_name})
