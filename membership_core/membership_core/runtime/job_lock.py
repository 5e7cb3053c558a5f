"""In-process single-flight lock for scheduled jobs.

A job that is already running in this process is skipped rather than
queued.  The lock is not distributed: two processes may run the same job
concurrently, and CAS updates in the member store are what keep that safe.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

SKIPPED_RESULT: dict[str, Any] = {"success": True, "skipped": True}


class JobLock:
    """Per-job-name running flags.

    ``acquire`` and ``release`` never await, so under a single event loop the
    check-and-set in ``acquire`` cannot interleave with another coroutine.
    """

    def __init__(self) -> None:
        self._running: set[str] = set()

    def acquire(self, job_name: str) -> bool:
        """Mark *job_name* as running; ``False`` if it already is."""
        if job_name in self._running:
            return False
        self._running.add(job_name)
        return True

    def release(self, job_name: str) -> None:
        self._running.discard(job_name)

    def is_running(self, job_name: str) -> bool:
        return job_name in self._running

    @property
    def running_jobs(self) -> list[str]:
        return sorted(self._running)

    async def run_exclusive(
        self,
        job_name: str,
        fn: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run *fn* under the lock for *job_name*.

        Returns ``{"success": True, "skipped": True}`` without calling *fn*
        when the job is already running.  The lock is released on every exit
        path, including when *fn* raises.
        """
        if not self.acquire(job_name):
            logger.warning("Job %s already running; skipping this invocation", job_name)
            return dict(SKIPPED_RESULT)
        try:
            return await fn()
        finally:
            self.release(job_name)
