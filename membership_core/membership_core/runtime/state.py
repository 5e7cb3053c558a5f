"""Process-wide runtime state shared by jobs, webhooks and alerting."""

from __future__ import annotations

from dataclasses import dataclass, field

from membership_core.runtime.debounce import AlertDebouncer
from membership_core.runtime.job_lock import JobLock


@dataclass
class RuntimeState:
    """Container built once at startup and passed by reference.

    Holds the in-process job lock and the alert debounce cache.  Nothing in
    it is persisted: a restart clears both.
    """

    job_lock: JobLock = field(default_factory=JobLock)
    debouncer: AlertDebouncer = field(default_factory=AlertDebouncer)
