"""In-process runtime primitives: job lock, alert debouncer, retry."""

from membership_core.runtime.debounce import AlertDebouncer
from membership_core.runtime.job_lock import SKIPPED_RESULT, JobLock
from membership_core.runtime.retry import RetryConfig, async_retry_with_backoff
from membership_core.runtime.state import RuntimeState

__all__ = [
    "SKIPPED_RESULT",
    "AlertDebouncer",
    "JobLock",
    "RetryConfig",
    "RuntimeState",
    "async_retry_with_backoff",
]
