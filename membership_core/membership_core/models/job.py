"""Job execution ledger models."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class JobExecutionStatus(str, Enum):
    """Lifecycle state of a single job run."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class JobExecution(BaseModel):
    """Snapshot of one row in the job execution ledger.

    Records are created in ``RUNNING`` when a job starts and are finalised
    exactly once to ``SUCCESS`` or ``FAILED``.  They are read-only after
    finalisation.
    """

    model_config = ConfigDict(from_attributes=True)

    id: str = Field(..., min_length=1)
    job_name: str = Field(..., min_length=1)
    status: JobExecutionStatus
    started_at: datetime
    finished_at: datetime | None = None
    duration_ms: int | None = Field(default=None, ge=0)
    result: dict[str, Any] | None = None
    error_message: str | None = None
