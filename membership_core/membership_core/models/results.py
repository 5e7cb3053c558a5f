"""Uniform operation results and the error code taxonomy.

Every public operation of the engine returns an :class:`OperationResult`
rather than raising, so jobs and webhook handlers can branch on a stable
``error.code`` without catching transport- or store-specific exceptions.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ErrorCode(str, Enum):
    """Stable error codes surfaced by engine operations."""

    RACE_CONDITION = "RACE_CONDITION"
    INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"
    INVALID_MEMBER_STATUS = "INVALID_MEMBER_STATUS"
    MEMBER_NOT_FOUND = "MEMBER_NOT_FOUND"
    MEMBER_ALREADY_EXISTS = "MEMBER_ALREADY_EXISTS"
    STORE_ERROR = "STORE_ERROR"
    SUBSCRIPTION_NOT_FOUND = "SUBSCRIPTION_NOT_FOUND"
    PROVIDER_API_ERROR = "PROVIDER_API_ERROR"
    PROVIDER_AUTH_ERROR = "PROVIDER_AUTH_ERROR"
    INVALID_SUBSCRIPTION_ID = "INVALID_SUBSCRIPTION_ID"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    UNKNOWN_EVENT_TYPE = "UNKNOWN_EVENT_TYPE"
    HANDLER_ERROR = "HANDLER_ERROR"
    JOB_ALREADY_RUNNING = "JOB_ALREADY_RUNNING"
    USER_NOT_IN_GROUP = "USER_NOT_IN_GROUP"
    BOT_NO_PERMISSION = "BOT_NO_PERMISSION"
    USER_BLOCKED_BOT = "USER_BLOCKED_BOT"
    CHAT_ERROR = "CHAT_ERROR"
    CONFIG_MISSING = "CONFIG_MISSING"
    INVALID_DATA = "INVALID_DATA"


class OperationError(BaseModel):
    """Error detail attached to a failed :class:`OperationResult`."""

    code: str
    message: str = ""
    details: dict[str, Any] = Field(default_factory=dict)


class OperationResult(BaseModel):
    """Outcome of an engine operation: ``success`` plus ``data`` or ``error``."""

    success: bool
    data: Any = None
    error: OperationError | None = None

    @classmethod
    def ok(cls, data: Any = None) -> OperationResult:
        return cls(success=True, data=data)

    @classmethod
    def fail(
        cls,
        code: ErrorCode | str,
        message: str = "",
        **details: Any,
    ) -> OperationResult:
        value = code.value if isinstance(code, ErrorCode) else code
        return cls(
            success=False,
            error=OperationError(code=value, message=message, details=details),
        )

    @property
    def error_code(self) -> str | None:
        """The failure code, or ``None`` on success."""
        return self.error.code if self.error is not None else None
