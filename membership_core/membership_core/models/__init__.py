"""Domain models for the membership engine."""

from membership_core.models.job import JobExecution, JobExecutionStatus
from membership_core.models.member import (
    Member,
    MemberCreate,
    MemberStatus,
    PaymentMethod,
    SubscriptionData,
)
from membership_core.models.results import ErrorCode, OperationError, OperationResult
from membership_core.models.webhook import (
    InboundWebhookEvent,
    WebhookEventStatus,
    WebhookEventType,
)

__all__ = [
    "ErrorCode",
    "InboundWebhookEvent",
    "JobExecution",
    "JobExecutionStatus",
    "Member",
    "MemberCreate",
    "MemberStatus",
    "OperationError",
    "OperationResult",
    "PaymentMethod",
    "SubscriptionData",
    "WebhookEventStatus",
    "WebhookEventType",
]
