"""Member domain models.

``Member`` is the read-only snapshot handed out by the service layer.  It is
built from the persisted row via ``Member.model_validate(row)`` so callers
never hold a live ORM object across session boundaries.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class MemberStatus(str, Enum):
    """Lifecycle state of a member."""

    TRIAL = "trial"
    ACTIVE = "active"
    DELINQUENT = "delinquent"
    REMOVED = "removed"


class PaymentMethod(str, Enum):
    """Normalised payment method of a subscription."""

    CARD_RECURRING = "card_recurring"
    PIX = "pix"
    BOLETO = "boleto"


class SubscriptionData(BaseModel):
    """Subscription identifiers extracted from a provider event."""

    subscription_id: str | None = None
    customer_id: str | None = None
    payment_method: PaymentMethod | None = None


class Member(BaseModel):
    """Snapshot of a persisted member."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    external_chat_id: int | None = None
    external_username: str | None = None
    email: str | None = None
    status: MemberStatus
    trial_started_at: datetime | None = None
    trial_ends_at: datetime | None = None
    subscription_started_at: datetime | None = None
    subscription_ends_at: datetime | None = None
    external_subscription_id: str | None = None
    external_customer_id: str | None = None
    payment_method: PaymentMethod | None = None
    last_payment_at: datetime | None = None
    delinquent_at: datetime | None = None
    kicked_at: datetime | None = None
    tenant_id: str | None = None
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def summary(self) -> dict[str, str | None]:
        """Compact JSON-safe description used in event outcomes and alerts."""
        return {
            "member_id": self.id,
            "status": self.status.value,
            "external_subscription_id": self.external_subscription_id,
        }


class MemberCreate(BaseModel):
    """Input for creating a member from a bot join or a payment event."""

    external_chat_id: int | None = Field(default=None, description="Chat platform user id.")
    external_username: str | None = None
    email: str | None = None
