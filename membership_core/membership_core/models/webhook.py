"""Inbound payment provider webhook models."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class WebhookEventStatus(str, Enum):
    """Processing state of a stored webhook event."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookEventType(str, Enum):
    """Provider event types with a registered handler."""

    PURCHASE_APPROVED = "purchase_approved"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_RENEWED = "subscription_renewed"
    SUBSCRIPTION_RENEWAL_REFUSED = "subscription_renewal_refused"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    REFUND = "refund"


class InboundWebhookEvent(BaseModel):
    """A provider event as received, before any processing.

    ``external_event_id`` is the provider-assigned delivery identifier and is
    the idempotency key: redeliveries carry the same id.
    """

    external_event_id: str = Field(..., min_length=1, max_length=256)
    event_type: str = Field(..., min_length=1, max_length=128)
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_provider_body(cls, body: dict[str, Any]) -> InboundWebhookEvent:
        """Build an event from the raw provider JSON body.

        The provider sends ``{"id": ..., "event": ..., "data": {...}}``;
        ``type`` is accepted as an alias of ``event``.
        """
        event_id = body.get("id") or body.get("event_id")
        event_type = body.get("event") or body.get("type")
        data = body.get("data")
        return cls(
            external_event_id=str(event_id) if event_id is not None else "",
            event_type=str(event_type) if event_type is not None else "",
            payload=data if isinstance(data, dict) else {},
        )
