"""Payment provider event handlers.

Handlers translate one provider event into member operations.  They run
inside the transaction opened by :class:`WebhookIdempotencyGate`, so they
never commit; the gate commits the member change and the processed stamp
together.  Member notifications are not sent from here: a handler attaches
a ``notification`` to its result and the gate delivers it after commit.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from typing import Any

from membership_core.config import Settings
from membership_core.models.member import (
    Member,
    MemberStatus,
    PaymentMethod,
    SubscriptionData,
)
from membership_core.models.results import ErrorCode, OperationResult
from membership_core.models.webhook import WebhookEventType
from sqlalchemy.ext.asyncio import AsyncSession

from membership_api.services.chat_gateway import ChatGateway
from membership_api.services.member_service import MemberService

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_PAYMENT_METHOD_MAP: dict[str, PaymentMethod] = {
    "credit_card": PaymentMethod.CARD_RECURRING,
    "debit_card": PaymentMethod.CARD_RECURRING,
    "pix": PaymentMethod.PIX,
    "picpay": PaymentMethod.PIX,
    "boleto": PaymentMethod.BOLETO,
    "bank_slip": PaymentMethod.BOLETO,
}


def normalize_payment_method(raw: str | None) -> PaymentMethod:
    """Map a provider payment method onto ours; unknown methods are card."""
    if not raw:
        return PaymentMethod.CARD_RECURRING
    return _PAYMENT_METHOD_MAP.get(raw.lower(), PaymentMethod.CARD_RECURRING)


def _lookup(payload: dict[str, Any], *paths: tuple[str, ...]) -> Any:
    for path in paths:
        node: Any = payload
        for key in path:
            if not isinstance(node, dict):
                node = None
                break
            node = node.get(key)
        if node:
            return node
    return None


def extract_email(payload: dict[str, Any]) -> str | None:
    """Customer email from the payload, or ``None`` when absent or malformed."""
    email = _lookup(payload, ("customer", "email"), ("data", "customer", "email"), ("email",))
    if email is None:
        return None
    if not isinstance(email, str) or not _EMAIL_RE.match(email):
        logger.warning("Ignoring malformed email in webhook payload")
        return None
    return email.strip().lower()


def extract_subscription_data(payload: dict[str, Any]) -> SubscriptionData:
    """Subscription identifiers; the order id stands in for a missing subscription id."""
    order_id = _lookup(payload, ("id",), ("data", "id"))
    subscription_id = _lookup(payload, ("subscription",), ("data", "subscription"))
    customer_id = _lookup(payload, ("customer", "id"), ("data", "customer", "id"))
    method = _lookup(payload, ("paymentMethod",), ("data", "paymentMethod"))
    resolved = subscription_id or order_id
    return SubscriptionData(
        subscription_id=str(resolved) if resolved is not None else None,
        customer_id=str(customer_id) if customer_id is not None else None,
        payment_method=normalize_payment_method(method if isinstance(method, str) else None),
    )


def _skipped(reason: str, member: Member | None = None) -> OperationResult:
    data: dict[str, Any] = {"skipped": True, "reason": reason}
    if member is not None:
        data["member"] = member.summary()
    return OperationResult.ok(data)


def _applied(action: str, result: OperationResult, notification: str | None = None) -> OperationResult:
    """Reduce a member operation result to a JSON-safe handler outcome."""
    if not result.success:
        return result
    member: Member = result.data
    data: dict[str, Any] = {"action": action, "member": member.summary()}
    if notification and member.external_chat_id is not None:
        data["notification"] = {"chat_id": member.external_chat_id, "text": notification}
    return OperationResult.ok(data)


Handler = Callable[[MemberService, dict[str, Any]], Awaitable[OperationResult]]


class WebhookHandlers:
    """Dispatch provider events to member operations.

    Parameters
    ----------
    settings:
        Core settings handed to the per-event :class:`MemberService`.
    chat:
        Gateway used to deliver post-commit member notifications.
    """

    def __init__(self, settings: Settings, chat: ChatGateway) -> None:
        self._settings = settings
        self._chat = chat
        self._handlers: dict[str, Handler] = {
            WebhookEventType.PURCHASE_APPROVED.value: self.handle_purchase_approved,
            WebhookEventType.SUBSCRIPTION_CREATED.value: self.handle_purchase_approved,
            WebhookEventType.SUBSCRIPTION_RENEWED.value: self.handle_subscription_renewed,
            WebhookEventType.SUBSCRIPTION_RENEWAL_REFUSED.value: self.handle_payment_stopped,
            WebhookEventType.SUBSCRIPTION_CANCELED.value: self.handle_payment_stopped,
            WebhookEventType.REFUND.value: self.handle_refund,
        }

    @property
    def event_types(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, session: AsyncSession, event_type: str, payload: dict[str, Any]) -> OperationResult:
        """Run the handler for *event_type* inside *session*'s transaction."""
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.warning("No handler for webhook event type %r", event_type)
            return OperationResult.fail(ErrorCode.UNKNOWN_EVENT_TYPE, f"unknown event type: {event_type}")
        members = MemberService(session, self._settings)
        result = await handler(members, payload)
        logger.info("Webhook %s handled: success=%s", event_type, result.success)
        return result

    async def deliver_notification(self, outcome: dict[str, Any]) -> None:
        """Send the member message a handler attached to its outcome, best effort."""
        notification = outcome.get("notification")
        if not notification:
            return
        result = await self._chat.send_private_message(notification["chat_id"], notification["text"])
        if not result.success:
            logger.warning(
                "Member notification to %s failed: %s",
                notification["chat_id"],
                result.error_code,
            )

    # -- handlers ------------------------------------------------------------

    async def handle_purchase_approved(self, members: MemberService, payload: dict[str, Any]) -> OperationResult:
        email = extract_email(payload)
        if email is None:
            return OperationResult.fail(ErrorCode.INVALID_PAYLOAD, "no valid email in payload")
        subscription = extract_subscription_data(payload)

        found = await members.get_member_by_email(email)
        if not found.success:
            if found.error_code != ErrorCode.MEMBER_NOT_FOUND.value:
                return found
            logger.info("Purchase for unknown email; creating active member")
            return _applied("created", await members.create_active_member(email, subscription))

        member: Member = found.data
        if member.status is MemberStatus.REMOVED:
            return _applied(
                "reactivated",
                await members.reactivate(member.id, subscription),
                "Your payment was confirmed and your access is active again. Welcome back!",
            )
        return _applied(
            "activated",
            await members.activate_member(member.id, subscription),
            "Payment confirmed. Your subscription is active.",
        )

    async def handle_subscription_renewed(self, members: MemberService, payload: dict[str, Any]) -> OperationResult:
        email = extract_email(payload)
        if email is None:
            return OperationResult.fail(ErrorCode.INVALID_PAYLOAD, "no valid email in payload")

        found = await members.get_member_by_email(email)
        if not found.success:
            return found

        member: Member = found.data
        if member.status is MemberStatus.REMOVED:
            return _applied(
                "reactivated",
                await members.reactivate(member.id, extract_subscription_data(payload)),
                "Your payment was confirmed and your access is active again. Welcome back!",
            )
        if member.status is MemberStatus.TRIAL:
            return _applied(
                "activated",
                await members.activate_member(member.id, extract_subscription_data(payload)),
                "Payment confirmed. Your subscription is active.",
            )
        return _applied(
            "renewed",
            await members.renew_subscription(member.id),
            "Renewal confirmed. Thank you for staying with us.",
        )

    async def handle_payment_stopped(self, members: MemberService, payload: dict[str, Any]) -> OperationResult:
        """Refused renewal or cancellation: an active member becomes delinquent."""
        email = extract_email(payload)
        if email is None:
            return OperationResult.fail(ErrorCode.INVALID_PAYLOAD, "no valid email in payload")

        found = await members.get_member_by_email(email)
        if not found.success:
            return found

        member: Member = found.data
        if member.status is not MemberStatus.ACTIVE:
            return _skipped("not_active", member)
        return _applied(
            "marked_delinquent",
            await members.mark_delinquent(member.id, expected_status=MemberStatus.ACTIVE),
        )

    async def handle_refund(self, members: MemberService, payload: dict[str, Any]) -> OperationResult:
        email = extract_email(payload)
        if email is None:
            return OperationResult.fail(ErrorCode.INVALID_PAYLOAD, "no valid email in payload")

        found = await members.get_member_by_email(email)
        if not found.success:
            if found.error_code == ErrorCode.MEMBER_NOT_FOUND.value:
                return _skipped("member_not_found")
            return found

        member: Member = found.data
        if member.status is MemberStatus.REMOVED:
            return _skipped("already_removed", member)
        return _applied("removed", await members.mark_removed(member.id, "refund", expected_status=member.status))
