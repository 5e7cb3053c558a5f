"""Operator endpoints for manual member status changes.

Manual changes go through the same transition table and compare-and-set
as jobs and webhooks, so an operator can never overwrite a concurrent
change they did not see.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException
from membership_core.models.member import MemberStatus, PaymentMethod, SubscriptionData
from membership_core.models.results import ErrorCode, OperationResult
from membership_core.state.database import session_scope
from pydantic import BaseModel, Field

from membership_api.dependencies import OperatorDep, ServicesDep
from membership_api.services.member_service import MemberService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/members", tags=["members"], dependencies=[OperatorDep])

_STATUS_CODES: dict[str, int] = {
    ErrorCode.MEMBER_NOT_FOUND.value: 404,
    ErrorCode.RACE_CONDITION.value: 409,
    ErrorCode.INVALID_STATUS_TRANSITION.value: 409,
    ErrorCode.INVALID_MEMBER_STATUS.value: 409,
    ErrorCode.STORE_ERROR.value: 503,
}


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class StatusChangeRequest(BaseModel):
    """Request body for ``POST /members/{member_id}/status``."""

    status: MemberStatus
    note: str | None = Field(default=None, max_length=500)
    expected_status: MemberStatus | None = Field(
        default=None,
        description="Apply only if the member is still in this status.",
    )


class ReactivateRequest(BaseModel):
    """Request body for ``POST /members/{member_id}/reactivate``."""

    subscription_id: str | None = None
    customer_id: str | None = None
    payment_method: PaymentMethod | None = None


def _respond(result: OperationResult) -> dict[str, Any]:
    if result.success:
        return result.data.model_dump(mode="json")
    assert result.error is not None  # noqa: S101
    raise HTTPException(
        status_code=_STATUS_CODES.get(result.error.code, 400),
        detail=result.error.model_dump(),
    )


@router.get("/{member_id}")
async def get_member(member_id: str, services: ServicesDep) -> dict[str, Any]:
    async with session_scope(services.session_factory) as session:
        result = await MemberService(session, services.settings).get_member(member_id)
    return _respond(result)


@router.post("/{member_id}/status")
async def change_status(member_id: str, body: StatusChangeRequest, services: ServicesDep) -> dict[str, Any]:
    """Move a member along one edge of the transition table."""
    async with session_scope(services.session_factory) as session:
        result = await MemberService(session, services.settings).update_status(
            member_id,
            body.status,
            note=body.note or "Manual status change by operator",
            expected_status=body.expected_status,
        )
    if result.success:
        logger.info("Operator moved member %s to %s", member_id, body.status.value, extra={"member_id": member_id})
    return _respond(result)


@router.post("/{member_id}/reactivate")
async def reactivate_member(member_id: str, body: ReactivateRequest, services: ServicesDep) -> dict[str, Any]:
    """Bring a removed member back as active."""
    subscription = SubscriptionData(
        subscription_id=body.subscription_id,
        customer_id=body.customer_id,
        payment_method=body.payment_method,
    )
    async with session_scope(services.session_factory) as session:
        result = await MemberService(session, services.settings).reactivate(member_id, subscription)
    if result.success:
        logger.info("Operator reactivated member %s", member_id, extra={"member_id": member_id})
    return _respond(result)
