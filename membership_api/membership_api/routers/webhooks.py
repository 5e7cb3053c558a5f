"""Payment provider webhook receiver."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse
from membership_core.models.webhook import InboundWebhookEvent
from pydantic import ValidationError

from membership_api.dependencies import ServicesDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SIGNATURE_HEADER = "X-Webhook-Signature"


def verify_signature(body: bytes, signature_header: str, secret: str) -> bool:
    """Compute HMAC-SHA256 of *body* and compare in constant time.

    The header carries the hex digest, optionally prefixed with ``sha256=``.
    """
    provided = signature_header.strip()
    if provided.startswith("sha256="):
        provided = provided[len("sha256=") :]
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, provided.lower())


@router.post("/payments")
async def payment_webhook(request: Request, services: ServicesDep) -> JSONResponse:
    """Receive one provider event and apply it at most once.

    Returns 200 when the event was applied or was already applied, and 500
    when its handler failed so the provider delivers it again.
    """
    secret = services.api_settings.webhook_secret
    if secret is None:
        raise HTTPException(status_code=503, detail="Webhook secret is not configured")

    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER, "")
    if not signature:
        raise HTTPException(status_code=401, detail=f"Missing {SIGNATURE_HEADER} header")
    if not verify_signature(body, signature, secret.get_secret_value()):
        logger.warning("Rejected webhook with an invalid signature")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        raw: Any = json.loads(body)
    except (json.JSONDecodeError, ValueError):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    if not isinstance(raw, dict):
        raise HTTPException(status_code=400, detail="Webhook body must be a JSON object")
    try:
        event = InboundWebhookEvent.from_provider_body(raw)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Webhook body needs an event id and an event type")
    request.state.webhook_event_id = event.external_event_id

    logger.info(
        "Webhook received: %s (%s)",
        event.external_event_id,
        event.event_type,
        extra={"event_id": event.external_event_id},
    )
    result = await services.gate.process(event)
    if result.success:
        return JSONResponse(status_code=200, content={"status": "ok", **(result.data or {})})
    return JSONResponse(
        status_code=500,
        content={"status": "error", "error": result.error.model_dump() if result.error else None},
    )
