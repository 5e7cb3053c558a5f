"""Structured access log for webhook deliveries and operator calls."""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("membership_api.access")

_CORRELATION_HEADER: str = "X-Correlation-ID"


def _access_record(request: Request, status_code: int, duration_ms: float) -> dict[str, Any]:
    record: dict[str, Any] = {
        "method": request.method,
        "path": request.url.path,
        "status_code": status_code,
        "duration_ms": duration_ms,
        "correlation_id": request.state.correlation_id,
        "user_agent": request.headers.get("user-agent"),
    }
    # Set by the webhook router once the body has been parsed.
    event_id = getattr(request.state, "webhook_event_id", None)
    if event_id is not None:
        record["webhook_event_id"] = event_id
    return record


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One access record per request, at a level chosen by status code.

    The correlation id is taken from ``X-Correlation-ID`` or generated, and
    echoed back so a provider's delivery log can be matched to ours.  No
    header values are logged: webhook signatures and operator tokens never
    reach the log stream.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request.state.correlation_id = request.headers.get(_CORRELATION_HEADER) or str(uuid.uuid4())

        start = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[_CORRELATION_HEADER] = request.state.correlation_id
            return response
        finally:
            record = _access_record(request, status_code, round((time.monotonic() - start) * 1000, 2))
            level = logging.ERROR if status_code >= 500 else logging.WARNING if status_code >= 400 else logging.INFO
            logger.log(level, "%s %s -> %d", request.method, request.url.path, status_code, extra={"request": record})
