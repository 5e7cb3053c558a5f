"""Operator alerting with per-class debounce windows.

Alert delivery is fire-and-forget: a failing sink is logged and never
propagates into the job or webhook that raised the alert.  Repeated alerts
of the same key are suppressed by :class:`AlertDebouncer` so a failure loop
does not flood the operator channel.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import httpx
from membership_core.config import Settings
from membership_core.runtime.debounce import AlertDebouncer

logger = logging.getLogger(__name__)

# Telegram rejects messages longer than 4096 characters.
_MAX_MESSAGE_LENGTH = 4000


class OperatorAlertSink(Protocol):
    """Destination for operator notifications."""

    async def notify_operator(self, message: str) -> None: ...


class LoggingAlertSink:
    """Sink used when no alert channel is configured."""

    async def notify_operator(self, message: str) -> None:
        logger.warning("OPERATOR ALERT: %s", message)


class TelegramAlertSink:
    """Deliver operator alerts through the Telegram Bot API ``sendMessage``.

    Parameters
    ----------
    bot_token:
        Bot API token.
    chat_id:
        Operator chat or group id.
    api_url:
        Bot API root URL.
    timeout:
        Per-request timeout in seconds.
    http_client:
        Optional pre-built client, injected by tests.
    """

    def __init__(
        self,
        bot_token: str,
        chat_id: int,
        *,
        api_url: str = "https://api.telegram.org",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = f"{api_url.rstrip('/')}/bot{bot_token}/sendMessage"
        self._chat_id = chat_id
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def notify_operator(self, message: str) -> None:
        text = message if len(message) <= _MAX_MESSAGE_LENGTH else message[: _MAX_MESSAGE_LENGTH - 3] + "..."
        response = await self._client.post(
            self._url,
            json={"chat_id": self._chat_id, "text": text, "disable_web_page_preview": True},
        )
        response.raise_for_status()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class AlertService:
    """Formats, debounces and delivers operator alerts.

    Parameters
    ----------
    sink:
        Where alerts are delivered.
    debouncer:
        Shared debounce cache (from :class:`RuntimeState`).
    settings:
        Source of the debounce windows and the delivery timeout.
    """

    def __init__(
        self,
        sink: OperatorAlertSink,
        debouncer: AlertDebouncer,
        settings: Settings,
    ) -> None:
        self._sink = sink
        self._debouncer = debouncer
        self._settings = settings

    async def notify(self, message: str) -> bool:
        """Deliver *message*; returns ``False`` instead of raising on failure."""
        try:
            await asyncio.wait_for(
                self._sink.notify_operator(message),
                timeout=self._settings.alert_timeout_seconds,
            )
        except Exception as exc:
            logger.warning("Operator alert delivery failed: %s", exc, exc_info=True)
            return False
        return True

    async def _debounced(self, key: str, window_minutes: int, message: str) -> dict[str, Any]:
        if not self._debouncer.can_send(key, window=window_minutes * 60):
            logger.info("Alert %s suppressed by debounce window", key)
            return {"success": True, "debounced": True}
        delivered = await self.notify(message)
        return {"success": delivered, "debounced": False}

    async def job_failure_alert(
        self,
        job_name: str,
        error_message: str,
        execution_id: str | None = None,
    ) -> dict[str, Any]:
        """Alert that a job failed, at most once per job per window."""
        message = "\n".join(
            [
                "JOB FAILED",
                f"Job: {job_name}",
                f"Error: {error_message}",
                f"Execution: {execution_id or 'N/A'}",
            ]
        )
        return await self._debounced(
            f"job_failure:{job_name}",
            self._settings.job_failure_debounce_minutes,
            message,
        )

    async def webhook_failure_alert(
        self,
        external_event_id: str,
        event_type: str,
        attempts: int,
        last_error: str,
    ) -> dict[str, Any]:
        """Alert that a webhook event exhausted its processing attempts."""
        message = "\n".join(
            [
                "WEBHOOK PROCESSING FAILED",
                f"Event type: {event_type}",
                f"Event id: {external_event_id}",
                f"Attempts: {attempts}",
                f"Last error: {last_error}",
                "Manual review required.",
            ]
        )
        return await self._debounced(
            f"webhook_failure:{external_event_id}",
            self._settings.webhook_failure_debounce_minutes,
            message,
        )

    async def kick_failure_alert(
        self,
        member_id: str,
        username: str | None,
        chat_id: int | None,
        error_code: str,
        error_message: str,
    ) -> dict[str, Any]:
        """Alert that a member could not be removed from the community."""
        message = "\n".join(
            [
                "MEMBER REMOVAL NEEDS ATTENTION",
                f"Member: @{username or 'unknown'} (chat id {chat_id if chat_id is not None else 'N/A'})",
                f"Member id: {member_id}",
                f"Error: {error_code} - {error_message}",
                "The member is already marked removed and will not be retried.",
                "Remove them from the community by hand.",
            ]
        )
        return await self._debounced(
            f"kick_failure:{member_id}:{error_code}",
            self._settings.kick_failure_debounce_minutes,
            message,
        )

    async def stuck_jobs_alert(self, jobs: list[tuple[str, str]], max_age_minutes: int) -> bool:
        """One alert listing every job that was force-failed as stuck."""
        lines = [f"STUCK JOBS MARKED FAILED (running > {max_age_minutes} min)"]
        lines.extend(f"- {job_name} (execution {execution_id})" for execution_id, job_name in jobs)
        return await self.notify("\n".join(lines))
