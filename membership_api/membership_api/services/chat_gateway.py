"""Chat platform operations used by membership jobs.

Jobs depend only on the :class:`ChatGateway` protocol.  The Telegram
implementation maps Bot API failures onto stable error codes so jobs can
tell "already gone" apart from "needs an operator".
"""

from __future__ import annotations

import logging
import time
from typing import Any, Protocol

import httpx
from membership_core.models.results import ErrorCode, OperationResult

logger = logging.getLogger(__name__)

# Bans shorter than this are treated by Telegram as permanent; a short ban
# is effectively a kick that still lets the member rejoin after paying.
_KICK_BAN_SECONDS = 60

_NOT_IN_GROUP_MARKERS = ("user not found", "participant_id_invalid", "user_not_participant", "member not found")
_NO_PERMISSION_MARKERS = ("not enough rights", "chat_admin_required", "have no rights")
_BLOCKED_MARKERS = ("bot was blocked", "chat not found", "user is deactivated", "bot can't initiate")


class ChatGateway(Protocol):
    """Operations against the community chat."""

    async def kick_member(self, user_chat_id: int, community_chat_id: int) -> OperationResult: ...

    async def send_private_message(self, user_chat_id: int, text: str) -> OperationResult: ...


class LoggingChatGateway:
    """Gateway used when no bot is configured; records intent only."""

    async def kick_member(self, user_chat_id: int, community_chat_id: int) -> OperationResult:
        logger.warning("Chat gateway not configured; would kick %s from %s", user_chat_id, community_chat_id)
        return OperationResult.fail(ErrorCode.CONFIG_MISSING, "chat gateway not configured")

    async def send_private_message(self, user_chat_id: int, text: str) -> OperationResult:
        logger.info("Chat gateway not configured; would message %s", user_chat_id)
        return OperationResult.ok({"delivered": False})


class TelegramChatGateway:
    """:class:`ChatGateway` over the Telegram Bot API.

    Parameters
    ----------
    bot_token:
        Bot API token.  The bot must be an administrator of the community.
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
        *,
        api_url: str = "https://api.telegram.org",
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base = f"{api_url.rstrip('/')}/bot{bot_token}"
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _call(self, method: str, payload: dict[str, Any]) -> tuple[bool, int, str, dict[str, Any]]:
        try:
            response = await self._client.post(f"{self._base}/{method}", json=payload)
        except httpx.HTTPError as exc:
            return False, 0, f"transport error: {exc}", {}
        try:
            body = response.json()
        except ValueError:
            body = {}
        ok = bool(body.get("ok")) and response.status_code < 400
        description = str(body.get("description", f"HTTP {response.status_code}"))
        return ok, response.status_code, description, body

    async def kick_member(self, user_chat_id: int, community_chat_id: int) -> OperationResult:
        until_date = int(time.time()) + _KICK_BAN_SECONDS
        ok, status_code, description, _ = await self._call(
            "banChatMember",
            {"chat_id": community_chat_id, "user_id": user_chat_id, "until_date": until_date},
        )
        if ok:
            return OperationResult.ok({"until_date": until_date})

        lowered = description.lower()
        if any(marker in lowered for marker in _NOT_IN_GROUP_MARKERS):
            return OperationResult.fail(ErrorCode.USER_NOT_IN_GROUP, description)
        if status_code == 403 or any(marker in lowered for marker in _NO_PERMISSION_MARKERS):
            return OperationResult.fail(ErrorCode.BOT_NO_PERMISSION, description)
        return OperationResult.fail(ErrorCode.CHAT_ERROR, description)

    async def send_private_message(self, user_chat_id: int, text: str) -> OperationResult:
        ok, status_code, description, body = await self._call(
            "sendMessage",
            {"chat_id": user_chat_id, "text": text, "disable_web_page_preview": True},
        )
        if ok:
            message_id = (body.get("result") or {}).get("message_id")
            return OperationResult.ok({"delivered": True, "message_id": message_id})

        lowered = description.lower()
        if status_code == 403 or any(marker in lowered for marker in _BLOCKED_MARKERS):
            return OperationResult.fail(ErrorCode.USER_BLOCKED_BOT, description)
        return OperationResult.fail(ErrorCode.CHAT_ERROR, description)
