"""Async HTTP client for the external subscription provider.

Authenticates with OAuth client credentials, caches the access token until
shortly before it expires, and retries transient failures with exponential
backoff.  Every public method returns an :class:`OperationResult`; transport
and HTTP errors never propagate to callers.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from membership_core.models.results import ErrorCode, OperationResult
from membership_core.runtime.retry import RetryConfig, async_retry_with_backoff

logger = logging.getLogger(__name__)

# Refresh the token this many seconds before the provider says it expires.
_TOKEN_REFRESH_MARGIN = 60.0


class _SubscriptionNotFound(Exception):
    pass


class _ProviderAuthError(Exception):
    pass


class _ProviderTransientError(Exception):
    pass


class SubscriptionProviderClient:
    """Read-only view of subscriptions held by the payment provider.

    Parameters
    ----------
    base_url:
        Root URL of the provider API.
    client_id, client_secret:
        OAuth client credentials.  When either is missing every call fails
        with ``PROVIDER_AUTH_ERROR`` without touching the network.
    timeout:
        Per-request timeout in seconds.
    retry:
        Backoff parameters for transient failures.
    http_client:
        Optional pre-built client, injected by tests.
    clock:
        Monotonic time source used for the token cache.
    sleep:
        Awaitable sleep used between retries.
    """

    def __init__(
        self,
        base_url: str,
        client_id: str | None,
        client_secret: str | None,
        *,
        timeout: float = 10.0,
        retry: RetryConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client_id = client_id
        self._client_secret = client_secret
        self._retry = retry or RetryConfig(max_attempts=3, base_delay=1.0)
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._clock = clock
        self._sleep = sleep
        self._token: str | None = None
        self._token_expires_at = 0.0

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    def reset_token_cache(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    # -- Authentication ------------------------------------------------------

    async def _access_token(self) -> str:
        if self._token is not None and self._clock() < self._token_expires_at:
            return self._token

        if not self._client_id or not self._client_secret:
            raise _ProviderAuthError("provider credentials are not configured")

        try:
            response = await self._client.post(
                f"{self._base_url}/oauth/token",
                json={
                    "grant_type": "client_credentials",
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
            )
        except httpx.HTTPError as exc:
            raise _ProviderTransientError(f"token request failed: {exc}") from exc

        if response.status_code in (400, 401, 403):
            raise _ProviderAuthError(f"token request rejected with HTTP {response.status_code}")
        if response.status_code >= 400:
            raise _ProviderTransientError(f"token request failed with HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise _ProviderTransientError("token response was not JSON") from exc
        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise _ProviderAuthError("token response did not include access_token")
        expires_in = float(body.get("expires_in", 3600))
        self._token = str(token)
        self._token_expires_at = self._clock() + expires_in - _TOKEN_REFRESH_MARGIN
        logger.info("Provider access token refreshed (expires in %.0fs)", expires_in)
        return self._token

    # -- Subscriptions -------------------------------------------------------

    async def _get_subscription_once(self, subscription_id: str) -> dict[str, Any]:
        token = await self._access_token()
        try:
            response = await self._client.get(
                f"{self._base_url}/subscriptions/{subscription_id}",
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as exc:
            raise _ProviderTransientError(str(exc) or exc.__class__.__name__) from exc

        if response.status_code == 404:
            raise _SubscriptionNotFound(subscription_id)
        if response.status_code in (401, 403):
            self.reset_token_cache()
            raise _ProviderAuthError(f"subscription request rejected with HTTP {response.status_code}")
        if response.status_code >= 400:
            raise _ProviderTransientError(f"HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise _ProviderTransientError(f"non-JSON response (HTTP {response.status_code})") from exc
        # Some provider endpoints wrap the resource in {"data": {...}}.
        if isinstance(body, dict) and isinstance(body.get("data"), dict) and "status" not in body:
            body = body["data"]
        return body if isinstance(body, dict) else {}

    async def get_subscription(self, subscription_id: str | None) -> OperationResult:
        """Fetch one subscription.

        Returns ``OperationResult.ok(<subscription dict>)`` with at least a
        ``status`` key on success.  ``SUBSCRIPTION_NOT_FOUND`` and
        ``PROVIDER_AUTH_ERROR`` are returned on the first occurrence;
        other failures are retried and end in ``PROVIDER_API_ERROR``.
        """
        if not subscription_id:
            logger.warning("get_subscription called without a subscription id")
            return OperationResult.fail(ErrorCode.INVALID_SUBSCRIPTION_ID, "subscription id is required")

        extra: dict[str, Any] = {}
        if self._sleep is not None:
            extra["sleep"] = self._sleep

        try:
            data = await async_retry_with_backoff(
                lambda: self._get_subscription_once(subscription_id),
                self._retry,
                retryable_exceptions=(_ProviderTransientError,),
                operation=f"get_subscription({subscription_id})",
                **extra,
            )
        except _SubscriptionNotFound:
            logger.warning("Subscription %s not found at provider", subscription_id)
            return OperationResult.fail(ErrorCode.SUBSCRIPTION_NOT_FOUND, "subscription not found at provider")
        except _ProviderAuthError as exc:
            logger.error("Provider authentication failed: %s", exc)
            return OperationResult.fail(ErrorCode.PROVIDER_AUTH_ERROR, str(exc))
        except _ProviderTransientError as exc:
            logger.error("Provider request for %s failed after retries: %s", subscription_id, exc)
            return OperationResult.fail(ErrorCode.PROVIDER_API_ERROR, f"max retries exceeded: {exc}")

        logger.debug("Fetched subscription %s", subscription_id)
        return OperationResult.ok(data)
