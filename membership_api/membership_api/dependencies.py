"""Service wiring and FastAPI dependency injection.

The whole service graph is built once by :func:`build_services` (in the
application lifespan or by the CLI) and shared by reference, so the job
lock and the alert debounce cache are process-wide without module globals.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request
from membership_core.config import Settings, load_settings
from membership_core.provider.client import SubscriptionProviderClient
from membership_core.runtime.retry import RetryConfig
from membership_core.runtime.state import RuntimeState
from membership_core.state.database import create_session_factory, get_engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from membership_api.config import APISettings, load_api_settings
from membership_api.services.alert_service import (
    AlertService,
    LoggingAlertSink,
    OperatorAlertSink,
    TelegramAlertSink,
)
from membership_api.services.chat_gateway import ChatGateway, LoggingChatGateway, TelegramChatGateway
from membership_api.services.job_execution_service import JobExecutionLedger
from membership_api.services.jobs import JobContext, JobRunner
from membership_api.services.reconciliation_service import ReconciliationEngine, SubscriptionLookup
from membership_api.services.webhook_gate import WebhookIdempotencyGate
from membership_api.services.webhook_processors import WebhookHandlers

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


# ---------------------------------------------------------------------------
# Service container
# ---------------------------------------------------------------------------


@dataclass
class Services:
    """Everything a request handler, job or CLI command needs."""

    settings: Settings
    api_settings: APISettings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    runtime: RuntimeState
    alerts: AlertService
    chat: ChatGateway
    provider: SubscriptionLookup
    ledger: JobExecutionLedger
    handlers: WebhookHandlers
    gate: WebhookIdempotencyGate
    reconciliation: ReconciliationEngine
    runner: JobRunner
    _closeables: list[Any] = field(default_factory=list)

    async def aclose(self) -> None:
        """Close owned HTTP clients and dispose the engine pool."""
        for resource in self._closeables:
            await resource.close()
        await self.engine.dispose()


def build_services(
    settings: Settings | None = None,
    api_settings: APISettings | None = None,
    *,
    engine: AsyncEngine | None = None,
    runtime: RuntimeState | None = None,
    sink: OperatorAlertSink | None = None,
    chat: ChatGateway | None = None,
    provider: SubscriptionLookup | None = None,
) -> Services:
    """Assemble the service graph.

    Any collaborator may be passed in to replace the configured one; tests
    use this to supply an in-memory engine and fake gateways.
    """
    settings = settings or load_settings()
    api_settings = api_settings or get_settings()
    closeables: list[Any] = []

    if engine is None:
        engine = get_engine(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
        )
    session_factory = create_session_factory(engine)
    runtime = runtime or RuntimeState()

    bot_token = api_settings.bot_token.get_secret_value() if api_settings.bot_token else None
    if sink is None:
        if bot_token and api_settings.operator_chat_id is not None:
            telegram_sink = TelegramAlertSink(
                bot_token,
                api_settings.operator_chat_id,
                api_url=api_settings.telegram_api_url,
                timeout=settings.alert_timeout_seconds,
            )
            closeables.append(telegram_sink)
            sink = telegram_sink
        else:
            logger.warning("No operator alert channel configured; alerts go to the log only")
            sink = LoggingAlertSink()

    if chat is None:
        if bot_token:
            telegram_chat = TelegramChatGateway(bot_token, api_url=api_settings.telegram_api_url)
            closeables.append(telegram_chat)
            chat = telegram_chat
        else:
            chat = LoggingChatGateway()

    if provider is None:
        secret = settings.provider_client_secret.get_secret_value() if settings.provider_client_secret else None
        provider_client = SubscriptionProviderClient(
            settings.provider_base_url,
            settings.provider_client_id,
            secret,
            timeout=settings.provider_timeout,
            retry=RetryConfig(
                max_attempts=settings.provider_max_attempts,
                base_delay=settings.provider_retry_base_delay,
            ),
        )
        closeables.append(provider_client)
        provider = provider_client

    alerts = AlertService(sink, runtime.debouncer, settings)
    ledger = JobExecutionLedger(session_factory, alerts)
    handlers = WebhookHandlers(settings, chat)
    gate = WebhookIdempotencyGate(session_factory, handlers, alerts, settings)
    reconciliation = ReconciliationEngine(session_factory, provider, alerts, runtime.job_lock, settings)
    runner = JobRunner(
        JobContext(
            settings=settings,
            session_factory=session_factory,
            runtime=runtime,
            alerts=alerts,
            ledger=ledger,
            chat=chat,
            gate=gate,
            reconciliation=reconciliation,
            community_chat_id=api_settings.community_chat_id,
        )
    )
    return Services(
        settings=settings,
        api_settings=api_settings,
        engine=engine,
        session_factory=session_factory,
        runtime=runtime,
        alerts=alerts,
        chat=chat,
        provider=provider,
        ledger=ledger,
        handlers=handlers,
        gate=gate,
        reconciliation=reconciliation,
        runner=runner,
        _closeables=closeables,
    )


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def get_services(request: Request) -> Services:
    services: Services | None = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Services have not been initialised. Ensure the application lifespan ran.")
    return services


ServicesDep = Annotated[Services, Depends(get_services)]


async def get_db_session(services: ServicesDep) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on error."""
    session = services.session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]


def require_operator(request: Request, services: ServicesDep) -> None:
    """Reject requests without the configured operator bearer token."""
    expected = services.api_settings.operator_token
    if expected is None:
        raise HTTPException(status_code=503, detail="Operator endpoints are disabled: no operator token configured")
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.encode(), expected.get_secret_value().encode()):
        raise HTTPException(status_code=401, detail="Invalid or missing operator token")


OperatorDep = Depends(require_operator)
