"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from membership_core.state.database import (
    create_session_factory,
    create_tables,
    get_engine,
    session_scope,
)
from membership_core.state.repository import (
    JobExecutionRepository,
    MemberRepository,
    NotificationRepository,
    WebhookEventRepository,
)

__all__ = [
    "JobExecutionRepository",
    "MemberRepository",
    "NotificationRepository",
    "WebhookEventRepository",
    "create_session_factory",
    "create_tables",
    "get_engine",
    "session_scope",
]
