"""SQLite adapter for local-only operation.

Provides an async engine backed by ``aiosqlite`` that uses the same ORM
table definitions as the PostgreSQL backend, so the CLI and the test suite
exercise the production code paths without a database server.

Differences from PostgreSQL:

* SQLite is single-writer; concurrent CAS updates serialise on the file lock.
* JSONB columns fall back to JSON stored as TEXT.
* Timezones are not stored; :class:`~membership_core.state.tables.UTCDateTime`
  restores UTC on read.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)


def get_local_engine(db_path: Path | str = ".membership/state.db") -> AsyncEngine:
    """Create an async engine on a SQLite file, or in memory for ``:memory:``.

    Parent directories of a file path are created automatically.
    """
    if str(db_path) == ":memory:":
        url = "sqlite+aiosqlite:///:memory:"
        in_memory = True
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"
        in_memory = False

    engine = create_async_engine(
        url,
        echo=False,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=5000")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    logger.info("Created SQLite engine: %s", url)
    return engine
