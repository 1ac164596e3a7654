"""
core/database.py -- Shared SQLAlchemy Core handle for every authgate store.

One Database is created by the process (api/main.py lifespan) and passed
explicitly to each component that persists something: IdentityStore,
ProfileStore, TokenIssuer and SessionManager. Each of those
modules declares its own Table objects on the shared `metadata` below and
only ever touches its own tables.

Lifecycle:
    db = Database(settings.database_url)
    db.connect()        # create engine, enable WAL, create tables
    ...
    db.close()          # dispose the connection pool

Timestamps are stored as fixed-width UTC ISO 8601 strings with microsecond
precision (see to_iso()). Fixed width means lexical order in SQL equals
chronological order, so `expires_at > :now` comparisons are safe.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import MetaData, Table, create_engine, event, text
from sqlalchemy.engine import Engine

logger = logging.getLogger("authgate.database")

metadata = MetaData()


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC ISO 8601 string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Handle
# ---------------------------------------------------------------------------


class Database:
    """Owns the SQLAlchemy engine for the lifetime of the process.

    Usage:
        db = Database("sqlite:///:memory:")
        db.connect()
        with db.engine.begin() as conn:
            ...
        db.close()
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self._engine: Engine | None = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database.connect() has not been called")
        return self._engine

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    def connect(self) -> None:
        """Create the engine. Idempotent.

        Tables are not created here: each owning component calls
        ensure_tables() with its own Table objects when it is constructed.
        """
        if self._engine is not None:
            return
        connect_args: dict = {}
        if self.url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        engine = create_engine(self.url, connect_args=connect_args)
        if self.url.startswith("sqlite"):
            event.listen(engine, "connect", _set_wal_mode)
        self._engine = engine
        logger.info("Database connected (%s)", engine.url.render_as_string(hide_password=True))

    def ensure_tables(self, *tables: Table) -> None:
        """CREATE TABLE IF NOT EXISTS for the given tables."""
        metadata.create_all(self.engine, tables=list(tables))

    def ping(self) -> bool:
        """Return True if a trivial query succeeds. Used by GET /health."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception:
            logger.exception("Database ping failed")
            return False
        return True

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
