"""
auth/sessions.py -- Server-side session lifecycle.

Sessions are opaque bearer tokens backed by a `sessions` row, not JWTs: a
revoked or expired session must stop working immediately, which a
self-contained signed token cannot do.

  create()      -- new row, 256-bit token returned once (digest persisted)
  resolve()     -- credential -> live Session or None, with rolling renewal
  revoke*()     -- delete rows; later resolve() calls return None
  purge_expired -- housekeeping for the lifespan sweep task

Rolling renewal: when a session is resolved more than update_age after its
last renewal (initially its creation), expires_at moves to now + ttl. The
UPDATE carries `expires_at < :new_expiry`, so concurrent resolutions can only
ever push the expiry later; last writer wins and nothing is ever shortened.

The ttl is the same whether or not remember_me is set. remember_me is stored
so the transport layer can decide between a persistent cookie and a
browser-session cookie (see api/routes/auth.py).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import Column, Integer, String, Table

from auth.models import Session
from auth.tokens import MAX_TOKEN_LENGTH, generate_token, token_digest
from core.database import Database, from_iso, metadata, to_iso, utc_now

logger = logging.getLogger("authgate.auth.sessions")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_sessions = Table(
    "sessions",
    metadata,
    Column("id", String(32), primary_key=True),  # public id, uuid4 hex
    Column("token_digest", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("identity_id", Integer, nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),  # last renewal
    Column("expires_at", String(32), nullable=False),
    Column("remember_me", Integer, nullable=False, server_default="0"),
)


class SessionManager:
    """Creates, resolves, renews and revokes sessions.

    Usage:
        sessions = SessionManager(db, settings.secret_key)
        session = sessions.create(identity.id, remember_me=True)
        sessions.resolve(session.token)   # -> Session
        sessions.revoke(session.id)
        sessions.resolve(session.token)   # -> None
    """

    def __init__(
        self,
        db: Database,
        secret_key: str,
        ttl: timedelta = timedelta(days=7),
        update_age: timedelta = timedelta(days=1),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = db
        self._secret_key = secret_key
        self.ttl = ttl
        self.update_age = update_age
        self._clock = clock
        db.ensure_tables(_sessions)

    def create(self, identity_id: int, remember_me: bool = False) -> Session:
        """Start a session. The returned object is the only one carrying .token."""
        token = generate_token()
        now = self._clock()
        session = Session(
            id=uuid.uuid4().hex,
            identity_id=identity_id,
            created_at=now,
            updated_at=now,
            expires_at=now + self.ttl,
            remember_me=remember_me,
            token=token,
        )
        with self._db.engine.begin() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    token_digest=token_digest(self._secret_key, token),
                    identity_id=identity_id,
                    created_at=to_iso(now),
                    updated_at=to_iso(now),
                    expires_at=to_iso(session.expires_at),
                    remember_me=1 if remember_me else 0,
                )
            )
        logger.info("Session %s created for identity %s", session.id, identity_id)
        return session

    def resolve(self, credential: str | None) -> Session | None:
        """Map a request credential to a live session, or None.

        None covers: no credential, oversized/malformed value, unknown token,
        expired session. Never raises for bad input.
        """
        if not credential or len(credential) > MAX_TOKEN_LENGTH:
            return None
        digest = token_digest(self._secret_key, credential)
        with self._db.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token_digest == digest)).fetchone()
        if row is None:
            return None
        session = _row_to_session(row)
        now = self._clock()
        if session.expires_at <= now:
            return None
        if now - session.updated_at >= self.update_age:
            self._renew(session, now)
        return session

    def _renew(self, session: Session, now: datetime) -> None:
        new_expiry = now + self.ttl
        with self._db.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.id == session.id) & (_sessions.c.expires_at < to_iso(new_expiry)))
                .values(expires_at=to_iso(new_expiry), updated_at=to_iso(now))
            )
        if result.rowcount:
            session.expires_at = new_expiry
            session.updated_at = now

    def get(self, session_id: str) -> Session | None:
        """Look up a live session by its public id."""
        with self._db.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        if row is None:
            return None
        session = _row_to_session(row)
        return session if session.expires_at > self._clock() else None

    def list_for_identity(self, identity_id: int) -> list[Session]:
        """Live sessions for an identity, newest first."""
        now = to_iso(self._clock())
        with self._db.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where((_sessions.c.identity_id == identity_id) & (_sessions.c.expires_at > now))
                .order_by(_sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def revoke(self, session_id: str) -> bool:
        """Delete a session. Returns False if it did not exist."""
        with self._db.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
        return result.rowcount > 0

    def revoke_token(self, credential: str | None) -> Session | None:
        """Resolve and delete in one call (logout). Returns the revoked session, if any."""
        session = self.resolve(credential)
        if session is not None:
            self.revoke(session.id)
        return session

    def revoke_all(self, identity_id: int, except_session_id: str | None = None) -> int:
        """Delete every session of an identity, optionally sparing one. Returns rows removed."""
        condition = _sessions.c.identity_id == identity_id
        if except_session_id is not None:
            condition = condition & (_sessions.c.id != except_session_id)
        with self._db.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(condition))
        if result.rowcount:
            logger.info("Revoked %d session(s) for identity %s", result.rowcount, identity_id)
        return result.rowcount

    def purge_expired(self) -> int:
        with self._db.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= to_iso(self._clock())))
        return result.rowcount


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        identity_id=row.identity_id,
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
        expires_at=from_iso(row.expires_at),
        remember_me=bool(row.remember_me),
    )
