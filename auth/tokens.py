"""
auth/tokens.py -- Opaque token generation and the purpose-token issuer.

Security design decisions:
  Generation: secrets.token_urlsafe(32) gives 256 bits of entropy in a
       URL-safe string -- safe to embed in email links and cookies.

  Storage: only HMAC-SHA256(SECRET_KEY, raw_token) is persisted. The digest is
       deterministic, so lookup is an O(1) UNIQUE-index hit, and an attacker
       who reads the database cannot replay tokens without also knowing
       SECRET_KEY. bcrypt's slowness is unnecessary for 256-bit secrets.

  Single use: validate_and_consume() is one conditional UPDATE
       (unconsumed AND unexpired AND matching purpose). The database decides
       the winner; there is no read-then-write window in which two requests
       can both spend the same reset link. The follow-up SELECT only explains
       a failure, it never grants anything.

Sessions use the same generate_token()/token_digest() pair (auth/sessions.py).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import Column, Integer, String, Table, select

from auth.errors import TokenAlreadyUsed, TokenExpired, TokenInvalid
from auth.models import IssuedToken, TokenPurpose
from core.database import Database, metadata, to_iso, utc_now

logger = logging.getLogger("authgate.auth.tokens")

# Anything longer than this cannot be one of ours; reject before hashing.
MAX_TOKEN_LENGTH = 256

# Identity ids start at 1.
DECOY_IDENTITY_ID = 0

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_purpose_tokens = Table(
    "purpose_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_digest", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("identity_id", Integer, nullable=False, index=True),
    Column("purpose", String(30), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("consumed_at", String(32)),  # NULL until spent
)


# ---------------------------------------------------------------------------
# Generation and hashing
# ---------------------------------------------------------------------------


def generate_token() -> str:
    """Return a new URL-safe random token with 256 bits of entropy."""
    return secrets.token_urlsafe(32)


def token_digest(secret_key: str, raw_token: str) -> str:
    """Return HMAC-SHA256(secret_key, raw_token) as a hex string."""
    return hmac.new(secret_key.encode(), raw_token.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Issues and consumes single-use purpose tokens (password reset, email verification).

    Usage:
        issuer = TokenIssuer(db, settings.secret_key)
        issued = issuer.issue(identity.id, TokenPurpose.RESET_PASSWORD, timedelta(hours=1))
        identity_id = issuer.validate_and_consume(issued.value, TokenPurpose.RESET_PASSWORD)
    """

    def __init__(self, db: Database, secret_key: str, clock: Callable[[], datetime] = utc_now) -> None:
        self._db = db
        self._secret_key = secret_key
        self._clock = clock
        db.ensure_tables(_purpose_tokens)

    def mint(self) -> tuple[str, str]:
        """Return (raw_token, digest) without persisting anything."""
        raw = generate_token()
        return raw, token_digest(self._secret_key, raw)

    def issue(self, identity_id: int, purpose: TokenPurpose, ttl: timedelta) -> IssuedToken:
        """Create and persist a token. Earlier unconsumed tokens stay valid."""
        raw, digest = self.mint()
        now = self._clock()
        expires_at = now + ttl
        with self._db.engine.begin() as conn:
            conn.execute(
                _purpose_tokens.insert().values(
                    token_digest=digest,
                    identity_id=identity_id,
                    purpose=purpose.value,
                    created_at=to_iso(now),
                    expires_at=to_iso(expires_at),
                )
            )
        logger.info("Issued %s token for identity %s (expires %s)", purpose.value, identity_id, to_iso(expires_at))
        return IssuedToken(value=raw, identity_id=identity_id, purpose=purpose, expires_at=expires_at)

    def issue_decoy(self, purpose: TokenPurpose, ttl: timedelta) -> None:
        """Write and delete a token row in one transaction; nothing survives.

        Paths that must not reveal whether an email is registered call this
        instead of issue(), so both branches pay for a write and a commit.
        """
        _raw, digest = self.mint()
        now = self._clock()
        with self._db.engine.begin() as conn:
            conn.execute(
                _purpose_tokens.insert().values(
                    token_digest=digest,
                    identity_id=DECOY_IDENTITY_ID,
                    purpose=purpose.value,
                    created_at=to_iso(now),
                    expires_at=to_iso(now + ttl),
                )
            )
            conn.execute(_purpose_tokens.delete().where(_purpose_tokens.c.token_digest == digest))

    def validate_and_consume(self, token: str, purpose: TokenPurpose) -> int:
        """Spend a token and return its owning identity id.

        Raises:
            TokenInvalid:      unknown token or issued for another purpose.
            TokenExpired:      unconsumed but past expires_at.
            TokenAlreadyUsed:  consumed earlier (checked before expiry).
        """
        if not token or len(token) > MAX_TOKEN_LENGTH:
            raise TokenInvalid()
        digest = token_digest(self._secret_key, token)
        now = to_iso(self._clock())
        c = _purpose_tokens.c
        with self._db.engine.begin() as conn:
            result = conn.execute(
                _purpose_tokens.update()
                .where(
                    (c.token_digest == digest)
                    & (c.purpose == purpose.value)
                    & c.consumed_at.is_(None)
                    & (c.expires_at > now)
                )
                .values(consumed_at=now)
            )
            row = conn.execute(
                select(c.identity_id, c.purpose, c.consumed_at, c.expires_at).where(c.token_digest == digest)
            ).fetchone()

        if result.rowcount == 1:
            return row.identity_id
        if row is None or row.purpose != purpose.value:
            raise TokenInvalid()
        if row.consumed_at is not None:
            raise TokenAlreadyUsed()
        raise TokenExpired()

    def purge_expired(self) -> int:
        """Delete tokens whose expiry has passed. Returns rows removed.

        Expired tokens are already inert; this only keeps the table small.
        """
        with self._db.engine.begin() as conn:
            result = conn.execute(_purpose_tokens.delete().where(_purpose_tokens.c.expires_at <= to_iso(self._clock())))
        return result.rowcount
