"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores, the session manager and the service do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class TokenPurpose(str, Enum):
    """What a purpose token authorizes. Part of the token's identity: a reset
    token can never be consumed as a verification token and vice versa."""

    RESET_PASSWORD = "reset-password"
    VERIFY_EMAIL = "verify-email"


@dataclass
class Identity:
    """The durable account record.

    email is always stored lower-cased and trimmed; uniqueness is enforced by
    the store. password_hash never leaves the auth package -- response models
    are built from PublicIdentity-shaped fields only (see api/models.py).
    """

    email: str
    name: str
    id: int | None = None
    password_hash: str | None = None
    email_verified: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login: datetime | None = None


@dataclass
class Profile:
    """Application-owned data joined one-to-one to an Identity by id.

    Kept out of the Identity record so the credential table stays fixed;
    the service creates it right after the identity.
    """

    identity_id: int
    email: str
    display_name: str | None = None
    bio: str | None = None
    avatar: str | None = None
    preferences: dict = field(
        default_factory=lambda: {"notifications": True, "newsletter": False, "theme": "system"}
    )
    login_count: int = 0
    last_login: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class Session:
    """A time-bounded proof of authentication.

    id is public (safe to log and return to the client). token is the secret
    bearer credential: it is populated only on the object returned by
    SessionManager.create() and is never read back from storage -- only its
    HMAC digest is persisted.
    """

    id: str
    identity_id: int
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    remember_me: bool = False
    token: str | None = None


@dataclass
class IssuedToken:
    """A freshly issued purpose token. value is the raw secret sent by email."""

    value: str
    identity_id: int
    purpose: TokenPurpose
    expires_at: datetime


@dataclass
class AuthContext:
    """What the request guard attaches to request.state.auth."""

    identity: Identity
    session: Session
