"""
auth/store.py -- SQLAlchemy Core persistence for identities and profiles.

Pattern: Repository + Data Mapper. IdentityStore and ProfileStore are the
repositories; _row_to_identity / _row_to_profile are the mappers. The service
layer never touches SQL directly.

IdentityStore is the Credential Store: it exclusively owns the `identities`
table. ProfileStore owns `user_profiles`, joined one-to-one by identity_id.
There is no foreign key between the two -- the service maintains the relation
explicitly after identity creation.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Email uniqueness is case-insensitive: every email is normalized with
  normalize_email() before it reaches SQL, and the column carries a UNIQUE
  constraint so a concurrent duplicate signup fails with IntegrityError,
  which create() turns into Conflict.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import Column, Integer, String, Table, Text
from sqlalchemy.exc import IntegrityError

from auth.errors import Conflict
from auth.models import Identity, Profile
from core.database import Database, from_iso, metadata, to_iso, utc_now


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_identities = Table(
    "identities",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # always lower-cased
    Column("name", String(100), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_profiles = Table(
    "user_profiles",
    metadata,
    Column("identity_id", Integer, primary_key=True),
    Column("email", String(255), nullable=False),
    Column("display_name", String(100)),
    Column("bio", String(500)),
    Column("avatar", Text),
    Column("preferences", Text, nullable=False),  # JSON object
    Column("login_count", Integer, nullable=False, server_default="0"),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

# Fields ProfileStore.update() accepts.
_PROFILE_FIELDS = {"display_name", "bio", "avatar", "preferences"}


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Credential store
# ---------------------------------------------------------------------------


class IdentityStore:
    """Repository for Identity records.

    Usage:
        store = IdentityStore(db)
        identity = store.create("a@x.com", hasher.hash("Abcd123!"), "A")
        store.find_by_email("A@X.com")  # same record
    """

    def __init__(self, db: Database, clock: Callable[[], datetime] = utc_now) -> None:
        self._db = db
        self._clock = clock
        db.ensure_tables(_identities)

    def find_by_email(self, email: str) -> Identity | None:
        """Look up an identity by email, case-insensitively. None if absent."""
        with self._db.engine.connect() as conn:
            row = conn.execute(
                _identities.select().where(_identities.c.email == normalize_email(email))
            ).fetchone()
        return _row_to_identity(row) if row is not None else None

    def find_by_id(self, identity_id: int) -> Identity | None:
        with self._db.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.id == identity_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def create(self, email: str, password_hash: str, name: str) -> Identity:
        """Insert a new, unverified identity and return it.

        Raises Conflict if the email already exists. The UNIQUE constraint is
        the real guard; the IntegrityError path covers two concurrent signups
        that both passed the service's find_by_email() pre-check.
        """
        now = to_iso(self._clock())
        try:
            with self._db.engine.begin() as conn:
                result = conn.execute(
                    _identities.insert().values(
                        email=normalize_email(email),
                        name=name,
                        password_hash=password_hash,
                        email_verified=0,
                        created_at=now,
                        updated_at=now,
                    )
                )
                identity_id = result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise Conflict() from exc
        return self.find_by_id(identity_id)

    def update_password_hash(self, identity_id: int, password_hash: str) -> bool:
        """Replace the stored hash. Returns False if the identity does not exist."""
        with self._db.engine.begin() as conn:
            result = conn.execute(
                _identities.update()
                .where(_identities.c.id == identity_id)
                .values(password_hash=password_hash, updated_at=to_iso(self._clock()))
            )
        return result.rowcount > 0

    def mark_email_verified(self, identity_id: int) -> bool:
        with self._db.engine.begin() as conn:
            result = conn.execute(
                _identities.update()
                .where(_identities.c.id == identity_id)
                .values(email_verified=1, updated_at=to_iso(self._clock()))
            )
        return result.rowcount > 0

    def record_login(self, identity_id: int, timestamp: datetime) -> None:
        """Stamp last_login after a successful password login."""
        with self._db.engine.begin() as conn:
            conn.execute(
                _identities.update().where(_identities.c.id == identity_id).values(last_login=to_iso(timestamp))
            )


# ---------------------------------------------------------------------------
# Profile store
# ---------------------------------------------------------------------------


class ProfileStore:
    """Repository for Profile records (one per identity)."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utc_now) -> None:
        self._db = db
        self._clock = clock
        db.ensure_tables(_profiles)

    def create(self, identity_id: int, email: str, display_name: str | None) -> Profile:
        now = to_iso(self._clock())
        profile = Profile(identity_id=identity_id, email=normalize_email(email), display_name=display_name)
        with self._db.engine.begin() as conn:
            conn.execute(
                _profiles.insert().values(
                    identity_id=identity_id,
                    email=profile.email,
                    display_name=display_name,
                    preferences=json.dumps(profile.preferences),
                    login_count=0,
                    created_at=now,
                    updated_at=now,
                )
            )
        return self.get(identity_id)

    def get(self, identity_id: int) -> Profile | None:
        with self._db.engine.connect() as conn:
            row = conn.execute(_profiles.select().where(_profiles.c.identity_id == identity_id)).fetchone()
        return _row_to_profile(row) if row is not None else None

    def update(self, identity_id: int, **fields) -> Profile | None:
        """Update mutable profile fields. Returns the updated record, or None if absent.

        Accepted fields: display_name, bio, avatar, preferences (a full dict --
        merging with the stored preferences is the caller's job).
        """
        unknown = set(fields) - _PROFILE_FIELDS
        if unknown:
            raise ValueError(f"Unknown profile fields: {unknown!r}")
        if "preferences" in fields:
            fields["preferences"] = json.dumps(fields["preferences"])
        with self._db.engine.begin() as conn:
            result = conn.execute(
                _profiles.update()
                .where(_profiles.c.identity_id == identity_id)
                .values(updated_at=to_iso(self._clock()), **fields)
            )
        if result.rowcount == 0:
            return None
        return self.get(identity_id)

    def record_login(self, identity_id: int, timestamp: datetime) -> None:
        """Increment login_count in SQL so concurrent logins are never lost."""
        with self._db.engine.begin() as conn:
            conn.execute(
                _profiles.update()
                .where(_profiles.c.identity_id == identity_id)
                .values(login_count=_profiles.c.login_count + 1, last_login=to_iso(timestamp))
            )


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        email=row.email,
        name=row.name,
        password_hash=row.password_hash,
        email_verified=bool(row.email_verified),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
        last_login=from_iso(row.last_login),
    )


def _row_to_profile(row) -> Profile:
    return Profile(
        identity_id=row.identity_id,
        email=row.email,
        display_name=row.display_name,
        bio=row.bio,
        avatar=row.avatar,
        preferences=json.loads(row.preferences),
        login_count=row.login_count,
        last_login=from_iso(row.last_login),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )
