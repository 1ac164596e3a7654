"""
auth/passwords.py -- Password hashing and input policy.

Hashing:
  bcrypt directly (no passlib wrapper). The hasher is a small object rather
  than module functions so the cost factor comes from Settings and tests can
  run with rounds=4. AuthService only depends on hash()/verify()/
  verify_dummy(), so another algorithm can be dropped in without touching it.

  bcrypt only looks at the first 72 bytes of its input and bcrypt >= 4.1
  refuses longer input outright. The policy allows 128 characters (up to 512
  bytes of UTF-8), so every password is pre-hashed to a 44-byte base64
  SHA-256 digest before it reaches bcrypt.

  verify_dummy() runs a full bcrypt check against a hash computed at
  construction time with the same cost factor. Login calls it when the email
  is unknown so response time does not reveal whether an account exists.

Policy:
  8-128 characters with at least one lowercase letter, one uppercase letter,
  one digit and one special character from @$!%*?&. Checked by the service
  before anything touches storage.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import base64
import hashlib
import re
import secrets

import bcrypt

from auth.errors import ValidationError

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
NAME_MAX_LENGTH = 100
EMAIL_MAX_LENGTH = 255
SPECIAL_CHARACTERS = "@$!%*?&"

# Deliberately loose: one "@", no whitespace, a dot in the domain. Whether the
# mailbox exists is settled by the verification email, not by a regex.
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

_PASSWORD_RULES = (
    re.compile(r"[a-z]"),
    re.compile(r"[A-Z]"),
    re.compile(r"\d"),
    re.compile(f"[{re.escape(SPECIAL_CHARACTERS)}]"),
)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


def validate_password(password: str) -> None:
    """Raise ValidationError with a user-facing message if the password fails policy."""
    if len(password) < PASSWORD_MIN_LENGTH:
        raise ValidationError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    if len(password) > PASSWORD_MAX_LENGTH:
        raise ValidationError(f"Password must not exceed {PASSWORD_MAX_LENGTH} characters")
    if not all(rule.search(password) for rule in _PASSWORD_RULES):
        raise ValidationError(
            "Password must contain at least one uppercase letter, one lowercase letter, "
            f"one number, and one special character ({SPECIAL_CHARACTERS})"
        )


def normalize_email(email: str) -> str:
    """Trim and lower-case an email address for lookup."""
    return email.strip().lower()


def validate_email(email: str) -> str:
    """Return the normalized email, or raise ValidationError."""
    cleaned = normalize_email(email)
    if len(cleaned) > EMAIL_MAX_LENGTH or not EMAIL_PATTERN.match(cleaned):
        raise ValidationError("Please provide a valid email address")
    return cleaned


def validate_name(name: str) -> str:
    """Return the trimmed display name, or raise ValidationError."""
    cleaned = name.strip()
    if not cleaned:
        raise ValidationError("Name is required")
    if len(cleaned) > NAME_MAX_LENGTH:
        raise ValidationError(f"Name must not exceed {NAME_MAX_LENGTH} characters")
    return cleaned


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def _prehash(plain: str) -> bytes:
    return base64.b64encode(hashlib.sha256(plain.encode("utf-8")).digest())


class BcryptHasher:
    """bcrypt password hasher with timing-equalization support.

    Usage:
        hasher = BcryptHasher(rounds=12)
        stored = hasher.hash("Abcd123!")
        hasher.verify("Abcd123!", stored)   # True
    """

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        # Computed once so the first unknown-email login is not measurably
        # slower than later ones.
        self._dummy_hash = self.hash(secrets.token_urlsafe(16))

    def hash(self, plain: str) -> str:
        return bcrypt.hashpw(_prehash(plain), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        """Return True if the plaintext password matches the bcrypt hash."""
        try:
            return bcrypt.checkpw(_prehash(plain), hashed.encode("utf-8"))
        except ValueError:
            # Malformed stored hash
            return False

    def verify_dummy(self, plain: str) -> None:
        """Burn one bcrypt verification's worth of time. Result is discarded."""
        self.verify(plain, self._dummy_hash)
