"""
tests/support.py -- Test doubles and builders shared by conftest.py and tests.

  - FakeClock: a controllable clock injected into every component
  - RecordingNotifier: captures outgoing emails (and their links) in memory
  - make_settings(): Settings with low bcrypt cost and generous rate limits
  - create_verified(): signup + verification in one call
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

from auth.models import Identity
from auth.service import AuthService
from core.config import Settings

TEST_SECRET = "test-secret-key-0123456789abcdef-0123456789"
PASSWORD = "Abcd123!"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class SentEmail:
    kind: str  # "verify" | "reset" | "changed"
    to: str
    url: str | None


class RecordingNotifier:
    """Stands in for auth.notify.Notifier; records instead of sending."""

    def __init__(self) -> None:
        self.sent: list[SentEmail] = []

    def send_verification(self, identity: Identity, url: str) -> None:
        self.sent.append(SentEmail("verify", identity.email, url))

    def send_password_reset(self, identity: Identity, url: str) -> None:
        self.sent.append(SentEmail("reset", identity.email, url))

    def send_password_changed(self, identity: Identity) -> None:
        self.sent.append(SentEmail("changed", identity.email, None))

    def of_kind(self, kind: str, to: str | None = None) -> list[SentEmail]:
        return [m for m in self.sent if m.kind == kind and (to is None or m.to == to)]

    def last_token(self, kind: str, to: str) -> str:
        """Pull the token query parameter out of the newest matching link."""
        message = self.of_kind(kind, to)[-1]
        return parse_qs(urlsplit(message.url).query)["token"][0]


def make_settings(**overrides) -> Settings:
    values = dict(
        debug=True,
        secret_key=TEST_SECRET,
        base_url="http://testserver",
        frontend_url="http://localhost:3000",
        bcrypt_rounds=4,
        rate_limit_max_requests=10_000,
        auth_rate_limit_max=10_000,
        password_reset_rate_limit_max=10_000,
        email_verification_rate_limit_max=10_000,
    )
    values.update(overrides)
    return Settings(**values)


def create_verified(service: AuthService, notifier: RecordingNotifier, email: str, password: str = PASSWORD):
    """Sign up and verify an identity. Returns the verified Identity."""
    service.signup(email, password, "Test User")
    result = service.verify_email(notifier.last_token("verify", email.strip().lower()))
    return result.identity
