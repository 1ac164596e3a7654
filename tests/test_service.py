"""
tests/test_service.py -- AuthService use cases end to end over in-memory SQLite.

Coverage:
  - signup -> login refused until verified -> verify -> login
  - Duplicate email in any case -> Conflict
  - Unknown email and wrong password produce the same error
  - Password reset: same message for known and unknown email, comparable time,
    all sessions revoked, token single-use
  - Change password: current session survives, others revoked
  - Verification resend is generic; callback / redirect origin checks
  - Profile read and partial update
  - A failing notifier never fails the use case that triggered it
  - Storage failures surface as Internal
"""

from __future__ import annotations

import logging
import statistics
import time
from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from auth.errors import (
    Conflict,
    CurrentPasswordIncorrect,
    EmailNotVerified,
    Internal,
    InvalidCredentials,
    ResetLinkInvalid,
    ValidationError,
)
from auth.service import (
    EMAIL_VERIFIED_MESSAGE,
    PASSWORD_CHANGED_MESSAGE,
    RESET_DONE_MESSAGE,
    RESET_REQUESTED_MESSAGE,
    VERIFICATION_SENT_MESSAGE,
    VERIFY_LINK_INVALID_MESSAGE,
    AuthService,
)
from auth.sessions import SessionManager
from auth.store import IdentityStore, ProfileStore
from auth.tokens import TokenIssuer
from core.database import Database

from tests.support import PASSWORD, create_verified, make_settings

NEW_PASSWORD = "Zyxw987$"


# ---------------------------------------------------------------------------
# Signup / verification / login
# ---------------------------------------------------------------------------


def test_signup_verify_login_scenario(service: AuthService, notifier) -> None:
    identity = service.signup("alice@example.com", PASSWORD, "Alice")
    assert identity.email_verified is False
    assert len(notifier.of_kind("verify", "alice@example.com")) == 1

    with pytest.raises(EmailNotVerified):
        service.login("alice@example.com", PASSWORD)

    result = service.verify_email(notifier.last_token("verify", "alice@example.com"))
    assert result.identity.email_verified is True
    assert result.session is not None

    context = service.login("alice@example.com", PASSWORD)
    assert context.identity.id == identity.id
    assert context.session.token
    assert service.get_session(context.session.token).identity.email == "alice@example.com"


def test_signup_normalizes_email(service: AuthService) -> None:
    identity = service.signup("  Alice@Example.COM ", PASSWORD, " Alice ")
    assert identity.email == "alice@example.com"
    assert identity.name == "Alice"


def test_signup_creates_profile(service: AuthService) -> None:
    identity = service.signup("alice@example.com", PASSWORD, "Alice")
    profile = service.profiles.get(identity.id)
    assert profile.display_name == "Alice"
    assert profile.email == "alice@example.com"


@pytest.mark.parametrize("duplicate", ["alice@example.com", "ALICE@example.com", "Alice@Example.Com"])
def test_signup_duplicate_email_conflicts(service: AuthService, duplicate: str) -> None:
    service.signup("alice@example.com", PASSWORD, "Alice")
    with pytest.raises(Conflict):
        service.signup(duplicate, PASSWORD, "Other")


def test_signup_rejects_weak_password_before_storing(service: AuthService, notifier) -> None:
    with pytest.raises(ValidationError):
        service.signup("alice@example.com", "weak", "Alice")
    assert service.identities.find_by_email("alice@example.com") is None
    assert notifier.sent == []


def test_verification_link_points_at_service(service: AuthService, notifier) -> None:
    service.signup("alice@example.com", PASSWORD, "Alice")
    url = notifier.of_kind("verify")[-1].url
    assert url.startswith("http://testserver/auth/verify-email?token=")
    assert "callbackURL=http%3A%2F%2Flocalhost%3A3000%2Fverify-email" in url


def test_verify_email_without_auto_sign_in(db, notifier, hasher, clock) -> None:
    settings = make_settings(auto_sign_in_after_verification=False)
    svc = _build_service(db, settings, notifier, hasher, clock)
    svc.signup("alice@example.com", PASSWORD, "Alice")
    result = svc.verify_email(notifier.last_token("verify", "alice@example.com"))
    assert result.session is None


def test_verify_email_token_is_single_use(service: AuthService, notifier) -> None:
    service.signup("alice@example.com", PASSWORD, "Alice")
    token = notifier.last_token("verify", "alice@example.com")
    service.verify_email(token)
    with pytest.raises(ValidationError) as exc_info:
        service.verify_email(token)
    assert exc_info.value.message == VERIFY_LINK_INVALID_MESSAGE


def test_verify_email_expired(service: AuthService, notifier, clock) -> None:
    service.signup("alice@example.com", PASSWORD, "Alice")
    clock.advance(hours=24, seconds=1)
    with pytest.raises(ValidationError):
        service.verify_email(notifier.last_token("verify", "alice@example.com"))


def test_verify_email_with_trusted_callback(service: AuthService, notifier) -> None:
    service.signup("alice@example.com", PASSWORD, "Alice")
    result = service.verify_email(
        notifier.last_token("verify", "alice@example.com"),
        callback_url="http://localhost:3000/welcome?from=mail",
    )
    assert result.redirect_url == "http://localhost:3000/welcome?from=mail&verified=true"


def test_verify_email_untrusted_callback_leaves_token_usable(service: AuthService, notifier) -> None:
    service.signup("alice@example.com", PASSWORD, "Alice")
    token = notifier.last_token("verify", "alice@example.com")
    with pytest.raises(ValidationError, match="Invalid redirect URL"):
        service.verify_email(token, callback_url="https://evil.example/steal")
    assert service.verify_email(token).identity.email_verified is True


def test_login_errors_are_indistinguishable(service: AuthService, notifier) -> None:
    create_verified(service, notifier, "alice@example.com")

    with pytest.raises(InvalidCredentials) as unknown:
        service.login("nobody@example.com", PASSWORD)
    with pytest.raises(InvalidCredentials) as wrong:
        service.login("alice@example.com", "Wrong123!")

    assert unknown.value.message == wrong.value.message == "Invalid email or password"
    assert unknown.value.status_code == wrong.value.status_code == 401


def test_login_is_case_insensitive_and_records_login(service: AuthService, notifier, clock) -> None:
    identity = create_verified(service, notifier, "alice@example.com")
    context = service.login("ALICE@example.com", PASSWORD)
    assert context.identity.last_login == clock.now
    assert service.profiles.get(identity.id).login_count == 1


def test_login_trims_surrounding_whitespace(service: AuthService, notifier) -> None:
    create_verified(service, notifier, "alice@example.com")
    context = service.login("  Alice@Example.com \t", PASSWORD)
    assert context.identity.email == "alice@example.com"


def test_logout_is_idempotent(service: AuthService, notifier) -> None:
    create_verified(service, notifier, "alice@example.com")
    context = service.login("alice@example.com", PASSWORD)
    assert service.logout(context.session.token) is True
    assert service.get_session(context.session.token) is None
    assert service.logout(context.session.token) is False
    assert service.logout(None) is False


def test_get_session_handles_garbage(service: AuthService) -> None:
    assert service.get_session(None) is None
    assert service.get_session("not-a-token") is None


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


def test_reset_request_message_identical_for_unknown_email(service: AuthService, notifier) -> None:
    create_verified(service, notifier, "alice@example.com")
    known = service.request_password_reset("alice@example.com")
    unknown = service.request_password_reset("nobody@example.com")
    assert known == unknown == RESET_REQUESTED_MESSAGE
    assert len(notifier.of_kind("reset")) == 1


def test_reset_request_timing_is_comparable(tmp_path, notifier, hasher, clock) -> None:
    """Known and unknown emails both pay for one token write and commit."""
    database = Database(f"sqlite:///{tmp_path / 'timing.db'}")
    database.connect()
    try:
        svc = _build_service(database, make_settings(), notifier, hasher, clock)
        svc.signup("alice@example.com", PASSWORD, "Alice")

        known: list[float] = []
        unknown: list[float] = []
        for _ in range(30):
            for email, samples in (("alice@example.com", known), ("nobody@example.com", unknown)):
                start = time.perf_counter()
                svc.request_password_reset(email)
                samples.append(time.perf_counter() - start)

        ratio = statistics.median(known) / statistics.median(unknown)
        assert 0.5 < ratio < 2.0
    finally:
        database.close()


def test_reset_request_for_unknown_email_leaves_no_token(service: AuthService, db) -> None:
    service.request_password_reset("nobody@example.com")
    service.send_verification_email("nobody@example.com")
    with db.engine.connect() as conn:
        assert conn.execute(text("SELECT COUNT(*) FROM purpose_tokens")).scalar_one() == 0


def test_reset_link_uses_redirect_target(service: AuthService, notifier) -> None:
    create_verified(service, notifier, "alice@example.com")
    service.request_password_reset("alice@example.com", redirect_to="/custom-reset")
    url = notifier.of_kind("reset")[-1].url
    assert url.startswith("http://localhost:3000/custom-reset?token=")


def test_reset_rejects_untrusted_redirect(service: AuthService, notifier) -> None:
    create_verified(service, notifier, "alice@example.com")
    with pytest.raises(ValidationError, match="Invalid redirect URL"):
        service.request_password_reset("alice@example.com", redirect_to="https://evil.example/reset")
    with pytest.raises(ValidationError):
        service.request_password_reset("alice@example.com", redirect_to="//evil.example/reset")
    assert notifier.of_kind("reset") == []


def test_reset_flow_revokes_sessions_and_token_is_single_use(service: AuthService, notifier) -> None:
    create_verified(service, notifier, "alice@example.com")
    first = service.login("alice@example.com", PASSWORD)
    second = service.login("alice@example.com", PASSWORD)

    service.request_password_reset("alice@example.com")
    token = notifier.last_token("reset", "alice@example.com")

    assert service.reset_password(token, NEW_PASSWORD) == RESET_DONE_MESSAGE
    assert service.get_session(first.session.token) is None
    assert service.get_session(second.session.token) is None
    assert len(notifier.of_kind("changed")) == 1

    with pytest.raises(InvalidCredentials):
        service.login("alice@example.com", PASSWORD)
    assert service.login("alice@example.com", NEW_PASSWORD).session.token

    with pytest.raises(ResetLinkInvalid):
        service.reset_password(token, "Another1!")


def test_reset_with_expired_token(service: AuthService, notifier, clock) -> None:
    create_verified(service, notifier, "alice@example.com")
    service.request_password_reset("alice@example.com")
    clock.advance(hours=1)
    with pytest.raises(ResetLinkInvalid):
        service.reset_password(notifier.last_token("reset", "alice@example.com"), NEW_PASSWORD)


def test_reset_with_verification_token_is_rejected(service: AuthService, notifier) -> None:
    service.signup("alice@example.com", PASSWORD, "Alice")
    with pytest.raises(ResetLinkInvalid):
        service.reset_password(notifier.last_token("verify", "alice@example.com"), NEW_PASSWORD)


def test_reset_weak_password_does_not_spend_token(service: AuthService, notifier) -> None:
    create_verified(service, notifier, "alice@example.com")
    service.request_password_reset("alice@example.com")
    token = notifier.last_token("reset", "alice@example.com")
    with pytest.raises(ValidationError):
        service.reset_password(token, "weak")
    assert service.reset_password(token, NEW_PASSWORD) == RESET_DONE_MESSAGE


def test_earlier_reset_tokens_stay_valid(service: AuthService, notifier) -> None:
    create_verified(service, notifier, "alice@example.com")
    service.request_password_reset("alice@example.com")
    service.request_password_reset("alice@example.com")
    first, _second = notifier.of_kind("reset")
    token = parse_qs(urlsplit(first.url).query)["token"][0]
    assert service.reset_password(token, NEW_PASSWORD) == RESET_DONE_MESSAGE


# ---------------------------------------------------------------------------
# Change password
# ---------------------------------------------------------------------------


def test_change_password_keeps_current_session_only(service: AuthService, notifier) -> None:
    create_verified(service, notifier, "alice@example.com")
    current = service.login("alice@example.com", PASSWORD)
    other = service.login("alice@example.com", PASSWORD)

    message = service.change_password(current, PASSWORD, NEW_PASSWORD)

    assert message == PASSWORD_CHANGED_MESSAGE
    assert service.get_session(current.session.token) is not None
    assert service.get_session(other.session.token) is None
    assert service.login("alice@example.com", NEW_PASSWORD)


def test_change_password_without_revoking_others(service: AuthService, notifier) -> None:
    create_verified(service, notifier, "alice@example.com")
    current = service.login("alice@example.com", PASSWORD)
    other = service.login("alice@example.com", PASSWORD)
    service.change_password(current, PASSWORD, NEW_PASSWORD, revoke_other_sessions=False)
    assert service.get_session(other.session.token) is not None


def test_change_password_wrong_current(service: AuthService, notifier) -> None:
    create_verified(service, notifier, "alice@example.com")
    current = service.login("alice@example.com", PASSWORD)
    with pytest.raises(CurrentPasswordIncorrect):
        service.change_password(current, "Wrong123!", NEW_PASSWORD)
    assert service.login("alice@example.com", PASSWORD)


def test_change_password_policy_checked(service: AuthService, notifier) -> None:
    create_verified(service, notifier, "alice@example.com")
    current = service.login("alice@example.com", PASSWORD)
    with pytest.raises(ValidationError, match="at least 8"):
        service.change_password(current, PASSWORD, "Ab1!")


# ---------------------------------------------------------------------------
# Verification resend
# ---------------------------------------------------------------------------


def test_send_verification_email_is_generic(service: AuthService, notifier) -> None:
    service.signup("pending@example.com", PASSWORD, "Pending")
    create_verified(service, notifier, "done@example.com")
    before = len(notifier.of_kind("verify"))

    for email in ("pending@example.com", "done@example.com", "nobody@example.com"):
        assert service.send_verification_email(email) == VERIFICATION_SENT_MESSAGE

    assert len(notifier.of_kind("verify")) == before + 1
    assert notifier.of_kind("verify")[-1].to == "pending@example.com"


def test_send_verification_email_untrusted_callback(service: AuthService) -> None:
    with pytest.raises(ValidationError, match="Invalid redirect URL"):
        service.send_verification_email("a@example.com", callback_url="javascript:alert(1)")


def test_verified_message_constant() -> None:
    assert EMAIL_VERIFIED_MESSAGE == "Email verified successfully."


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


def test_profile_update(service: AuthService, notifier) -> None:
    create_verified(service, notifier, "alice@example.com")
    context = service.login("alice@example.com", PASSWORD)

    profile = service.update_profile(
        context,
        display_name="  Ada  ",
        bio="Hello",
        avatar="https://cdn.example.com/a.png",
        preferences={"theme": "dark"},
    )

    assert profile.display_name == "Ada"
    assert profile.bio == "Hello"
    assert profile.avatar == "https://cdn.example.com/a.png"
    assert profile.preferences == {"notifications": True, "newsletter": False, "theme": "dark"}


def test_profile_update_with_nothing_returns_current(service: AuthService, notifier) -> None:
    create_verified(service, notifier, "alice@example.com")
    context = service.login("alice@example.com", PASSWORD)
    assert service.update_profile(context).display_name == "Test User"


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"bio": "x" * 501}, "Bio must not exceed 500"),
        ({"avatar": "ftp://x/a.png"}, "Avatar must be a valid URL"),
        ({"preferences": {"theme": "neon"}}, "Theme must be one of"),
        ({"preferences": {"notifications": "yes"}}, "must be true or false"),
        ({"preferences": {"colour": "red"}}, "Unknown preference"),
        ({"display_name": "   "}, "Name is required"),
    ],
)
def test_profile_update_validation(service: AuthService, notifier, kwargs, message) -> None:
    create_verified(service, notifier, "alice@example.com")
    context = service.login("alice@example.com", PASSWORD)
    with pytest.raises(ValidationError, match=message):
        service.update_profile(context, **kwargs)


def test_get_profile_created_lazily(service: AuthService, notifier, hasher) -> None:
    identity = service.identities.create("legacy@example.com", hasher.hash(PASSWORD), "Legacy")
    service.identities.mark_email_verified(identity.id)
    context = service.login("legacy@example.com", PASSWORD)
    assert service.profiles.get(identity.id) is None
    profile = service.get_profile(context)
    assert profile.identity_id == identity.id


# ---------------------------------------------------------------------------
# Notification failures
# ---------------------------------------------------------------------------


class FailingNotifier:
    """Every send raises, as a broken template or a dead mail queue would."""

    def send_verification(self, identity, url: str) -> None:
        raise OSError("mail queue unavailable")

    def send_password_reset(self, identity, url: str) -> None:
        raise OSError("mail queue unavailable")

    def send_password_changed(self, identity) -> None:
        raise OSError("mail queue unavailable")


@pytest.fixture
def failing_service(db, settings, hasher, clock) -> AuthService:
    return _build_service(db, settings, FailingNotifier(), hasher, clock)


def test_signup_succeeds_when_notifier_fails(failing_service: AuthService, caplog) -> None:
    with caplog.at_level(logging.ERROR, logger="authgate.auth.service"):
        identity = failing_service.signup("alice@example.com", PASSWORD, "Alice")
    assert failing_service.identities.find_by_id(identity.id) is not None
    assert "Could not queue email" in caplog.text
    assert failing_service.send_verification_email("alice@example.com") == VERIFICATION_SENT_MESSAGE


def test_reset_request_succeeds_when_notifier_fails(failing_service: AuthService) -> None:
    failing_service.signup("alice@example.com", PASSWORD, "Alice")
    assert failing_service.request_password_reset("alice@example.com") == RESET_REQUESTED_MESSAGE


def test_change_password_succeeds_when_notifier_fails(failing_service: AuthService) -> None:
    identity = failing_service.signup("alice@example.com", PASSWORD, "Alice")
    failing_service.identities.mark_email_verified(identity.id)
    context = failing_service.login("alice@example.com", PASSWORD)

    assert failing_service.change_password(context, PASSWORD, NEW_PASSWORD) == PASSWORD_CHANGED_MESSAGE
    assert failing_service.login("alice@example.com", NEW_PASSWORD).identity.id == identity.id


# ---------------------------------------------------------------------------
# Storage failures
# ---------------------------------------------------------------------------


def test_storage_error_becomes_internal(service: AuthService, monkeypatch) -> None:
    def broken(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

    monkeypatch.setattr(service.identities, "find_by_email", broken)
    with pytest.raises(Internal) as exc_info:
        service.login("alice@example.com", PASSWORD)
    assert exc_info.value.message == "Internal server error"
    assert exc_info.value.status_code == 500


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _build_service(db, settings, notifier, hasher, clock) -> AuthService:
    return AuthService(
        identities=IdentityStore(db, clock),
        profiles=ProfileStore(db, clock),
        issuer=TokenIssuer(db, settings.secret_key, clock),
        sessions=SessionManager(db, settings.secret_key, ttl=timedelta(days=7), clock=clock),
        hasher=hasher,
        notifier=notifier,
        settings=settings,
        clock=clock,
    )
