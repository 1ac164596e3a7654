"""
auth/service.py -- AuthService: the use cases behind every /auth endpoint.

Pattern: Application service. Each public method is one use case; it
validates input, talks to the injected collaborators (stores, session
manager, token issuer, hasher, notifier) and either returns a domain object or
raises an AuthError subclass. Nothing here knows about HTTP.

Enumeration resistance:
  login()                   -- unknown email and wrong password raise the same
                               InvalidCredentials; the unknown-email branch
                               still pays for one bcrypt verification.
  request_password_reset()  -- same message on every path; the unknown-email
                               branch writes and deletes a decoy token row so
                               both branches pay for one write and commit.
  send_verification_email() -- same message and the same decoy write for
                               unknown and already verified addresses.

Notifications go through Notifier, which only enqueues; no use case waits for
SMTP or template rendering, and a notifier failure is logged instead of
failing a use case whose changes are already committed.

Storage failures (SQLAlchemyError) are logged with a traceback and re-raised
as Internal, so clients only ever see "Internal server error".

Layer rule: no imports from api/.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import (
    Conflict,
    CurrentPasswordIncorrect,
    EmailNotVerified,
    Internal,
    InvalidCredentials,
    ResetLinkInvalid,
    TokenError,
    Unauthorized,
    ValidationError,
)
from auth.models import AuthContext, Identity, Profile, Session, TokenPurpose
from auth.notify import Notifier, redact_email
from auth.passwords import BcryptHasher, normalize_email, validate_email, validate_name, validate_password
from auth.sessions import SessionManager
from auth.store import IdentityStore, ProfileStore
from auth.tokens import TokenIssuer
from core.config import Settings
from core.database import utc_now

logger = logging.getLogger("authgate.auth.service")

SIGNUP_MESSAGE = "Account created successfully. Please check your email to verify your account."
RESET_REQUESTED_MESSAGE = "If an account with that email exists, we sent a password reset link."
RESET_DONE_MESSAGE = "Password reset successfully. You can now sign in."
PASSWORD_CHANGED_MESSAGE = "Password changed successfully."
VERIFICATION_SENT_MESSAGE = "Verification email sent. Please check your inbox."
EMAIL_VERIFIED_MESSAGE = "Email verified successfully."
VERIFY_LINK_INVALID_MESSAGE = "Email verification link has expired or is invalid. Please request a new one."

BIO_MAX_LENGTH = 500
THEMES = ("light", "dark", "system")


@dataclass
class VerificationResult:
    identity: Identity
    session: Session | None = None
    redirect_url: str | None = None


def _storage_errors(method):
    """Translate SQLAlchemyError escaping a use case into Internal."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except SQLAlchemyError as exc:
            logger.exception("Storage failure in AuthService.%s", method.__name__)
            raise Internal() from exc

    return wrapper


class AuthService:
    """Orchestrates signup, login, sessions, password and verification flows.

    Usage:
        service = AuthService(identities, profiles, issuer, sessions, hasher, notifier, settings)
        identity = service.signup("a@x.com", "Abcd123!", "A")
        ctx = service.login("a@x.com", "Abcd123!")   # EmailNotVerified until verified
    """

    def __init__(
        self,
        identities: IdentityStore,
        profiles: ProfileStore,
        issuer: TokenIssuer,
        sessions: SessionManager,
        hasher: BcryptHasher,
        notifier: Notifier,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.identities = identities
        self.profiles = profiles
        self.issuer = issuer
        self.sessions = sessions
        self.hasher = hasher
        self.notifier = notifier
        self.settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Signup / login / logout
    # ------------------------------------------------------------------

    @_storage_errors
    def signup(self, email: str, password: str, name: str) -> Identity:
        """Create an unverified identity and its profile, then email a verification link.

        Raises ValidationError (policy) or Conflict (email taken, any case).
        """
        email = validate_email(email)
        validate_password(password)
        name = validate_name(name)

        if self.identities.find_by_email(email) is not None:
            raise Conflict()
        identity = self.identities.create(email, self.hasher.hash(password), name)
        self.profiles.create(identity.id, identity.email, identity.name)
        logger.info("Signup: identity %s created for %s", identity.id, redact_email(identity.email))

        self._send_verification(identity, self._default_verify_callback())
        return identity

    @_storage_errors
    def login(self, email: str, password: str, remember_me: bool = True) -> AuthContext:
        identity = self.identities.find_by_email(normalize_email(email))
        if identity is None:
            # Equalize timing -- do NOT return before running bcrypt
            self.hasher.verify_dummy(password)
            raise InvalidCredentials()
        if not self.hasher.verify(password, identity.password_hash or ""):
            raise InvalidCredentials()
        if not identity.email_verified:
            raise EmailNotVerified()

        session = self.sessions.create(identity.id, remember_me=remember_me)
        now = self._clock()
        self.identities.record_login(identity.id, now)
        self.profiles.record_login(identity.id, now)
        identity.last_login = now
        logger.info("Login: identity %s, session %s", identity.id, session.id)
        return AuthContext(identity=identity, session=session)

    @_storage_errors
    def logout(self, credential: str | None) -> bool:
        """Revoke the session behind the credential. Idempotent.

        Returns True if a live session was revoked, False if there was none.
        """
        session = self.sessions.revoke_token(credential)
        if session is None:
            return False
        logger.info("Logout: identity %s, session %s", session.identity_id, session.id)
        return True

    @_storage_errors
    def get_session(self, credential: str | None) -> AuthContext | None:
        """Resolve a credential to identity + session, or None. Never raises for bad input."""
        session = self.sessions.resolve(credential)
        if session is None:
            return None
        identity = self.identities.find_by_id(session.identity_id)
        if identity is None:
            return None
        return AuthContext(identity=identity, session=session)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    @_storage_errors
    def request_password_reset(self, email: str, redirect_to: str | None = None) -> str:
        target = self._trusted_url(redirect_to, f"{self.settings.frontend_url}/reset-password")
        ttl = timedelta(seconds=self.settings.password_reset_expiry_seconds)
        identity = self.identities.find_by_email(normalize_email(email))
        if identity is None:
            # Same write and commit as the real branch; nothing survives or is sent.
            self.issuer.issue_decoy(TokenPurpose.RESET_PASSWORD, ttl)
            logger.info("Password reset requested for unknown email %s", redact_email(email))
            return RESET_REQUESTED_MESSAGE

        issued = self.issuer.issue(identity.id, TokenPurpose.RESET_PASSWORD, ttl)
        self._notify(self.notifier.send_password_reset, identity, _with_query(target, token=issued.value))
        return RESET_REQUESTED_MESSAGE

    @_storage_errors
    def reset_password(self, token: str, new_password: str) -> str:
        """Spend a reset token and set a new password.

        Every token failure (unknown, expired, used, wrong purpose) surfaces as
        the same ResetLinkInvalid. All sessions of the identity are revoked.
        """
        validate_password(new_password)
        try:
            identity_id = self.issuer.validate_and_consume(token, TokenPurpose.RESET_PASSWORD)
        except TokenError as exc:
            logger.info("Password reset rejected: %s", type(exc).__name__)
            raise ResetLinkInvalid() from exc
        identity = self.identities.find_by_id(identity_id)
        if identity is None:
            raise ResetLinkInvalid()

        self.identities.update_password_hash(identity.id, self.hasher.hash(new_password))
        revoked = self.sessions.revoke_all(identity.id)
        logger.info("Password reset completed for identity %s (%d session(s) revoked)", identity.id, revoked)
        self._notify(self.notifier.send_password_changed, identity)
        return RESET_DONE_MESSAGE

    @_storage_errors
    def change_password(
        self,
        context: AuthContext,
        current_password: str,
        new_password: str,
        revoke_other_sessions: bool = True,
    ) -> str:
        validate_password(new_password)
        identity = self.identities.find_by_id(context.identity.id)
        if identity is None:
            raise Unauthorized()
        if not self.hasher.verify(current_password, identity.password_hash or ""):
            raise CurrentPasswordIncorrect()

        self.identities.update_password_hash(identity.id, self.hasher.hash(new_password))
        if revoke_other_sessions:
            self.sessions.revoke_all(identity.id, except_session_id=context.session.id)
        logger.info("Password changed for identity %s", identity.id)
        self._notify(self.notifier.send_password_changed, identity)
        return PASSWORD_CHANGED_MESSAGE

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    @_storage_errors
    def send_verification_email(self, email: str, callback_url: str | None = None) -> str:
        callback = self._trusted_url(callback_url, self._default_verify_callback())
        identity = self.identities.find_by_email(normalize_email(email))
        if identity is None or identity.email_verified:
            self.issuer.issue_decoy(
                TokenPurpose.VERIFY_EMAIL, timedelta(seconds=self.settings.email_verification_expiry_seconds)
            )
            return VERIFICATION_SENT_MESSAGE
        self._send_verification(identity, callback)
        return VERIFICATION_SENT_MESSAGE

    @_storage_errors
    def verify_email(self, token: str, callback_url: str | None = None) -> VerificationResult:
        """Spend a verification token and mark the identity verified.

        Creates a session as well when auto_sign_in_after_verification is on.
        callback_url is checked against trusted_origins before the token is
        spent, so a tampered link leaves the token usable.
        """
        redirect_url = None
        if callback_url:
            redirect_url = _with_query(self._trusted_url(callback_url, callback_url), verified="true")
        try:
            identity_id = self.issuer.validate_and_consume(token, TokenPurpose.VERIFY_EMAIL)
        except TokenError as exc:
            raise ValidationError(VERIFY_LINK_INVALID_MESSAGE) from exc
        identity = self.identities.find_by_id(identity_id)
        if identity is None:
            raise ValidationError(VERIFY_LINK_INVALID_MESSAGE)

        self.identities.mark_email_verified(identity.id)
        identity.email_verified = True
        logger.info("Email verified for identity %s", identity.id)

        session = None
        if self.settings.auto_sign_in_after_verification:
            session = self.sessions.create(identity.id, remember_me=True)
        return VerificationResult(identity=identity, session=session, redirect_url=redirect_url)

    def verification_link(self, token: str, callback_url: str) -> str:
        """Link embedded in the verification email (GET /auth/verify-email)."""
        return _with_query(f"{self.settings.base_url}/auth/verify-email", token=token, callbackURL=callback_url)

    def _send_verification(self, identity: Identity, callback_url: str) -> None:
        issued = self.issuer.issue(
            identity.id,
            TokenPurpose.VERIFY_EMAIL,
            timedelta(seconds=self.settings.email_verification_expiry_seconds),
        )
        self._notify(self.notifier.send_verification, identity, self.verification_link(issued.value, callback_url))

    def _notify(self, send: Callable[..., None], identity: Identity, *args) -> None:
        """Hand an email to the notifier. A failure is logged, never raised;
        the account change it reports is already committed.
        """
        try:
            send(identity, *args)
        except Exception:
            logger.exception("Could not queue email for identity %s", identity.id)

    def _default_verify_callback(self) -> str:
        return f"{self.settings.frontend_url}/verify-email"

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    @_storage_errors
    def get_profile(self, context: AuthContext) -> Profile:
        """Return the caller's profile, creating it for identities that predate profiles."""
        profile = self.profiles.get(context.identity.id)
        if profile is None:
            profile = self.profiles.create(context.identity.id, context.identity.email, context.identity.name)
        return profile

    @_storage_errors
    def update_profile(
        self,
        context: AuthContext,
        display_name: str | None = None,
        bio: str | None = None,
        avatar: str | None = None,
        preferences: dict | None = None,
    ) -> Profile:
        current = self.get_profile(context)
        fields: dict = {}
        if display_name is not None:
            fields["display_name"] = validate_name(display_name)
        if bio is not None:
            if len(bio) > BIO_MAX_LENGTH:
                raise ValidationError(f"Bio must not exceed {BIO_MAX_LENGTH} characters")
            fields["bio"] = bio
        if avatar is not None:
            parts = urlsplit(avatar)
            if parts.scheme not in ("http", "https") or not parts.netloc:
                raise ValidationError("Avatar must be a valid URL")
            fields["avatar"] = avatar
        if preferences is not None:
            fields["preferences"] = _merge_preferences(current.preferences, preferences)
        if not fields:
            return current
        return self.profiles.update(context.identity.id, **fields)

    # ------------------------------------------------------------------
    # Redirect targets
    # ------------------------------------------------------------------

    def _trusted_url(self, url: str | None, default: str) -> str:
        """Return url if its origin is trusted, default if url is empty.

        Relative paths are resolved against frontend_url. Anything pointing at
        another origin raises ValidationError (open-redirect guard).
        """
        if not url:
            return default
        if url.startswith("/") and not url.startswith("//"):
            url = urljoin(f"{self.settings.frontend_url}/", url.lstrip("/"))
        parts = urlsplit(url)
        origin = f"{parts.scheme}://{parts.netloc}"
        if parts.scheme not in ("http", "https") or origin not in self.settings.trusted_origins:
            raise ValidationError("Invalid redirect URL")
        return url


def _with_query(url: str, **params: str) -> str:
    """Append query parameters to url, keeping any it already has."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True) + list(params.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def _merge_preferences(current: dict, updates: dict) -> dict:
    merged = dict(current)
    for key, value in updates.items():
        if value is None:
            continue
        if key in ("notifications", "newsletter"):
            if not isinstance(value, bool):
                raise ValidationError(f"Preference '{key}' must be true or false")
        elif key == "theme":
            if value not in THEMES:
                raise ValidationError("Theme must be one of: light, dark, system")
        else:
            raise ValidationError(f"Unknown preference '{key}'")
        merged[key] = value
    return merged
