"""
auth/notify.py -- Outbound email: SMTP mailer, background dispatcher, notifier.

Three pieces, each replaceable in tests:

  Mailer                 -- one synchronous SMTP delivery via smtplib.
                            Without SMTP_HOST it runs in dev mode and only logs
                            the message (recipient redacted).
  NotificationDispatcher -- ThreadPoolExecutor wrapper. submit() returns at
                            once; the request that triggered the email never
                            waits for SMTP, so response time says nothing about
                            deliverability. Failures are visible only in the
                            server log.
  Notifier               -- what AuthService calls. Queues the templates in
                            auth/emails.py for rendering on the dispatcher.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import functools
import logging
import smtplib
import ssl
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from auth.emails import (
    RenderedEmail,
    render_password_changed_email,
    render_password_reset_email,
    render_verification_email,
)
from auth.models import Identity
from core.config import Settings

logger = logging.getLogger("authgate.auth.notify")

_SMTP_TIMEOUT_SECONDS = 30


def redact_email(email: str) -> str:
    """Redact an email address for logging: "alice@x.com" -> "al***@x.com"."""
    if "@" not in email:
        return "redacted"
    local, domain = email.split("@", 1)
    return f"{local[:2]}***@{domain}"


# ---------------------------------------------------------------------------
# SMTP transport
# ---------------------------------------------------------------------------


class Mailer:
    """Sends one email over SMTP, or logs it when SMTP is not configured.

    smtp_secure=True means implicit TLS (SMTP_SSL, usually port 465);
    otherwise the connection is upgraded with STARTTLS (usually port 587).
    """

    def __init__(
        self,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_secure: bool = False,
        from_email: str = "noreply@authgate.local",
        from_name: str = "authgate",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_secure = smtp_secure
        self.from_email = from_email
        self.from_name = from_name

    @classmethod
    def from_settings(cls, settings: Settings) -> Mailer:
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_secure=settings.smtp_secure,
            from_email=settings.email_from,
            from_name=settings.email_from_name,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(self, to: str, subject: str, html_body: str, text_body: str) -> None:
        """Deliver one message. Raises smtplib.SMTPException / OSError on failure."""
        if not self.is_configured:
            logger.info(
                "Email (dev mode, not sent) to=%s subject=%r preview=%r",
                redact_email(to),
                subject,
                text_body[:200],
            )
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        if self.smtp_secure:
            server = smtplib.SMTP_SSL(self.smtp_host, self.smtp_port, context=context, timeout=_SMTP_TIMEOUT_SECONDS)
        else:
            server = smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=_SMTP_TIMEOUT_SECONDS)
        with server:
            if not self.smtp_secure:
                server.starttls(context=context)
            if self.smtp_user and self.smtp_password:
                server.login(self.smtp_user, self.smtp_password)
            server.sendmail(self.from_email, [to], msg.as_string())
        logger.info("Email sent to=%s subject=%r", redact_email(to), subject)


# ---------------------------------------------------------------------------
# Background dispatch
# ---------------------------------------------------------------------------


class NotificationDispatcher:
    """Fire-and-forget rendering and delivery on a small worker pool.

    Usage:
        dispatcher = NotificationDispatcher(Mailer.from_settings(settings))
        dispatcher.submit("a@x.com", "password-reset", render)   # returns immediately
        dispatcher.shutdown()                                     # at process exit

    render is a zero-argument callable returning a RenderedEmail. It runs on
    the worker, so a template error surfaces in the log like an SMTP error.
    """

    def __init__(self, mailer: Mailer, max_workers: int = 2) -> None:
        self.mailer = mailer
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="authgate-mail")

    def submit(self, to: str, kind: str, render: Callable[[], RenderedEmail]) -> Future:
        future = self._executor.submit(self._deliver, to, render)
        future.add_done_callback(functools.partial(_log_failure, to, kind))
        return future

    def _deliver(self, to: str, render: Callable[[], RenderedEmail]) -> None:
        message = render()
        self.mailer.send(to, message.subject, message.html, message.text)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def _log_failure(to: str, kind: str, future: Future) -> None:
    if future.cancelled():
        logger.warning("Email to=%s kind=%s cancelled at shutdown", redact_email(to), kind)
        return
    exc = future.exception()
    if exc is not None:
        logger.error(
            "Email delivery failed to=%s kind=%s: %s: %s",
            redact_email(to),
            kind,
            type(exc).__name__,
            exc,
        )


# ---------------------------------------------------------------------------
# Notifier (injected into AuthService)
# ---------------------------------------------------------------------------


class Notifier:
    """Queues the three transactional emails; rendering happens on the dispatcher."""

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        brand: str = "authgate",
        password_reset_expiry_seconds: int = 3600,
        email_verification_expiry_seconds: int = 86400,
    ) -> None:
        self._dispatcher = dispatcher
        self._brand = brand
        self._reset_expiry = password_reset_expiry_seconds
        self._verify_expiry = email_verification_expiry_seconds

    @classmethod
    def from_settings(cls, dispatcher: NotificationDispatcher, settings: Settings) -> Notifier:
        return cls(
            dispatcher,
            brand=settings.email_from_name,
            password_reset_expiry_seconds=settings.password_reset_expiry_seconds,
            email_verification_expiry_seconds=settings.email_verification_expiry_seconds,
        )

    def send_verification(self, identity: Identity, url: str) -> None:
        render = functools.partial(render_verification_email, self._brand, identity.name, url, self._verify_expiry)
        self._dispatcher.submit(identity.email, "verification", render)

    def send_password_reset(self, identity: Identity, url: str) -> None:
        render = functools.partial(render_password_reset_email, self._brand, identity.name, url, self._reset_expiry)
        self._dispatcher.submit(identity.email, "password-reset", render)

    def send_password_changed(self, identity: Identity) -> None:
        render = functools.partial(render_password_changed_email, self._brand, identity.name)
        self._dispatcher.submit(identity.email, "password-changed", render)
