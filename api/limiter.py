"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import `limiter` in api/main.py (attached to app.state, 429 handler) and
`rate_limited` in api/routes/auth.py (per-route budgets).

Using a single shared instance ensures all routes share the same counter
store. Counters live wherever RATE_LIMIT_STORAGE_URI points: "memory://" is
per process; point every worker at the same "redis://..." to share budgets.

Endpoint classes and their defaults (Settings):
  general             100 / 15 min  -- every route except /health
  auth                 10 / 15 min  -- signup, login, logout, change-password, profile update
  password-reset        3 / 1 hour  -- forgot-password, reset-password
  email-verification    5 / 1 hour  -- send-verification-email, verify-email

Each class is a slowapi shared limit whose scope is the class name, so a
class has one budget per client across all of its routes, and burning the
password-reset budget leaves the auth budget untouched. Budgets are passed
to slowapi as callables that read the Settings last handed to configure().
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from fastapi import Request
from slowapi import Limiter

from core.config import Settings, get_settings


class EndpointClass(str, Enum):
    GENERAL = "general"
    AUTH = "auth"
    PASSWORD_RESET = "password-reset"
    EMAIL_VERIFICATION = "email-verification"


MESSAGES = {
    EndpointClass.GENERAL: "Too many requests, please try again later.",
    EndpointClass.AUTH: "Too many authentication attempts, please try again after 15 minutes.",
    EndpointClass.PASSWORD_RESET: "Too many password reset attempts, please try again after 1 hour.",
    EndpointClass.EMAIL_VERIFICATION: "Too many verification email requests, please try again after 1 hour.",
}


@dataclass(frozen=True)
class Budget:
    limit: int
    window_seconds: int

    def __str__(self) -> str:
        # limits' string notation, e.g. "10 per 900 seconds"
        return f"{self.limit} per {self.window_seconds} seconds"


def budgets_from_settings(settings: Settings) -> dict[EndpointClass, Budget]:
    return {
        EndpointClass.GENERAL: Budget(settings.rate_limit_max_requests, settings.rate_limit_window_seconds),
        EndpointClass.AUTH: Budget(settings.auth_rate_limit_max, settings.auth_rate_limit_window_seconds),
        EndpointClass.PASSWORD_RESET: Budget(
            settings.password_reset_rate_limit_max,
            settings.password_reset_rate_limit_window_seconds,
        ),
        EndpointClass.EMAIL_VERIFICATION: Budget(
            settings.email_verification_rate_limit_max,
            settings.email_verification_rate_limit_window_seconds,
        ),
    }


def client_identifier(request: Request, trust_proxy: bool = False) -> str:
    """Key a request by client address.

    X-Forwarded-For is client-controlled unless a proxy overwrites it, so it
    is only honoured when trust_proxy is set.
    """
    if trust_proxy:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def request_key(request: Request) -> str:
    """slowapi key_func: client_identifier with the app's trust_proxy setting."""
    return client_identifier(request, request.app.state.settings.trust_proxy)


_settings = get_settings()
_budgets = budgets_from_settings(_settings)

limiter = Limiter(
    key_func=request_key,
    storage_uri=_settings.rate_limit_storage_uri,
    headers_enabled=True,
    enabled=_settings.rate_limit_enabled,
)


def configure(settings: Settings) -> None:
    """Apply settings' budgets and on/off switch. Existing counters are kept."""
    _budgets.update(budgets_from_settings(settings))
    limiter.enabled = settings.rate_limit_enabled


def _budget_of(endpoint_class: EndpointClass) -> Callable[[], str]:
    def current() -> str:
        return str(_budgets[endpoint_class])

    return current


def rate_limited(*classes: EndpointClass) -> Callable:
    """Charge one hit to the general budget and to each of classes.

    Place directly under the router decorator; the endpoint must accept
    `request: Request` and, unless it returns a Response, `response: Response`
    (slowapi writes the X-RateLimit-* headers onto it):

        @router.post("/login")
        @rate_limited(EndpointClass.AUTH)
        def login(request: Request, response: Response, body: LoginRequest): ...
    """

    def decorator(func: Callable) -> Callable:
        for endpoint_class in (EndpointClass.GENERAL, *classes):
            func = limiter.shared_limit(
                _budget_of(endpoint_class),
                scope=endpoint_class.value,
                error_message=MESSAGES[endpoint_class],
            )(func)
        return func

    return decorator
