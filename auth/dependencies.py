"""
auth/dependencies.py -- FastAPI Depends() helpers: the request guard.

Credentials are checked in priority order:
  1. Session cookie ("<cookie_prefix>.session_token") -- browser clients.
  2. Authorization: Bearer <token> header -- API clients and mobile apps.

Both carry the same opaque session token; AuthService.get_session() turns it
into an AuthContext(identity, session) or None.

optional_auth()          -- soft variant, returns None when unauthenticated.
require_auth()           -- raises Unauthorized (401).
require_email_verified() -- runs require_auth() first, then raises
                            Forbidden (403) for unverified identities.

Whatever is resolved is also stored on request.state.auth so middleware and
exception handlers can see who made the request.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Request) because this
  module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import Forbidden, Unauthorized
from auth.models import AuthContext


def extract_credential(request: Request, cookie_name: str) -> str | None:
    """Return the raw session token from the cookie or Bearer header, if any."""
    # 1. Cookie (browser)
    token: str | None = request.cookies.get(cookie_name)

    # 2. Authorization: Bearer header (API clients)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()

    return token or None


def optional_auth(request: Request) -> AuthContext | None:
    """Resolve the session if one is presented. Never raises for bad credentials.

    Use as a FastAPI dependency:
        @router.get("/session")
        def route(ctx: AuthContext | None = Depends(optional_auth)): ...
    """
    cached = getattr(request.state, "auth", None)
    if cached is not None:
        return cached
    service = request.app.state.auth_service
    credential = extract_credential(request, request.app.state.settings.session_cookie_name)
    context = service.get_session(credential) if credential else None
    request.state.auth = context
    return context


def require_auth(request: Request) -> AuthContext:
    """Require a live session. Raises Unauthorized (401) otherwise."""
    context = optional_auth(request)
    if context is None:
        raise Unauthorized()
    return context


def require_email_verified(request: Request) -> AuthContext:
    """Require a live session for a verified email. 401 first, then 403."""
    context = require_auth(request)
    if not context.identity.email_verified:
        raise Forbidden()
    return context
