"""
api/routes/auth.py -- Authentication REST endpoints.

Routes:
  POST  /auth/signup                   -- create account; sends verification email (201)
  POST  /auth/login                    -- password login; sets session cookie
  POST  /auth/logout                   -- revokes the session, clears cookie; idempotent
  POST  /auth/forgot-password          -- emails a reset link; generic response
  POST  /auth/reset-password           -- spends a reset token, sets new password
  POST  /auth/change-password          -- requires auth; optionally revokes other sessions
  POST  /auth/send-verification-email  -- (re)sends verification link; generic response
  GET   /auth/verify-email             -- link target from the verification email
  GET   /auth/session                  -- report auth state; never 401
  GET   /auth/profile                  -- requires auth
  PATCH /auth/profile                  -- requires auth + verified email

Every route carries @rate_limited: the general budget plus its endpoint class.
GET /session and GET /profile only count against the general budget.

Handlers are plain `def` so FastAPI runs them on its threadpool: bcrypt and
SQLite calls would otherwise block the event loop.

Security:
  Cache-Control: no-store on every response that sets or clears a session.
  The session cookie is httpOnly, SameSite=lax, Secure when SECURE_COOKIES.
"""

# No `from __future__ import annotations`: slowapi wraps each endpoint, and
# FastAPI would resolve string annotations in the wrapper's module.

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import RedirectResponse

from api.limiter import EndpointClass, rate_limited
from api.models import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    LoginRequest,
    ProfileInfo,
    ProfileUpdateRequest,
    PublicIdentity,
    ResetPasswordRequest,
    SendVerificationEmailRequest,
    SessionInfo,
    SignupRequest,
    envelope,
)
from auth.dependencies import extract_credential, optional_auth, require_auth, require_email_verified
from auth.models import AuthContext, Session
from auth.service import EMAIL_VERIFIED_MESSAGE, SIGNUP_MESSAGE, AuthService
from core.config import Settings

# Auth policy:
# - POST  /auth/signup, /login, /forgot-password, /reset-password,
#         /send-verification-email, GET /verify-email: public
# - POST  /auth/logout:           public -- no session is not an error
# - GET   /auth/session:          optional auth (optional_auth)
# - POST  /auth/change-password:  requires auth (require_auth)
# - GET   /auth/profile:          requires auth (require_auth)
# - PATCH /auth/profile:          requires verified email (require_email_verified)
router = APIRouter(prefix="/auth", tags=["Auth"])

_AUTH = EndpointClass.AUTH
_RESET = EndpointClass.PASSWORD_RESET
_VERIFICATION = EndpointClass.EMAIL_VERIFICATION


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def set_session_cookie(response: Response, settings: Settings, session: Session) -> None:
    """Write the session token as an httpOnly cookie.

    remember_me sessions get max_age = session ttl so the cookie survives a
    browser restart; otherwise it is a browser-session cookie.
    """
    response.set_cookie(
        settings.session_cookie_name,
        value=session.token or "",
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.session_expire_seconds if session.remember_me else None,
        path="/",
    )


def clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        path="/",
    )


# ---------------------------------------------------------------------------
# Signup / login / logout
# ---------------------------------------------------------------------------


@router.post("/signup", status_code=201)
@rate_limited(_AUTH)
def signup(request: Request, response: Response, body: SignupRequest) -> dict:
    """Create an account. The caller is not signed in until the email is verified."""
    identity = _service(request).signup(body.email, body.password, body.name)
    return envelope(SIGNUP_MESSAGE, user=PublicIdentity.from_identity(identity))


@router.post("/login")
@rate_limited(_AUTH)
def login(request: Request, response: Response, body: LoginRequest) -> dict:
    """Password login.

    Unknown email and wrong password produce the same 401; an unverified
    email produces 403 only after the password has been checked.
    """
    ctx = _service(request).login(body.email, body.password, remember_me=body.remember_me)
    set_session_cookie(response, _settings(request), ctx.session)
    response.headers["Cache-Control"] = "no-store"
    return envelope(
        "Login successful",
        user=PublicIdentity.from_identity(ctx.identity),
        session=SessionInfo.from_session(ctx.session, include_token=True),
    )


@router.post("/logout")
@rate_limited(_AUTH)
def logout(request: Request, response: Response) -> dict:
    settings = _settings(request)
    _service(request).logout(extract_credential(request, settings.session_cookie_name))
    clear_session_cookie(response, settings)
    response.headers["Cache-Control"] = "no-store"
    return envelope("Logged out successfully")


# ---------------------------------------------------------------------------
# Password reset / change
# ---------------------------------------------------------------------------


@router.post("/forgot-password")
@rate_limited(_RESET)
def forgot_password(request: Request, response: Response, body: ForgotPasswordRequest) -> dict:
    """Always 200 with the same message, whether or not the email exists."""
    return envelope(_service(request).request_password_reset(body.email, body.redirect_to))


@router.post("/reset-password")
@rate_limited(_RESET)
def reset_password(request: Request, response: Response, body: ResetPasswordRequest) -> dict:
    message = _service(request).reset_password(body.token, body.new_password)
    # Every session was revoked; drop this browser's cookie too.
    clear_session_cookie(response, _settings(request))
    response.headers["Cache-Control"] = "no-store"
    return envelope(message)


@router.post("/change-password")
@rate_limited(_AUTH)
def change_password(
    request: Request,
    response: Response,
    body: ChangePasswordRequest,
    ctx: AuthContext = Depends(require_auth),
) -> dict:
    message = _service(request).change_password(
        ctx,
        body.current_password,
        body.new_password,
        revoke_other_sessions=body.revoke_other_sessions,
    )
    return envelope(message)


# ---------------------------------------------------------------------------
# Email verification
# ---------------------------------------------------------------------------


@router.post("/send-verification-email")
@rate_limited(_VERIFICATION)
def send_verification_email(request: Request, response: Response, body: SendVerificationEmailRequest) -> dict:
    """Always 200 with the same message: unknown, already verified or sent."""
    return envelope(_service(request).send_verification_email(body.email, body.callback_url))


@router.get("/verify-email")
@rate_limited(_VERIFICATION)
def verify_email(
    request: Request,
    response: Response,
    token: str = Query(min_length=1, max_length=512),
    callback_url: str | None = Query(default=None, alias="callbackURL", max_length=2048),
):
    """Target of the link in the verification email.

    With callbackURL (always set on links this service sends) the browser is
    redirected there, signed in when auto sign-in is enabled. Without it the
    result is returned as JSON for API clients.
    """
    settings = _settings(request)
    result = _service(request).verify_email(token, callback_url)

    if result.redirect_url is not None:
        redirect = RedirectResponse(result.redirect_url, status_code=302)
        if result.session is not None:
            set_session_cookie(redirect, settings, result.session)
        redirect.headers["Cache-Control"] = "no-store"
        return redirect

    data: dict = {"user": PublicIdentity.from_identity(result.identity)}
    if result.session is not None:
        set_session_cookie(response, settings, result.session)
        data["session"] = SessionInfo.from_session(result.session, include_token=True)
    response.headers["Cache-Control"] = "no-store"
    return envelope(EMAIL_VERIFIED_MESSAGE, **data)


# ---------------------------------------------------------------------------
# Session / profile
# ---------------------------------------------------------------------------


@router.get("/session")
@rate_limited()
def get_session(request: Request, response: Response, ctx: AuthContext | None = Depends(optional_auth)) -> dict:
    """Report auth state. Unauthenticated callers get 200 with authenticated=false."""
    if ctx is None:
        return envelope(authenticated=False, user=None, session=None)
    return envelope(
        authenticated=True,
        user=PublicIdentity.from_identity(ctx.identity),
        session=SessionInfo.from_session(ctx.session),
    )


@router.get("/profile")
@rate_limited()
def get_profile(request: Request, response: Response, ctx: AuthContext = Depends(require_auth)) -> dict:
    profile = _service(request).get_profile(ctx)
    return envelope(user=PublicIdentity.from_identity(ctx.identity), profile=ProfileInfo.from_profile(profile))


@router.patch("/profile")
@rate_limited(_AUTH)
def update_profile(
    request: Request,
    response: Response,
    body: ProfileUpdateRequest,
    ctx: AuthContext = Depends(require_email_verified),
) -> dict:
    profile = _service(request).update_profile(
        ctx,
        display_name=body.display_name,
        bio=body.bio,
        avatar=body.avatar,
        preferences=body.preferences.model_dump(exclude_none=True) if body.preferences else None,
    )
    return envelope(
        "Profile updated successfully",
        user=PublicIdentity.from_identity(ctx.identity),
        profile=ProfileInfo.from_profile(profile),
    )
