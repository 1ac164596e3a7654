"""
API request and response models for the authgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation; route handlers map between the two with the
from_* constructors below. Nothing here ever carries a password hash.

Field names on the wire are camelCase (rememberMe, newPassword, callbackURL,
...), matching what browser clients send. Request models only check shape;
password, name and email policy is enforced by AuthService so direct callers
get the same rules and messages.

Every response uses one of two envelopes:
    {"success": true,  "message": "...", "data": {...}}
    {"success": false, "status": "fail" | "error", "message": "..."}
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Identity, Profile, Session

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SignupRequest(_Request):
    email: str = Field(max_length=255)
    password: str = Field(max_length=1024)
    name: str = Field(max_length=1024)


class LoginRequest(_Request):
    email: str = Field(max_length=255)
    password: str = Field(min_length=1, max_length=1024)
    remember_me: bool = Field(default=True, alias="rememberMe")


class ForgotPasswordRequest(_Request):
    email: str = Field(max_length=255)
    redirect_to: Optional[str] = Field(default=None, alias="redirectTo", max_length=2048)


class ResetPasswordRequest(_Request):
    token: str = Field(min_length=1, max_length=512)
    new_password: str = Field(alias="newPassword", max_length=1024)


class ChangePasswordRequest(_Request):
    current_password: str = Field(alias="currentPassword", min_length=1, max_length=1024)
    new_password: str = Field(alias="newPassword", max_length=1024)
    revoke_other_sessions: bool = Field(default=True, alias="revokeOtherSessions")


class SendVerificationEmailRequest(_Request):
    email: str = Field(max_length=255)
    callback_url: Optional[str] = Field(default=None, alias="callbackURL", max_length=2048)


class PreferencesUpdate(_Request):
    notifications: Optional[bool] = None
    newsletter: Optional[bool] = None
    theme: Optional[Literal["light", "dark", "system"]] = None


class ProfileUpdateRequest(_Request):
    display_name: Optional[str] = Field(default=None, alias="displayName", max_length=1024)
    bio: Optional[str] = Field(default=None, max_length=2048)
    avatar: Optional[str] = Field(default=None, max_length=2048)
    preferences: Optional[PreferencesUpdate] = None


# ---------------------------------------------------------------------------
# Response payloads
# ---------------------------------------------------------------------------


class _Response(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PublicIdentity(_Response):
    """Identity as clients see it. Built field by field -- never from __dict__."""

    id: int
    email: str
    name: str
    email_verified: bool = Field(serialization_alias="emailVerified")
    created_at: Optional[datetime] = Field(default=None, serialization_alias="createdAt")
    last_login: Optional[datetime] = Field(default=None, serialization_alias="lastLogin")

    @classmethod
    def from_identity(cls, identity: Identity) -> "PublicIdentity":
        return cls(
            id=identity.id,
            email=identity.email,
            name=identity.name,
            email_verified=identity.email_verified,
            created_at=identity.created_at,
            last_login=identity.last_login,
        )


class SessionInfo(_Response):
    id: str
    expires_at: datetime = Field(serialization_alias="expiresAt")
    # Only present right after login / verification, for Bearer clients.
    token: Optional[str] = None

    @classmethod
    def from_session(cls, session: Session, include_token: bool = False) -> "SessionInfo":
        return cls(
            id=session.id,
            expires_at=session.expires_at,
            token=session.token if include_token else None,
        )


class ProfileInfo(_Response):
    display_name: Optional[str] = Field(default=None, serialization_alias="displayName")
    bio: Optional[str] = None
    avatar: Optional[str] = None
    preferences: dict
    login_count: int = Field(serialization_alias="loginCount")
    last_login: Optional[datetime] = Field(default=None, serialization_alias="lastLogin")
    created_at: Optional[datetime] = Field(default=None, serialization_alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, serialization_alias="updatedAt")

    @classmethod
    def from_profile(cls, profile: Profile) -> "ProfileInfo":
        return cls(
            display_name=profile.display_name,
            bio=profile.bio,
            avatar=profile.avatar,
            preferences=profile.preferences,
            login_count=profile.login_count,
            last_login=profile.last_login,
            created_at=profile.created_at,
            updated_at=profile.updated_at,
        )


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class ErrorResponse(_Response):
    success: Literal[False] = False
    status: Literal["fail", "error"]
    message: str


class HealthResponse(_Response):
    success: bool = True
    status: str
    version: str
    timestamp: str
    components: dict[str, str]


def envelope(message: Optional[str] = None, **data: object) -> dict:
    """Build a success envelope; keyword arguments become the data object.

    Pydantic models inside data are serialized with their camelCase aliases.
    """
    body: dict = {"success": True}
    if message is not None:
        body["message"] = message
    if data:
        body["data"] = {
            key: value.model_dump(mode="json", by_alias=True, exclude_none=True) if isinstance(value, BaseModel) else value
            for key, value in data.items()
        }
    return body
