"""
API request and response models for the Bookshelf auth endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

The browser client speaks camelCase JSON. Fields are declared in snake_case
and exposed through a camelCase alias generator; populate_by_name lets tests
and Python callers use either spelling.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

_Username = Field(min_length=1, max_length=255)
_AttemptId = Field(min_length=1, max_length=64)
_LinkToken = Field(min_length=1, max_length=128)
_DeviceName = Field(default=None, max_length=100)


class _Request(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class _Response(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterOptionsRequest(_Request):
    """Body for POST /register/options. invitationToken is required once any user exists."""

    username: str = _Username
    invitation_token: Optional[str] = Field(default=None, max_length=128)


class RegisterVerifyRequest(_Request):
    username: str = _Username
    attempt_id: str = _AttemptId
    credential: dict[str, Any]
    invitation_token: Optional[str] = Field(default=None, max_length=128)
    device_name: Optional[str] = _DeviceName


class LoginOptionsRequest(_Request):
    username: str = _Username


class LoginVerifyRequest(_Request):
    username: str = _Username
    attempt_id: str = _AttemptId
    credential: dict[str, Any]


class RecoveryLoginRequest(_Request):
    username: str = _Username
    recovery_code: str = Field(min_length=1, max_length=64)


class VerifyTokenRequest(_Request):
    token: str = Field(min_length=1, max_length=4096)


class AddPasskeyVerifyRequest(_Request):
    attempt_id: str = _AttemptId
    credential: dict[str, Any]
    device_name: Optional[str] = _DeviceName


class SetupOptionsRequest(_Request):
    token: str = _LinkToken


class SetupVerifyRequest(_Request):
    token: str = _LinkToken
    attempt_id: str = _AttemptId
    credential: dict[str, Any]
    device_name: Optional[str] = _DeviceName


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserInfo(_Response):
    id: str
    username: str
    is_initial_user: bool = False


class StatusResponse(_Response):
    has_user: bool
    requires_invitation: bool


class CeremonyOptionsResponse(_Response):
    """Options for navigator.credentials.create()/get() plus the attempt id to echo on verify."""

    attempt_id: str
    options: dict[str, Any]


class RegisterResponse(_Response):
    """Returned once. recovery_codes is the only time the plaintext codes are visible."""

    verified: bool = True
    token: str
    user: UserInfo
    recovery_codes: list[str]


class LoginResponse(_Response):
    verified: bool = True
    token: str
    user: UserInfo
    remaining_recovery_codes: Optional[int] = None


class VerifyTokenResponse(_Response):
    valid: bool
    user: UserInfo


class PasskeyInfo(_Response):
    id: str
    device_name: Optional[str]
    created_at: str
    last_used_at: Optional[str] = None


class PasskeyListResponse(_Response):
    passkeys: list[PasskeyInfo]


class AddPasskeyResponse(_Response):
    verified: bool = True
    passkey: PasskeyInfo


class MessageResponse(_Response):
    message: str


class RecoveryCodesResponse(_Response):
    recovery_codes: list[str]


class SetupLinkResponse(_Response):
    token: str
    expires_at: str
    setup_url: str


class SetupTokenInfo(_Response):
    valid: bool
    username: str
    expires_at: str


class InvitationLinkResponse(_Response):
    token: str
    expires_at: str
    invite_url: str


class InvitationInfo(_Response):
    valid: bool
    expires_at: str


class InvitationSummary(_Response):
    token: str
    created_at: str
    expires_at: str
    status: str  # "pending" | "used" | "expired"
    used_at: Optional[str] = None


class InvitationListResponse(_Response):
    invitations: list[InvitationSummary]


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
