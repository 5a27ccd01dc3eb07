"""
api/routes/v1/auth.py -- Registration, login and session REST endpoints.

Routes:
  GET  /api/auth/status              -- whether any user exists (public)
  POST /api/auth/register/options    -- start passkey registration (public)
  POST /api/auth/register/verify     -- finish registration; token + recovery codes
  POST /api/auth/login/options       -- start passkey login (public)
  POST /api/auth/login/verify        -- finish passkey login; token
  POST /api/auth/login/recovery      -- log in with a recovery code; token
  POST /api/auth/verify-token        -- check a session token (public)
  POST /api/auth/logout              -- revoke the presented token (requires auth)

Security:
  Register and login endpoints are rate-limited per IP (LOGIN_RATE_LIMIT).
  Login failures share one generic error so usernames cannot be probed.
  Cache-Control: no-store on every response carrying a token or codes.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    CeremonyOptionsResponse,
    LoginOptionsRequest,
    LoginResponse,
    LoginVerifyRequest,
    MessageResponse,
    RecoveryLoginRequest,
    RegisterOptionsRequest,
    RegisterResponse,
    RegisterVerifyRequest,
    StatusResponse,
    VerifyTokenRequest,
    VerifyTokenResponse,
)
from api.responses import no_store, user_info
from auth.authentication import AuthenticationCeremony
from auth.dependencies import get_current_user
from auth.errors import Unauthorized
from auth.models import SessionClaims
from auth.registration import RegistrationCeremony
from auth.tokens import validate_session_token
from core.config import get_settings

_settings = get_settings()

# Auth policy:
# - GET  /status, /register/*, /login/*, /verify-token:  public
# - POST /logout:                                        requires auth (get_current_user)
router = APIRouter()


def _options(start) -> CeremonyOptionsResponse:
    return CeremonyOptionsResponse(attempt_id=start.attempt_id, options=start.options)


@router.get("/auth/status", response_model=StatusResponse)
def status(request: Request) -> StatusResponse:
    """Tell the client whether to show first-user registration or require an invitation."""
    ceremony: AuthenticationCeremony = request.app.state.authentication
    return StatusResponse(**ceremony.status())


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register/options", response_model=CeremonyOptionsResponse)
def register_options(request: Request, body: RegisterOptionsRequest) -> CeremonyOptionsResponse:
    """Return creation options for a new account.

    The first account needs no invitation; every later one does.
    """
    ceremony: RegistrationCeremony = request.app.state.registration
    return _options(ceremony.start(body.username, body.invitation_token))


@limiter.limit(_settings.login_rate_limit)
@router.post("/auth/register/verify", response_model=RegisterResponse)
def register_verify(request: Request, body: RegisterVerifyRequest) -> JSONResponse:
    """Verify the attestation and create the account.

    The plaintext recovery codes in this response are never shown again.
    """
    ceremony: RegistrationCeremony = request.app.state.registration
    result = ceremony.finish(
        body.username,
        body.attempt_id,
        body.credential,
        invitation_token=body.invitation_token,
        device_name=body.device_name,
    )
    return no_store(
        RegisterResponse(token=result.token, user=user_info(result.user), recovery_codes=result.recovery_codes)
    )


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)
@router.post("/auth/login/options", response_model=CeremonyOptionsResponse)
def login_options(request: Request, body: LoginOptionsRequest) -> CeremonyOptionsResponse:
    """Return request options. Unknown usernames get well-formed options with no credentials."""
    ceremony: AuthenticationCeremony = request.app.state.authentication
    return _options(ceremony.start(body.username))


@limiter.limit(_settings.login_rate_limit)
@router.post("/auth/login/verify", response_model=LoginResponse)
def login_verify(request: Request, body: LoginVerifyRequest) -> JSONResponse:
    ceremony: AuthenticationCeremony = request.app.state.authentication
    result = ceremony.finish(body.username, body.attempt_id, body.credential)
    return no_store(LoginResponse(token=result.token, user=user_info(result.user)))


@limiter.limit(_settings.login_rate_limit)
@router.post("/auth/login/recovery", response_model=LoginResponse)
def login_recovery(request: Request, body: RecoveryLoginRequest) -> JSONResponse:
    """Log in with a recovery code. The code is burned on success."""
    ceremony: AuthenticationCeremony = request.app.state.authentication
    result = ceremony.recover(body.username, body.recovery_code)
    return no_store(
        LoginResponse(
            token=result.token,
            user=user_info(result.user),
            remaining_recovery_codes=result.remaining_recovery_codes,
        )
    )


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.post("/auth/verify-token", response_model=VerifyTokenResponse)
def verify_token(request: Request, body: VerifyTokenRequest) -> VerifyTokenResponse:
    """Validate a session token and return its owner.

    401 for a bad, expired or revoked token; 404 if the account is gone.
    """
    claims = validate_session_token(body.token, request.app.state.revoked_tokens)
    if claims is None:
        raise Unauthorized("Invalid or expired token.")
    user = request.app.state.devices.get_user(claims.user_id)
    return VerifyTokenResponse(valid=True, user=user_info(user))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, current_user: SessionClaims = Depends(get_current_user)) -> MessageResponse:
    """Revoke the presented token until its natural expiry."""
    request.app.state.revoked_tokens.revoke(current_user.jti, current_user.expires_at)
    return MessageResponse(message="Logged out.")
