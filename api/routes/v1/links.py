"""
api/routes/v1/links.py -- Setup links (new device, same account) and invitations (new account).

Routes:
  POST /api/auth/setup-token/generate           -- mint a 30-minute setup link (requires auth)
  GET  /api/auth/setup-token/validate/{token}   -- check a setup link (public)
  POST /api/auth/setup-token/register-options   -- start enrolling a passkey via the link (public)
  POST /api/auth/setup-token/register-verify    -- finish it; token for the link owner
  POST /api/auth/invitation/generate            -- mint a 7-day invitation (requires auth)
  GET  /api/auth/invitation/validate/{token}    -- check an invitation (public)
  GET  /api/auth/invitations                    -- invitations the caller minted (requires auth)

The public setup-link endpoints carry the same rate limit as login: a setup
token is a bearer credential for adding a passkey to someone's account.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    CeremonyOptionsResponse,
    InvitationInfo,
    InvitationLinkResponse,
    InvitationListResponse,
    InvitationSummary,
    LoginResponse,
    SetupLinkResponse,
    SetupOptionsRequest,
    SetupTokenInfo,
    SetupVerifyRequest,
)
from api.responses import no_store, user_info
from auth.dependencies import get_current_user
from auth.devices import DeviceManager
from auth.models import SessionClaims
from core.config import get_settings

_settings = get_settings()

router = APIRouter()


# ---------------------------------------------------------------------------
# Setup links
# ---------------------------------------------------------------------------


@router.post("/auth/setup-token/generate", response_model=SetupLinkResponse)
def generate_setup_token(request: Request, current_user: SessionClaims = Depends(get_current_user)) -> JSONResponse:
    devices: DeviceManager = request.app.state.devices
    link = devices.generate_setup_token(current_user.user_id)
    return no_store(SetupLinkResponse(token=link.token, expires_at=link.expires_at, setup_url=link.url))


@limiter.limit(_settings.login_rate_limit)
@router.get("/auth/setup-token/validate/{token}", response_model=SetupTokenInfo)
def validate_setup_token(request: Request, token: str) -> SetupTokenInfo:
    """403 invalid_setup_token if the link is unknown, used or expired."""
    devices: DeviceManager = request.app.state.devices
    setup, owner = devices.validate_setup_token(token)
    return SetupTokenInfo(valid=True, username=owner.username, expires_at=setup.expires_at)


@limiter.limit(_settings.login_rate_limit)
@router.post("/auth/setup-token/register-options", response_model=CeremonyOptionsResponse)
def setup_register_options(request: Request, body: SetupOptionsRequest) -> CeremonyOptionsResponse:
    devices: DeviceManager = request.app.state.devices
    start = devices.setup_start(body.token)
    return CeremonyOptionsResponse(attempt_id=start.attempt_id, options=start.options)


@limiter.limit(_settings.login_rate_limit)
@router.post("/auth/setup-token/register-verify", response_model=LoginResponse)
def setup_register_verify(request: Request, body: SetupVerifyRequest) -> JSONResponse:
    """Enroll the passkey and consume the link in one transaction, then sign the new device in."""
    devices: DeviceManager = request.app.state.devices
    result = devices.setup_finish(body.token, body.attempt_id, body.credential, body.device_name)
    return no_store(LoginResponse(token=result.token, user=user_info(result.user)))


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------


@router.post("/auth/invitation/generate", response_model=InvitationLinkResponse)
def generate_invitation(request: Request, current_user: SessionClaims = Depends(get_current_user)) -> JSONResponse:
    devices: DeviceManager = request.app.state.devices
    link = devices.generate_invitation(current_user.user_id)
    return no_store(InvitationLinkResponse(token=link.token, expires_at=link.expires_at, invite_url=link.url))


@limiter.limit(_settings.login_rate_limit)
@router.get("/auth/invitation/validate/{token}", response_model=InvitationInfo)
def validate_invitation(request: Request, token: str) -> InvitationInfo:
    """403 invalid_invitation if the invitation is unknown, used or expired."""
    devices: DeviceManager = request.app.state.devices
    invitation = devices.validate_invitation(token)
    return InvitationInfo(valid=True, expires_at=invitation.expires_at)


@router.get("/auth/invitations", response_model=InvitationListResponse)
def list_invitations(
    request: Request, current_user: SessionClaims = Depends(get_current_user)
) -> InvitationListResponse:
    devices: DeviceManager = request.app.state.devices
    return InvitationListResponse(
        invitations=[
            InvitationSummary(
                token=inv.token,
                created_at=inv.created_at,
                expires_at=inv.expires_at,
                status=devices.invitation_status(inv),
                used_at=inv.used_at,
            )
            for inv in devices.list_invitations(current_user.user_id)
        ]
    )
