"""
api/routes/v1/passkeys.py -- Passkey and recovery-code management for a signed-in user.

Routes (all require auth):
  GET    /api/auth/passkeys                   -- list the caller's passkeys
  POST   /api/auth/passkeys/add-options       -- start enrolling another passkey
  POST   /api/auth/passkeys/add-verify        -- finish enrolling it
  DELETE /api/auth/passkeys/{passkey_id}      -- remove one (never the last)
  POST   /api/auth/recovery-codes/regenerate  -- replace all unused recovery codes

IDOR guard: every store call is scoped by the caller's user_id, so a foreign
passkey id is indistinguishable from a missing one (404).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.models import (
    AddPasskeyResponse,
    AddPasskeyVerifyRequest,
    CeremonyOptionsResponse,
    MessageResponse,
    PasskeyListResponse,
    RecoveryCodesResponse,
)
from api.responses import no_store, passkey_info
from auth.dependencies import get_current_user
from auth.devices import DeviceManager
from auth.models import SessionClaims

router = APIRouter()


@router.get("/auth/passkeys", response_model=PasskeyListResponse)
def list_passkeys(request: Request, current_user: SessionClaims = Depends(get_current_user)) -> PasskeyListResponse:
    devices: DeviceManager = request.app.state.devices
    return PasskeyListResponse(passkeys=[passkey_info(p) for p in devices.list_credentials(current_user.user_id)])


@router.post("/auth/passkeys/add-options", response_model=CeremonyOptionsResponse)
def add_passkey_options(
    request: Request, current_user: SessionClaims = Depends(get_current_user)
) -> CeremonyOptionsResponse:
    """Creation options for an additional passkey; existing ones are excluded."""
    devices: DeviceManager = request.app.state.devices
    start = devices.add_start(current_user.user_id, current_user.username)
    return CeremonyOptionsResponse(attempt_id=start.attempt_id, options=start.options)


@router.post("/auth/passkeys/add-verify", response_model=AddPasskeyResponse)
def add_passkey_verify(
    request: Request,
    body: AddPasskeyVerifyRequest,
    current_user: SessionClaims = Depends(get_current_user),
) -> AddPasskeyResponse:
    devices: DeviceManager = request.app.state.devices
    passkey = devices.add_finish(current_user.user_id, body.attempt_id, body.credential, body.device_name)
    return AddPasskeyResponse(passkey=passkey_info(passkey))


@router.delete("/auth/passkeys/{passkey_id}", response_model=MessageResponse)
def delete_passkey(
    request: Request,
    passkey_id: str,
    current_user: SessionClaims = Depends(get_current_user),
) -> MessageResponse:
    """Delete one of the caller's passkeys. Refused with 400 if it is the last one."""
    devices: DeviceManager = request.app.state.devices
    devices.delete_credential(current_user.user_id, passkey_id)
    return MessageResponse(message="Passkey deleted.")


@router.post("/auth/recovery-codes/regenerate", response_model=RecoveryCodesResponse)
def regenerate_recovery_codes(request: Request, current_user: SessionClaims = Depends(get_current_user)) -> JSONResponse:
    """Issue 10 fresh recovery codes. Every previously unused code stops working."""
    devices: DeviceManager = request.app.state.devices
    return no_store(RecoveryCodesResponse(recovery_codes=devices.regenerate_recovery_codes(current_user.user_id)))
