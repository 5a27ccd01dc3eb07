"""
api/responses.py -- Mapping from auth/ domain objects to API response models.

Route modules share these so a User or PasskeyCredential is rendered the same
way on every endpoint.
"""

from __future__ import annotations

from fastapi.responses import JSONResponse
from pydantic import BaseModel

from api.models import PasskeyInfo, UserInfo
from auth.models import PasskeyCredential, User


def user_info(user: User) -> UserInfo:
    return UserInfo(id=user.id, username=user.username, is_initial_user=user.is_initial_user)


def passkey_info(passkey: PasskeyCredential) -> PasskeyInfo:
    return PasskeyInfo(
        id=passkey.id,
        device_name=passkey.device_name,
        created_at=passkey.created_at,
        last_used_at=passkey.last_used_at,
    )


def no_store(body: BaseModel, status_code: int = 200) -> JSONResponse:
    """Render body with camelCase keys and Cache-Control: no-store.

    Used for every response carrying a session token or plaintext recovery
    codes, so neither lands in a browser or proxy cache.
    """
    resp = JSONResponse(status_code=status_code, content=body.model_dump(mode="json", by_alias=True))
    resp.headers["Cache-Control"] = "no-store"
    return resp
