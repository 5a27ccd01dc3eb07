"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Sessions travel as `Authorization: Bearer <token>`. The token is validated
statelessly (signature, expiry, claims) plus a denylist check against
app.state.revoked_tokens; there is no per-request user lookup.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises Unauthorized (HTTP 401).

Book routes and any other collaborator obtain the caller's identity with:
    @router.get("/books")
    def list_books(user: SessionClaims = Depends(get_current_user)): ...

Layer rule: may import from fastapi (Request) because this module is part of
the FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import Unauthorized
from auth.models import SessionClaims
from auth.tokens import validate_session_token


def bearer_token(request: Request) -> str | None:
    """Return the token from a well-formed Authorization header, else None."""
    parts = request.headers.get("Authorization", "").split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return None
    return parts[1]


def try_get_current_user(request: Request) -> SessionClaims | None:
    """Authenticate the request via its Bearer token. Never raises."""
    token = bearer_token(request)
    if token is None:
        return None
    return validate_session_token(token, getattr(request.app.state, "revoked_tokens", None))


def get_current_user(request: Request) -> SessionClaims:
    """Require authentication. Raises Unauthorized if the request carries no valid session."""
    claims = try_get_current_user(request)
    if claims is None:
        raise Unauthorized()
    return claims
