"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and ceremonies
do the work; these only own the shape.

Timestamps are UTC ISO-8601 strings written by the store (see
auth/store._iso). Ids are UUID4 strings.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class User:
    """An account holder.

    The id doubles as the WebAuthn user handle: it is minted when registration
    options are generated and written unchanged at commit, so the handle the
    authenticator stores always resolves to this row.

    is_initial_user marks the first account ever created (the bootstrap path
    that skipped the invitation requirement).
    """

    username: str
    id: str = ""
    created_at: str = ""
    is_initial_user: bool = False


@dataclass
class PasskeyCredential:
    """A WebAuthn public-key credential bound to one authenticator.

    credential_id is the authenticator-assigned id, base64url without padding.
    public_key is the COSE-encoded key returned by the verifier; opaque here.
    sign_count is the last counter value seen; py_webauthn rejects assertions
    whose counter does not increase (clone detection).
    """

    user_id: str
    credential_id: str
    public_key: bytes
    sign_count: int = 0
    device_name: str | None = None
    transports: list[str] = field(default_factory=list)
    id: str = ""
    created_at: str = ""
    last_used_at: str | None = None


@dataclass
class RecoveryCode:
    """A single-use fallback credential. Only the bcrypt hash is ever stored."""

    user_id: str
    code_hash: str
    id: str = ""
    used: bool = False
    used_at: str | None = None
    created_at: str = ""


@dataclass
class InvitationToken:
    """Lets exactly one new person register. Minted by an existing user."""

    created_by: str
    token: str
    expires_at: str
    id: str = ""
    used: bool = False
    used_at: str | None = None
    used_by: str | None = None
    created_at: str = ""


@dataclass
class SetupToken:
    """Lets a second, unauthenticated device enroll a passkey for user_id."""

    user_id: str
    token: str
    expires_at: str
    id: str = ""
    used: bool = False
    used_at: str | None = None
    created_at: str = ""


@dataclass
class SessionClaims:
    """Identity carried by a validated session token. No storage lookup."""

    user_id: str
    username: str
    jti: str
    expires_at: int  # unix seconds, from the "exp" claim


@dataclass
class NewCredential:
    """Verifier output for a successful registration ceremony."""

    credential_id: str
    public_key: bytes
    sign_count: int
    transports: list[str] = field(default_factory=list)
