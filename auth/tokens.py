"""
auth/tokens.py -- Session JWTs, recovery-code hashing, and link token utilities.

Security design decisions:
  Sessions: python-jose with HS256. Tokens are self-contained signed claims
       (user_id, username, jti, iat, exp); validation needs no storage lookup.
       validate_session_token() returns None on any failure -- the dependency
       layer turns that into a 401. Revocation is an optional denylist of jti
       values consulted only here (see cache/store.RevokedTokens).

  Recovery codes: bcrypt via the bcrypt package. Codes carry 40 bits of
       entropy, low enough that a fast hash would be brute-forceable from a
       leaked DB; bcrypt's cost factor (RECOVERY_CODE_ROUNDS) prevents that.
       Codes are normalized (uppercase, no dashes or whitespace) before both
       hashing and checking, so "abcde-12345" and "ABCDE12345" match.

  Timing: match_recovery_code() always performs RECOVERY_CODE_COUNT bcrypt
       comparisons, padding with _DUMMY_HASH, so response time reveals
       neither whether the username exists nor how many codes remain [C1].

  Link tokens: secrets.token_urlsafe(32), 256 bits. Used for invitation and
       setup links; stored verbatim because they are high-entropy and
       short-lived.

  SECRET_KEY: sourced from core.config.get_settings(), validated at startup.

Layer rule: no imports from api/ or cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import re
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.models import RecoveryCode, SessionClaims
from core.config import get_settings

if TYPE_CHECKING:
    from cache.store import RevokedTokens

logger = logging.getLogger("bookshelf.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

RECOVERY_CODE_COUNT = 10

# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def issue_session_token(user_id: str, username: str, expire_seconds: int = 0) -> str:
    """Encode a signed session JWT.

    Args:
        user_id:        User primary key (UUID string).
        username:       Stored as the JWT subject claim.
        expire_seconds: Session duration. If 0 (default), uses
                        Settings.token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    issued = datetime.now(timezone.utc)
    payload = {
        "sub": username,
        "user_id": user_id,
        "jti": uuid.uuid4().hex,
        "iat": issued,
        "exp": issued + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def validate_session_token(token: str, revoked: RevokedTokens | None = None) -> SessionClaims | None:
    """Verify signature, expiry, and required claims. Returns None on any failure."""
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if not all(k in payload for k in ("sub", "user_id", "jti", "exp")):
        return None
    if revoked is not None and revoked.is_revoked(payload["jti"]):
        return None
    return SessionClaims(
        user_id=payload["user_id"],
        username=payload["sub"],
        jti=payload["jti"],
        expires_at=int(payload["exp"]),
    )


# ---------------------------------------------------------------------------
# Recovery codes
# ---------------------------------------------------------------------------

_CODE_SEPARATORS = re.compile(r"[\s\-]")


def generate_recovery_codes(count: int = RECOVERY_CODE_COUNT) -> list[str]:
    """Return count fresh codes formatted XXXXX-XXXXX (uppercase hex)."""
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(5).upper()
        codes.append(f"{raw[:5]}-{raw[5:]}")
    return codes


def normalize_recovery_code(code: str) -> str:
    return _CODE_SEPARATORS.sub("", code).upper()


def hash_recovery_code(code: str) -> str:
    """Return a salted bcrypt hash of the normalized code."""
    salt = bcrypt.gensalt(rounds=_settings.recovery_code_rounds)
    return bcrypt.hashpw(normalize_recovery_code(code).encode("utf-8"), salt).decode("utf-8")


def verify_recovery_code(code: str, hashed: str) -> bool:
    """Return True if code matches the bcrypt hash. bcrypt.checkpw is constant-time."""
    try:
        return bcrypt.checkpw(normalize_recovery_code(code).encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first recovery attempt is not measurably slower than later ones.
_DUMMY_HASH: str = hash_recovery_code("BOOKS-HELF0")


def match_recovery_code(code: str, candidates: list[RecoveryCode]) -> RecoveryCode | None:
    """Return the first candidate whose hash matches code, or None.

    Every candidate is checked even after a match, and the scan is padded to
    RECOVERY_CODE_COUNT comparisons with the dummy hash.
    """
    match: RecoveryCode | None = None
    for candidate in candidates:
        if verify_recovery_code(code, candidate.code_hash) and match is None:
            match = candidate
    for _ in range(RECOVERY_CODE_COUNT - len(candidates)):
        verify_recovery_code(code, _DUMMY_HASH)
    return match


# ---------------------------------------------------------------------------
# Link tokens and ceremony nonces
# ---------------------------------------------------------------------------


def generate_link_token() -> str:
    """256-bit URL-safe token for invitation and setup links."""
    return secrets.token_urlsafe(32)


def generate_attempt_id() -> str:
    """Per-attempt nonce that scopes a ceremony's challenge key."""
    return secrets.token_urlsafe(16)
