"""
auth/ceremony.py -- Pieces shared by every two-phase WebAuthn ceremony.

A ceremony is options -> (client signs) -> verify. The options call stores a
challenge under a compound key and hands the client an attempt id; the verify
call rebuilds the same key from what the client echoes back and takes the
challenge exactly once.

Key scheme. Every key ends in a server-issued attempt id, so two concurrent
ceremonies for the same username, user, or token never overwrite each
other's challenge:

  register:{username}:{invitation token or "-"}:{attempt}
  login:{username}:{attempt}
  add:{user_id}:{attempt}
  setup:{setup token}:{attempt}
"""

from __future__ import annotations

from dataclasses import dataclass, field

from auth.models import User
from auth.tokens import generate_attempt_id
from cache.store import Challenge, ChallengeCache


@dataclass
class CeremonyStart:
    """What an options call returns to the client."""

    attempt_id: str
    options: dict


@dataclass
class SessionResult:
    """A completed login or registration: the session token and its owner."""

    token: str
    user: User
    recovery_codes: list[str] = field(default_factory=list)
    remaining_recovery_codes: int | None = None


def registration_key(username: str, invitation_token: str | None, attempt_id: str) -> str:
    return f"register:{username}:{invitation_token or '-'}:{attempt_id}"


def login_key(username: str, attempt_id: str) -> str:
    return f"login:{username}:{attempt_id}"


def add_key(user_id: str, attempt_id: str) -> str:
    return f"add:{user_id}:{attempt_id}"


def setup_key(setup_token: str, attempt_id: str) -> str:
    return f"setup:{setup_token}:{attempt_id}"


def begin(cache: ChallengeCache, key_for, options: dict, challenge: str, subject: str | None = None) -> CeremonyStart:
    """Mint an attempt id, store the challenge under key_for(attempt_id), return both to the caller."""
    attempt_id = generate_attempt_id()
    cache.put(key_for(attempt_id), Challenge(value=challenge, subject=subject))
    return CeremonyStart(attempt_id=attempt_id, options=options)
