"""
auth/authentication.py -- Passkey login and recovery-code login.

Enumeration resistance:
  - start() returns well-formed options whether or not the username exists;
    an unknown user simply gets an empty allow list.
  - Every failure after the challenge is taken (unknown user, unknown
    credential, failed signature check, replayed counter) raises the same
    AuthenticationFailed with the same message.
  - recover() runs a fixed number of bcrypt comparisons regardless of the
    username or how many codes remain (see auth.tokens.match_recovery_code).

start() still costs one extra query for a known user (the credential list),
so timing is equalized only as far as is practical.
"""

from __future__ import annotations

import logging
from functools import partial

from auth.ceremony import CeremonyStart, SessionResult, begin, login_key
from auth.errors import AuthenticationFailed, NoLoginInProgress, VerificationFailed
from auth.relying_party import RelyingParty, credential_id_of
from auth.store import CredentialStore
from auth.tokens import issue_session_token, match_recovery_code
from cache.store import ChallengeCache

logger = logging.getLogger("bookshelf.auth")


class AuthenticationCeremony:
    def __init__(self, store: CredentialStore, challenges: ChallengeCache, relying_party: RelyingParty) -> None:
        self.store = store
        self.challenges = challenges
        self.rp = relying_party

    def status(self) -> dict:
        has_user = self.store.has_users()
        return {"has_user": has_user, "requires_invitation": has_user}

    def start(self, username: str) -> CeremonyStart:
        user = self.store.get_user_by_username(username)
        allow = self.store.list_credentials(user.id) if user is not None else []
        options, challenge = self.rp.authentication_options(allow)
        return begin(self.challenges, partial(login_key, username), options, challenge)

    def finish(self, username: str, attempt_id: str, credential: dict) -> SessionResult:
        challenge = self.challenges.take(login_key(username, attempt_id))
        if challenge is None:
            raise NoLoginInProgress()

        user = self.store.get_user_by_username(username)
        credential_id = credential_id_of(credential)
        stored = None
        if user is not None and credential_id is not None:
            stored = self.store.get_credential(user.id, credential_id)
        if stored is None:
            logger.info("Passkey login rejected: no matching user/credential")
            raise AuthenticationFailed()

        try:
            new_sign_count = self.rp.verify_authentication(credential, challenge.value, stored)
        except VerificationFailed as exc:
            raise AuthenticationFailed() from exc

        self.store.record_credential_use(user.id, stored.id, new_sign_count)
        logger.info("Passkey login for user %s", user.id)
        return SessionResult(token=issue_session_token(user.id, user.username), user=user)

    def recover(self, username: str, code: str) -> SessionResult:
        """Log in with a single-use recovery code and burn it."""
        user = self.store.get_user_by_username(username)
        candidates = self.store.get_unused_recovery_codes(user.id) if user is not None else []
        match = match_recovery_code(code, candidates)
        if user is None or match is None:
            logger.info("Recovery login rejected")
            raise AuthenticationFailed()
        if not self.store.consume_recovery_code(user.id, match.id):
            # A concurrent request used the same code first.
            raise AuthenticationFailed()

        remaining = self.store.count_unused_recovery_codes(user.id)
        logger.info("Recovery code login for user %s (%d codes left)", user.id, remaining)
        return SessionResult(
            token=issue_session_token(user.id, user.username),
            user=user,
            remaining_recovery_codes=remaining,
        )
