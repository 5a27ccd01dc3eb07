"""
auth/registration.py -- Passkey enrollment for brand-new accounts.

State machine per attempt:
  start()   invitation precondition -> username check -> options + challenge
  finish()  take challenge -> verify attestation -> one-transaction commit
            (user, passkey, invitation consumed, 10 recovery codes)
            -> session token + plaintext recovery codes (shown once)

The first account ever created skips the invitation requirement and is
flagged is_initial_user. Every later account needs a valid invitation. Both
conditions are re-checked inside the commit transaction, so a race between
two bootstrap registrations, or two registrations sharing one invitation,
produces exactly one account.
"""

from __future__ import annotations

import logging
import uuid
from functools import partial

from sqlalchemy.exc import SQLAlchemyError

from auth.ceremony import CeremonyStart, SessionResult, begin, registration_key
from auth.errors import InternalError, InvalidInvitation, InvitationRequired, NoRegistrationInProgress, UsernameTaken
from auth.models import User
from auth.relying_party import RelyingParty
from auth.store import CredentialStore
from auth.tokens import generate_recovery_codes, hash_recovery_code, issue_session_token
from cache.store import ChallengeCache

logger = logging.getLogger("bookshelf.auth")


class RegistrationCeremony:
    def __init__(self, store: CredentialStore, challenges: ChallengeCache, relying_party: RelyingParty) -> None:
        self.store = store
        self.challenges = challenges
        self.rp = relying_party

    def _require_invitation(self, invitation_token: str | None) -> str | None:
        """Return the invitation to consume, or None on the bootstrap path."""
        if not self.store.has_users():
            return None
        if not invitation_token:
            raise InvitationRequired()
        if self.store.get_valid_invitation(invitation_token) is None:
            raise InvalidInvitation()
        return invitation_token

    def start(self, username: str, invitation_token: str | None = None) -> CeremonyStart:
        invitation = self._require_invitation(invitation_token)
        if self.store.get_user_by_username(username) is not None:
            raise UsernameTaken()

        user_handle = str(uuid.uuid4())
        options, challenge = self.rp.registration_options(user_handle, username)
        return begin(
            self.challenges,
            partial(registration_key, username, invitation),
            options,
            challenge,
            subject=user_handle,
        )

    def finish(
        self,
        username: str,
        attempt_id: str,
        credential: dict,
        invitation_token: str | None = None,
        device_name: str | None = None,
    ) -> SessionResult:
        invitation = invitation_token if self.store.has_users() else None
        challenge = self.challenges.take(registration_key(username, invitation, attempt_id))
        if challenge is None or challenge.subject is None:
            raise NoRegistrationInProgress()
        if invitation is None and self.store.has_users():
            raise InvitationRequired()

        new_credential = self.rp.verify_registration(credential, challenge.value)

        codes = generate_recovery_codes()
        try:
            user = self.store.register_user(
                User(id=challenge.subject, username=username),
                new_credential,
                [hash_recovery_code(c) for c in codes],
                device_name=device_name,
                invitation_token=invitation,
            )
        except SQLAlchemyError as exc:
            logger.exception("Registration commit failed for %r", username)
            raise InternalError() from exc

        logger.info("Registered user %s (initial=%s)", user.id, user.is_initial_user)
        return SessionResult(
            token=issue_session_token(user.id, user.username),
            user=user,
            recovery_codes=codes,
        )
