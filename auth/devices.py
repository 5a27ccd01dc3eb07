"""
auth/devices.py -- Managing the passkeys and links of an authenticated account.

  list / add / delete passkeys        (caller holds a session)
  regenerate recovery codes           (caller holds a session)
  setup links                         minted with a session, redeemed by a
                                      second device that has none
  invitation links                    minted with a session, redeemed by a
                                      new person in auth.registration

The setup-link flow mirrors registration but is gated by the setup token and
commits only a passkey row: no new user, no new recovery codes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from functools import partial
from urllib.parse import urlencode

from auth.ceremony import CeremonyStart, SessionResult, add_key, begin, setup_key
from auth.errors import InvalidInvitation, InvalidSetupToken, NoRegistrationInProgress, NotFoundError
from auth.models import InvitationToken, PasskeyCredential, SetupToken, User
from auth.relying_party import RelyingParty
from auth.store import CredentialStore
from auth.tokens import generate_link_token, generate_recovery_codes, hash_recovery_code, issue_session_token
from cache.store import ChallengeCache

logger = logging.getLogger("bookshelf.auth")


@dataclass
class IssuedLink:
    token: str
    expires_at: str
    url: str


class DeviceManager:
    def __init__(
        self,
        store: CredentialStore,
        challenges: ChallengeCache,
        relying_party: RelyingParty,
        app_url: str,
        setup_ttl: timedelta = timedelta(minutes=30),
        invitation_ttl: timedelta = timedelta(days=7),
    ) -> None:
        self.store = store
        self.challenges = challenges
        self.rp = relying_party
        self.app_url = app_url.rstrip("/")
        self.setup_ttl = setup_ttl
        self.invitation_ttl = invitation_ttl

    # ------------------------------------------------------------------
    # Passkeys
    # ------------------------------------------------------------------

    def list_credentials(self, user_id: str) -> list[PasskeyCredential]:
        return self.store.list_credentials(user_id)

    def add_start(self, user_id: str, username: str) -> CeremonyStart:
        """Options for one more passkey; already-registered authenticators are excluded."""
        existing = self.store.list_credentials(user_id)
        options, challenge = self.rp.registration_options(user_id, username, exclude=existing)
        return begin(self.challenges, partial(add_key, user_id), options, challenge)

    def add_finish(
        self,
        user_id: str,
        attempt_id: str,
        credential: dict,
        device_name: str | None = None,
    ) -> PasskeyCredential:
        challenge = self.challenges.take(add_key(user_id, attempt_id))
        if challenge is None:
            raise NoRegistrationInProgress()
        new_credential = self.rp.verify_registration(credential, challenge.value)
        passkey = self.store.add_credential(user_id, new_credential, device_name)
        logger.info("User %s added passkey %s", user_id, passkey.id)
        return passkey

    def delete_credential(self, user_id: str, passkey_id: str) -> None:
        self.store.delete_credential(user_id, passkey_id)
        logger.info("User %s deleted passkey %s", user_id, passkey_id)

    def regenerate_recovery_codes(self, user_id: str) -> list[str]:
        """Replace every unused recovery code. The new plaintext is returned once."""
        codes = generate_recovery_codes()
        self.store.replace_recovery_codes(user_id, [hash_recovery_code(c) for c in codes])
        logger.info("User %s regenerated recovery codes", user_id)
        return codes

    # ------------------------------------------------------------------
    # Setup links
    # ------------------------------------------------------------------

    def generate_setup_token(self, user_id: str) -> IssuedLink:
        token = generate_link_token()
        setup = self.store.create_setup_token(user_id, token, self.store.clock() + self.setup_ttl)
        logger.info("User %s generated a setup link (expires %s)", user_id, setup.expires_at)
        return IssuedLink(token=token, expires_at=setup.expires_at, url=self._link("/setup", token=token))

    def validate_setup_token(self, token: str) -> tuple[SetupToken, User]:
        setup = self.store.get_valid_setup_token(token)
        owner = self.store.get_user_by_id(setup.user_id) if setup is not None else None
        if setup is None or owner is None:
            raise InvalidSetupToken()
        return setup, owner

    def setup_start(self, token: str) -> CeremonyStart:
        _setup, owner = self.validate_setup_token(token)
        existing = self.store.list_credentials(owner.id)
        options, challenge = self.rp.registration_options(owner.id, owner.username, exclude=existing)
        return begin(self.challenges, partial(setup_key, token), options, challenge)

    def setup_finish(
        self,
        token: str,
        attempt_id: str,
        credential: dict,
        device_name: str | None = None,
    ) -> SessionResult:
        challenge = self.challenges.take(setup_key(token, attempt_id))
        if challenge is None:
            raise NoRegistrationInProgress()
        new_credential = self.rp.verify_registration(credential, challenge.value)
        owner, passkey = self.store.add_credential_with_setup_token(token, new_credential, device_name)
        logger.info("Setup link enrolled passkey %s for user %s", passkey.id, owner.id)
        return SessionResult(token=issue_session_token(owner.id, owner.username), user=owner)

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    def generate_invitation(self, user_id: str) -> IssuedLink:
        token = generate_link_token()
        invitation = self.store.create_invitation(user_id, token, self.store.clock() + self.invitation_ttl)
        logger.info("User %s generated an invitation (expires %s)", user_id, invitation.expires_at)
        return IssuedLink(token=token, expires_at=invitation.expires_at, url=self._link("/register", invitation=token))

    def validate_invitation(self, token: str) -> InvitationToken:
        invitation = self.store.get_valid_invitation(token)
        if invitation is None:
            raise InvalidInvitation()
        return invitation

    def list_invitations(self, user_id: str) -> list[InvitationToken]:
        return self.store.list_invitations(user_id)

    def invitation_status(self, invitation: InvitationToken) -> str:
        """One of "used", "expired", "pending"."""
        if invitation.used:
            return "used"
        if invitation.expires_at <= self.store.now():
            return "expired"
        return "pending"

    def get_user(self, user_id: str) -> User:
        user = self.store.get_user_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found.")
        return user

    def _link(self, path: str, **params: str) -> str:
        return f"{self.app_url}{path}?{urlencode(params)}"
