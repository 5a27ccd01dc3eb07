"""
auth/relying_party.py -- Relying-party wrapper around py_webauthn.

RelyingParty is the one place that talks to the webauthn library. Ceremonies
get ceremony parameters and verification results from it and never see
library types:

  registration_options()   -> (options dict for the browser, challenge)
  authentication_options() -> (options dict for the browser, challenge)
  verify_registration()    -> NewCredential
  verify_authentication()  -> new signature counter

Challenges cross this boundary as base64url strings, the form they are kept
in by the challenge cache.

Every library failure (bad signature, wrong origin, wrong rp id, challenge
mismatch, malformed JSON, non-increasing sign counter) is logged with its
detail and re-raised as VerificationFailed, whose message is generic.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import json
import logging

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.cose import COSEAlgorithmIdentifier
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from auth.errors import VerificationFailed
from auth.models import NewCredential, PasskeyCredential

logger = logging.getLogger("bookshelf.auth")

_SUPPORTED_ALGORITHMS = [
    COSEAlgorithmIdentifier.EDDSA,
    COSEAlgorithmIdentifier.ECDSA_SHA_256,
    COSEAlgorithmIdentifier.RSASSA_PKCS1_v1_5_SHA_256,
]

_KNOWN_TRANSPORTS = {t.value for t in AuthenticatorTransport}

# Library errors plus the parse errors raised on malformed client JSON
# (binascii.Error from base64 decoding is a ValueError).
_VERIFY_ERRORS = (WebAuthnException, ValueError, KeyError, TypeError)


def credential_id_of(credential: dict) -> str | None:
    """Extract the base64url credential id a client submitted, if any."""
    if not isinstance(credential, dict):
        return None
    value = credential.get("rawId") or credential.get("id")
    return value if isinstance(value, str) and value else None


def _descriptor(credential: PasskeyCredential) -> PublicKeyCredentialDescriptor:
    transports = [AuthenticatorTransport(t) for t in credential.transports if t in _KNOWN_TRANSPORTS]
    return PublicKeyCredentialDescriptor(
        id=base64url_to_bytes(credential.credential_id),
        transports=transports or None,
    )


class RelyingParty:
    """Ceremony parameters and verification for one relying-party identity."""

    def __init__(self, rp_id: str, rp_name: str, origin: str, timeout_ms: int = 60000) -> None:
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin
        self.timeout_ms = timeout_ms

    @classmethod
    def from_settings(cls, settings) -> "RelyingParty":
        return cls(
            rp_id=settings.rp_id,
            rp_name=settings.rp_name,
            origin=settings.rp_origin,
            timeout_ms=settings.webauthn_timeout_ms,
        )

    # ------------------------------------------------------------------
    # Options
    # ------------------------------------------------------------------

    def registration_options(
        self,
        user_handle: str,
        username: str,
        exclude: list[PasskeyCredential] | None = None,
    ) -> tuple[dict, str]:
        """Creation options preferring discoverable credentials and user verification.

        Neither is required: authenticators that cannot store resident keys or
        verify the user still register.
        """
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=user_handle.encode("utf-8"),
            user_name=username,
            user_display_name=username,
            timeout=self.timeout_ms,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            exclude_credentials=[_descriptor(c) for c in exclude or []],
            supported_pub_key_algs=_SUPPORTED_ALGORITHMS,
        )
        return json.loads(options_to_json(options)), bytes_to_base64url(options.challenge)

    def authentication_options(self, allow: list[PasskeyCredential] | None = None) -> tuple[dict, str]:
        """Request options. An empty allow list is valid (discoverable credentials)."""
        options = generate_authentication_options(
            rp_id=self.rp_id,
            timeout=self.timeout_ms,
            allow_credentials=[_descriptor(c) for c in allow or []],
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        return json.loads(options_to_json(options)), bytes_to_base64url(options.challenge)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_registration(self, credential: dict, expected_challenge: str) -> NewCredential:
        try:
            verified = verify_registration_response(
                credential=credential,
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
            )
        except _VERIFY_ERRORS as exc:
            logger.warning("Registration verification failed: %s", exc)
            raise VerificationFailed() from exc

        response = credential.get("response") or {}
        transports = response.get("transports") or []
        return NewCredential(
            credential_id=bytes_to_base64url(verified.credential_id),
            public_key=verified.credential_public_key,
            sign_count=verified.sign_count,
            transports=[t for t in transports if t in _KNOWN_TRANSPORTS],
        )

    def verify_authentication(
        self,
        credential: dict,
        expected_challenge: str,
        stored: PasskeyCredential,
    ) -> int:
        """Verify an assertion against the stored key. Returns the new sign count."""
        try:
            verified = verify_authentication_response(
                credential=credential,
                expected_challenge=base64url_to_bytes(expected_challenge),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=stored.public_key,
                credential_current_sign_count=stored.sign_count,
            )
        except _VERIFY_ERRORS as exc:
            logger.warning("Authentication verification failed for credential %s: %s", stored.id, exc)
            raise VerificationFailed() from exc
        return verified.new_sign_count
