"""
tests/helpers.py -- Client payload builders shared by the test modules.

fake_attestation() / fake_assertion() build the payloads FakeRelyingParty
(conftest.py) accepts; register_user() runs a whole registration ceremony.
"""

from __future__ import annotations

import secrets
from typing import TYPE_CHECKING

from webauthn.helpers import bytes_to_base64url

if TYPE_CHECKING:
    from auth.registration import RegistrationCeremony

APP_URL = "http://localhost:5173"


def new_credential_id() -> str:
    return bytes_to_base64url(secrets.token_bytes(16))


def fake_attestation(options: dict, credential_id: str | None = None, **extra) -> dict:
    """A registration response signed over options["challenge"]."""
    cid = credential_id or new_credential_id()
    payload = {"id": cid, "rawId": cid, "type": "public-key", "challenge": options["challenge"]}
    payload.update(extra)
    return payload


def fake_assertion(options: dict, credential_id: str, sign_count: int = 0) -> dict:
    """An authentication response for credential_id over options["challenge"]."""
    return {
        "id": credential_id,
        "rawId": credential_id,
        "type": "public-key",
        "challenge": options["challenge"],
        "signCount": sign_count,
    }


def register_user(registration: RegistrationCeremony, username: str, invitation: str | None = None):
    """Run a full registration. Returns (SessionResult, credential_id)."""
    start = registration.start(username, invitation)
    credential_id = new_credential_id()
    result = registration.finish(
        username,
        start.attempt_id,
        fake_attestation(start.options, credential_id),
        invitation_token=invitation,
        device_name="Laptop",
    )
    return result, credential_id
