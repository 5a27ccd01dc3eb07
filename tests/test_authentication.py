"""
tests/test_authentication.py -- Unit tests for auth/authentication.py.

Covers:
  - passkey login happy path, sign counter and last_used_at persistence
  - unknown usernames get well-formed options; every failure is identical
  - replayed or cloned assertions are rejected
  - recovery code login burns the code and reports what is left
  - status() before and after the first account
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from auth.errors import GENERIC_AUTH_FAILURE, AuthenticationFailed, NoLoginInProgress
from auth.tokens import validate_session_token
from helpers import fake_assertion, new_credential_id, register_user


@pytest.fixture
def alice(registration):
    """A registered user: (SessionResult, credential_id)."""
    return register_user(registration, "alice")


def _login(authentication, username: str, credential_id: str, sign_count: int = 0):
    start = authentication.start(username)
    return authentication.finish(username, start.attempt_id, fake_assertion(start.options, credential_id, sign_count))


class TestStatus:
    def test_no_users(self, authentication) -> None:
        assert authentication.status() == {"has_user": False, "requires_invitation": False}

    def test_after_first_user(self, authentication, alice) -> None:
        assert authentication.status() == {"has_user": True, "requires_invitation": True}


class TestPasskeyLogin:
    def test_login_issues_token(self, authentication, alice) -> None:
        registered, credential_id = alice
        result = _login(authentication, "alice", credential_id, sign_count=1)
        claims = validate_session_token(result.token)
        assert claims.user_id == registered.user.id
        assert result.user.username == "alice"

    def test_options_list_user_credentials(self, authentication, alice) -> None:
        _, credential_id = alice
        options = authentication.start("alice").options
        assert [c["id"] for c in options["allowCredentials"]] == [credential_id]
        assert options["rpId"] == "localhost"

    def test_unknown_user_gets_well_formed_options(self, authentication) -> None:
        start = authentication.start("nobody")
        assert start.attempt_id
        assert start.options["challenge"]
        assert start.options.get("allowCredentials", []) == []

    def test_sign_count_and_last_used_persisted(self, authentication, store, alice) -> None:
        registered, credential_id = alice
        _login(authentication, "alice", credential_id, sign_count=5)
        [passkey] = store.list_credentials(registered.user.id)
        assert passkey.sign_count == 5
        assert passkey.last_used_at is not None

    def test_non_increasing_counter_rejected(self, authentication, alice) -> None:
        _, credential_id = alice
        _login(authentication, "alice", credential_id, sign_count=5)
        with pytest.raises(AuthenticationFailed):
            _login(authentication, "alice", credential_id, sign_count=5)

    def test_replayed_assertion_rejected(self, authentication, alice) -> None:
        _, credential_id = alice
        start = authentication.start("alice")
        assertion = fake_assertion(start.options, credential_id, 1)
        authentication.finish("alice", start.attempt_id, assertion)
        with pytest.raises(NoLoginInProgress):
            authentication.finish("alice", start.attempt_id, assertion)

    def test_concurrent_logins_do_not_collide(self, authentication, alice) -> None:
        _, credential_id = alice
        first = authentication.start("alice")
        second = authentication.start("alice")
        authentication.finish("alice", first.attempt_id, fake_assertion(first.options, credential_id, 1))
        authentication.finish("alice", second.attempt_id, fake_assertion(second.options, credential_id, 2))


class TestUniformFailures:
    """Unknown user, unknown credential and bad signature all look the same."""

    def _failure(self, authentication, username: str, credential_id: str, challenge: str | None = None):
        start = authentication.start(username)
        assertion = fake_assertion(start.options, credential_id, 1)
        if challenge is not None:
            assertion["challenge"] = challenge
        with pytest.raises(AuthenticationFailed) as exc_info:
            authentication.finish(username, start.attempt_id, assertion)
        return exc_info.value

    def test_failures_are_indistinguishable(self, authentication, alice) -> None:
        _, credential_id = alice
        failures = [
            self._failure(authentication, "nobody", credential_id),
            self._failure(authentication, "alice", new_credential_id()),
            self._failure(authentication, "alice", credential_id, challenge="forged"),
        ]
        assert {(f.status_code, f.code, f.message) for f in failures} == {
            (400, "authentication_failed", GENERIC_AUTH_FAILURE)
        }

    def test_missing_credential_id(self, authentication, alice) -> None:
        start = authentication.start("alice")
        with pytest.raises(AuthenticationFailed):
            authentication.finish("alice", start.attempt_id, {"type": "public-key"})

    def test_no_login_in_progress(self, authentication, alice) -> None:
        _, credential_id = alice
        with pytest.raises(NoLoginInProgress):
            authentication.finish("alice", "never-issued", {"id": credential_id})


class TestRecoveryLogin:
    def test_recovery_code_logs_in_once(self, authentication, alice) -> None:
        registered, _ = alice
        code = registered.recovery_codes[0]
        result = authentication.recover("alice", code)
        assert result.user.id == registered.user.id
        assert result.remaining_recovery_codes == 9
        with pytest.raises(AuthenticationFailed):
            authentication.recover("alice", code)

    def test_burning_one_code_leaves_the_others_valid(self, authentication, alice) -> None:
        registered, _ = alice
        codes = registered.recovery_codes
        authentication.recover("alice", codes[2])
        with pytest.raises(AuthenticationFailed):
            authentication.recover("alice", codes[2])
        remaining = [authentication.recover("alice", code).remaining_recovery_codes for code in codes[:2] + codes[3:]]
        assert remaining == list(range(8, -1, -1))
        with pytest.raises(AuthenticationFailed):
            authentication.recover("alice", codes[0])

    def test_code_accepted_in_any_spelling(self, authentication, alice) -> None:
        registered, _ = alice
        code = registered.recovery_codes[3]
        result = authentication.recover("alice", "  " + code.replace("-", "").lower())
        assert result.remaining_recovery_codes == 9

    def test_wrong_code_rejected(self, authentication, alice) -> None:
        with pytest.raises(AuthenticationFailed) as exc_info:
            authentication.recover("alice", "00000-00000")
        assert exc_info.value.message == GENERIC_AUTH_FAILURE

    def test_unknown_user_rejected_identically(self, authentication, alice) -> None:
        registered, _ = alice
        with pytest.raises(AuthenticationFailed) as exc_info:
            authentication.recover("nobody", registered.recovery_codes[0])
        assert exc_info.value.message == GENERIC_AUTH_FAILURE

    def test_another_users_code_rejected(self, authentication, registration, store, clock, alice) -> None:
        registered, _ = alice
        store.create_invitation(registered.user.id, "inv", clock() + timedelta(days=1))
        bob, _ = register_user(registration, "bob", invitation="inv")
        with pytest.raises(AuthenticationFailed):
            authentication.recover("alice", bob.recovery_codes[0])
