"""
tests/test_config.py -- Unit tests for core/config.py startup validation.

Settings are constructed directly with keyword arguments (which take
precedence over the environment conftest prepares) and _env_file=None so a
developer's local .env cannot leak in.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings

_SECRET = "0123456789abcdef0123456789abcdef"


def _settings(**overrides) -> Settings:
    values = {
        "debug": False,
        "secret_key": _SECRET,
        "rp_id": "books.example.com",
        "rp_origin": "https://books.example.com",
        "cors_origin": "https://books.example.com",
        "allowed_hosts": [],
        "app_url": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class TestSecretKey:
    def test_valid_production_settings(self) -> None:
        settings = _settings()
        assert settings.secret_key == _SECRET

    def test_missing_secret_in_production(self) -> None:
        with pytest.raises(ValidationError, match="SECRET_KEY is required"):
            _settings(secret_key="")

    def test_debug_generates_secret(self) -> None:
        settings = _settings(debug=True, secret_key="")
        assert len(settings.secret_key) == 64

    def test_short_secret_rejected(self) -> None:
        with pytest.raises(ValidationError, match="at least 32"):
            _settings(secret_key="abcdef0123456789")

    def test_low_entropy_secret_rejected(self) -> None:
        with pytest.raises(ValidationError, match="entropy"):
            _settings(secret_key="ab" * 32)


class TestRelyingParty:
    def test_rp_id_required(self) -> None:
        with pytest.raises(ValidationError, match="RP_ID"):
            _settings(rp_id="")

    def test_rp_origin_required(self) -> None:
        with pytest.raises(ValidationError, match="RP_ORIGIN is required"):
            _settings(rp_origin="")

    def test_origin_must_match_rp_id(self) -> None:
        with pytest.raises(ValidationError, match="does not match"):
            _settings(rp_origin="https://evil.example.org")

    def test_suffix_that_is_not_a_subdomain_rejected(self) -> None:
        with pytest.raises(ValidationError, match="does not match"):
            _settings(rp_origin="https://notbooks.example.com", rp_id="books.example.com")

    def test_subdomain_origin_allowed(self) -> None:
        settings = _settings(rp_id="example.com", rp_origin="https://books.example.com")
        assert settings.rp_origin == "https://books.example.com"

    def test_origin_with_path_rejected(self) -> None:
        with pytest.raises(ValidationError, match="path"):
            _settings(rp_origin="https://books.example.com/app")

    def test_plain_http_rejected_in_production(self) -> None:
        with pytest.raises(ValidationError, match="https"):
            _settings(rp_origin="http://books.example.com")

    def test_plain_http_localhost_allowed(self) -> None:
        settings = _settings(rp_id="localhost", rp_origin="http://localhost:5173", cors_origin="http://localhost:5173")
        assert settings.rp_origin == "http://localhost:5173"

    def test_trailing_slash_stripped(self) -> None:
        assert _settings(rp_origin="https://books.example.com/").rp_origin == "https://books.example.com"

    def test_derived_defaults(self) -> None:
        settings = _settings()
        assert settings.app_url == "https://books.example.com"
        assert settings.allowed_hosts == ["books.example.com"]

    def test_explicit_app_url_kept(self) -> None:
        assert _settings(app_url="https://books.example.com/ui/").app_url == "https://books.example.com/ui"


class TestCorsOrigin:
    def test_required_in_production(self) -> None:
        with pytest.raises(ValidationError, match="CORS_ORIGIN"):
            _settings(cors_origin="")

    def test_debug_defaults_to_rp_origin(self) -> None:
        assert _settings(debug=True, cors_origin="").cors_origin == "https://books.example.com"


@pytest.mark.parametrize("rounds", [3, 16])
def test_recovery_code_rounds_bounds(rounds: int) -> None:
    with pytest.raises(ValidationError):
        _settings(recovery_code_rounds=rounds)


def test_defaults() -> None:
    settings = _settings()
    assert settings.rp_name == "Bookshelf"
    assert settings.challenge_ttl_seconds == 300
    assert settings.setup_token_ttl_seconds == 30 * 60
    assert settings.invitation_ttl_seconds == 7 * 24 * 60 * 60
    assert settings.token_expire_seconds == 30 * 24 * 60 * 60
