"""
tests/test_cli.py -- Tests for the main.py administration commands.

main() builds its own CredentialStore from DATABASE_URL; these tests swap the
constructor for one returning the fixture store so nothing touches disk.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

import main as cli
from helpers import register_user


@pytest.fixture
def run(store, monkeypatch, capsys):
    monkeypatch.setattr(cli, "CredentialStore", lambda *_args, **_kwargs: store)
    # main() closes its store; keep the shared in-memory DB alive between calls.
    monkeypatch.setattr(store, "close", lambda: None)

    def _run(*argv: str) -> tuple[int, str]:
        code = cli.main(list(argv))
        return code, capsys.readouterr().out

    return _run


def test_no_command_prints_help(run) -> None:
    code, out = run()
    assert code == 2
    assert "init-db" in out


def test_init_db(run) -> None:
    code, out = run("init-db")
    assert code == 0
    assert "0 user(s)" in out


def test_status_before_and_after_first_user(run, registration) -> None:
    _, out = run("status")
    assert "Users: 0" in out
    assert "Passkeys: 0" in out
    assert "will not need an invitation" in out
    register_user(registration, "alice")
    _, out = run("status")
    assert "Users: 1" in out
    assert "Passkeys: 1" in out
    assert "requires an invitation" in out


def test_invite_prints_working_link(run, registration, store) -> None:
    register_user(registration, "alice")
    code, out = run("invite", "alice")
    assert code == 0
    url = [line.strip() for line in out.splitlines() if "/register?invitation=" in line][0]
    token = url.split("invitation=", 1)[1]
    assert store.get_valid_invitation(token) is not None


def test_invite_unknown_user(run) -> None:
    code, out = run("invite", "ghost")
    assert code == 1
    assert "No user named 'ghost'" in out


def test_purge(run, registration, store, clock) -> None:
    alice, _ = register_user(registration, "alice")
    store.create_invitation(alice.user.id, "old", clock() + timedelta(days=1))
    clock.advance(days=10)
    code, out = run("purge", "--days", "7")
    assert code == 0
    assert "Removed 1" in out
    assert store.list_invitations(alice.user.id) == []
