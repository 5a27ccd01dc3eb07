"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
CredentialStore is the repository; the _row_to_* functions are the mappers.
Ceremony and route code never touches SQL directly.

Invariants enforced here, at the storage boundary:
  - Username uniqueness (UNIQUE constraint, mapped to UsernameTaken).
  - A user never drops to zero passkeys: delete_credential() is a single
    conditional DELETE, so two concurrent deletes cannot both pass a count
    check made in a separate query.
  - Every credential / recovery code / token query is scoped by user_id.
  - Single-use tokens are consumed with a conditional UPDATE (used = 0 AND
    expires_at > now). rowcount decides the winner; there is no read-then-
    write window.
  - Multi-row commits (register_user, add_credential_with_setup_token,
    replace_recovery_codes) run inside engine.begin(). Any exception raised
    inside the block rolls back every write in it.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Recovery codes arrive here already hashed; plaintext never reaches the DB.

Time:
  Timestamps are stored as ISO 8601 UTC strings with fixed microsecond
  precision (_iso) so string comparison in SQL is chronological comparison.
  self.clock is injectable for expiry boundary tests.

Layer rule: no imports from api/, core/, or cache/.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from sqlalchemy import (
    Column,
    Integer,
    LargeBinary,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import (
    InvalidInvitation,
    InvalidSetupToken,
    InvitationRequired,
    LastCredentialError,
    NotFoundError,
    PreconditionFailed,
    UsernameTaken,
)
from auth.models import InvitationToken, NewCredential, PasskeyCredential, RecoveryCode, SetupToken, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'bookshelf_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
    Column("is_initial_user", Integer, nullable=False, server_default="0"),
)

_credentials = Table(
    "passkey_credentials",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("credential_id", Text, nullable=False, unique=True),  # base64url
    Column("public_key", LargeBinary, nullable=False),  # COSE key bytes
    Column("sign_count", Integer, nullable=False, server_default="0"),
    Column("device_name", String(100)),
    Column("transports", Text),  # JSON list, e.g. ["internal", "hybrid"]
    Column("created_at", String(32), nullable=False),
    Column("last_used_at", String(32)),
)

_recovery_codes = Table(
    "recovery_codes",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("code_hash", String(60), nullable=False, unique=True),  # bcrypt
    Column("used", Integer, nullable=False, server_default="0"),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_invitations = Table(
    "invitation_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("created_by", String(36), nullable=False, index=True),
    Column("token", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("used_at", String(32)),
    Column("used_by", String(36)),
    Column("created_at", String(32), nullable=False),
)

_setup_tokens = Table(
    "setup_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("token", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _new_id() -> str:
    return str(uuid.uuid4())


def _insert_recovery_codes(conn, user_id: str, code_hashes: list[str], now: str) -> None:
    # An executemany with no rows compiles to INSERT ... DEFAULT VALUES.
    if not code_hashes:
        return
    conn.execute(
        _recovery_codes.insert(),
        [{"id": _new_id(), "user_id": user_id, "code_hash": h, "used": 0, "created_at": now} for h in code_hashes],
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users, passkeys, recovery codes, and link tokens.

    Usage:
        store = CredentialStore()
        user = store.register_user(User(username="alice", id=handle), new_cred, code_hashes)
        creds = store.list_credentials(user.id)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, clock: Callable[[], datetime] = _utcnow) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self.clock = clock

    def now(self) -> str:
        """Current time in the ISO form stored in every timestamp column."""
        return _iso(self.clock())

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        """Return True if at least one user exists. Drives the bootstrap path."""
        return self.count_users() > 0

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM users")).scalar()
        return result or 0

    def count_credentials(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(text("SELECT COUNT(*) FROM passkey_credentials")).scalar()
        return result or 0

    def get_user_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def register_user(
        self,
        user: User,
        credential: NewCredential,
        code_hashes: list[str],
        device_name: str | None = None,
        invitation_token: str | None = None,
    ) -> User:
        """Create a user with its first passkey and recovery codes in one transaction.

        Without invitation_token this is the bootstrap path: the user row is
        inserted only if the users table is still empty, checked in the same
        statement as the insert. A concurrent bootstrap that lost the race gets
        InvitationRequired.

        With invitation_token the invitation is consumed first; the rollback
        on any later failure (username taken, duplicate credential) returns it
        to the unused state.

        user.id must already be set (it is the WebAuthn user handle).
        """
        now = self.now()
        with self.engine.begin() as conn:
            if invitation_token is None:
                try:
                    inserted = conn.execute(
                        text(
                            """
                            INSERT INTO users (id, username, created_at, is_initial_user)
                            SELECT :id, :username, :created_at, 1
                            WHERE NOT EXISTS (SELECT 1 FROM users)
                            """
                        ),
                        {"id": user.id, "username": user.username, "created_at": now},
                    )
                except IntegrityError as exc:
                    raise UsernameTaken() from exc
                if inserted.rowcount != 1:
                    raise InvitationRequired()
                is_initial = True
            else:
                consumed = conn.execute(
                    _invitations.update()
                    .where(
                        (_invitations.c.token == invitation_token)
                        & (_invitations.c.used == 0)
                        & (_invitations.c.expires_at > now)
                    )
                    .values(used=1, used_at=now)
                )
                if consumed.rowcount != 1:
                    raise InvalidInvitation()
                try:
                    conn.execute(
                        _users.insert().values(id=user.id, username=user.username, created_at=now, is_initial_user=0)
                    )
                except IntegrityError as exc:
                    raise UsernameTaken() from exc
                conn.execute(
                    _invitations.update().where(_invitations.c.token == invitation_token).values(used_by=user.id)
                )
                is_initial = False

            self._insert_credential(conn, user.id, credential, device_name, now)
            _insert_recovery_codes(conn, user.id, code_hashes, now)

        return User(id=user.id, username=user.username, created_at=now, is_initial_user=is_initial)

    # ------------------------------------------------------------------
    # Passkey credentials
    # ------------------------------------------------------------------

    def _insert_credential(
        self,
        conn,
        user_id: str,
        credential: NewCredential,
        device_name: str | None,
        now: str,
    ) -> PasskeyCredential:
        row_id = _new_id()
        try:
            conn.execute(
                _credentials.insert().values(
                    id=row_id,
                    user_id=user_id,
                    credential_id=credential.credential_id,
                    public_key=credential.public_key,
                    sign_count=credential.sign_count,
                    device_name=device_name,
                    transports=json.dumps(credential.transports),
                    created_at=now,
                )
            )
        except IntegrityError as exc:
            raise PreconditionFailed("This passkey is already registered.") from exc
        return PasskeyCredential(
            id=row_id,
            user_id=user_id,
            credential_id=credential.credential_id,
            public_key=credential.public_key,
            sign_count=credential.sign_count,
            device_name=device_name,
            transports=list(credential.transports),
            created_at=now,
        )

    def add_credential(
        self,
        user_id: str,
        credential: NewCredential,
        device_name: str | None = None,
    ) -> PasskeyCredential:
        """Attach another passkey to an existing user (authenticated add flow)."""
        with self.engine.begin() as conn:
            return self._insert_credential(conn, user_id, credential, device_name, self.now())

    def list_credentials(self, user_id: str) -> list[PasskeyCredential]:
        """Return the user's passkeys, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _credentials.select().where(_credentials.c.user_id == user_id).order_by(_credentials.c.created_at)
            ).fetchall()
        return [_row_to_credential(r) for r in rows]

    def get_credential(self, user_id: str, credential_id: str) -> PasskeyCredential | None:
        """Look up a passkey by its WebAuthn credential id, scoped to user_id."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _credentials.select().where(
                    (_credentials.c.user_id == user_id) & (_credentials.c.credential_id == credential_id)
                )
            ).fetchone()
        return _row_to_credential(row) if row is not None else None

    def record_credential_use(self, user_id: str, row_id: str, sign_count: int) -> None:
        """Persist the counter reported by the latest verified assertion.

        The counter never moves backwards: an assertion that finishes after a
        later one with a higher count leaves the row untouched.
        """
        with self.engine.begin() as conn:
            conn.execute(
                _credentials.update()
                .where(
                    (_credentials.c.id == row_id)
                    & (_credentials.c.user_id == user_id)
                    & (_credentials.c.sign_count <= sign_count)
                )
                .values(sign_count=sign_count, last_used_at=self.now())
            )

    def delete_credential(self, user_id: str, row_id: str) -> None:
        """Delete one of the user's passkeys.

        Raises NotFoundError if row_id does not exist or belongs to someone
        else (the two cases are indistinguishable to the caller), and
        LastCredentialError if it is the user's only passkey.
        """
        params = {"id": row_id, "user_id": user_id}
        with self.engine.begin() as conn:
            deleted = conn.execute(
                text(
                    """
                    DELETE FROM passkey_credentials
                    WHERE id = :id AND user_id = :user_id
                      AND (SELECT COUNT(*) FROM passkey_credentials WHERE user_id = :user_id) > 1
                    """
                ),
                params,
            )
            if deleted.rowcount == 1:
                return
            exists = conn.execute(
                text("SELECT 1 FROM passkey_credentials WHERE id = :id AND user_id = :user_id"),
                params,
            ).fetchone()
        if exists is None:
            raise NotFoundError("Passkey not found.")
        raise LastCredentialError()

    # ------------------------------------------------------------------
    # Recovery codes
    # ------------------------------------------------------------------

    def get_unused_recovery_codes(self, user_id: str) -> list[RecoveryCode]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _recovery_codes.select().where(
                    (_recovery_codes.c.user_id == user_id) & (_recovery_codes.c.used == 0)
                )
            ).fetchall()
        return [_row_to_recovery_code(r) for r in rows]

    def consume_recovery_code(self, user_id: str, code_id: str) -> bool:
        """Mark a code used. Returns False if it was already used (lost a race)."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _recovery_codes.update()
                .where(
                    (_recovery_codes.c.id == code_id)
                    & (_recovery_codes.c.user_id == user_id)
                    & (_recovery_codes.c.used == 0)
                )
                .values(used=1, used_at=self.now())
            )
        return result.rowcount == 1

    def replace_recovery_codes(self, user_id: str, code_hashes: list[str]) -> None:
        """Invalidate every unused code and store a fresh set, atomically.

        Old codes are marked used rather than deleted so the audit trail
        keeps them.
        """
        now = self.now()
        with self.engine.begin() as conn:
            conn.execute(
                _recovery_codes.update()
                .where((_recovery_codes.c.user_id == user_id) & (_recovery_codes.c.used == 0))
                .values(used=1, used_at=now)
            )
            _insert_recovery_codes(conn, user_id, code_hashes, now)

    def count_unused_recovery_codes(self, user_id: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                text("SELECT COUNT(*) FROM recovery_codes WHERE user_id = :user_id AND used = 0"),
                {"user_id": user_id},
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Invitation tokens
    # ------------------------------------------------------------------

    def create_invitation(self, created_by: str, token: str, expires_at: datetime) -> InvitationToken:
        now = self.now()
        invitation = InvitationToken(
            id=_new_id(),
            created_by=created_by,
            token=token,
            expires_at=_iso(expires_at),
            created_at=now,
        )
        with self.engine.begin() as conn:
            conn.execute(
                _invitations.insert().values(
                    id=invitation.id,
                    created_by=created_by,
                    token=token,
                    expires_at=invitation.expires_at,
                    used=0,
                    created_at=now,
                )
            )
        return invitation

    def get_valid_invitation(self, token: str) -> InvitationToken | None:
        """Return the invitation if it exists, is unused, and has not expired."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _invitations.select().where(
                    (_invitations.c.token == token)
                    & (_invitations.c.used == 0)
                    & (_invitations.c.expires_at > self.now())
                )
            ).fetchone()
        return _row_to_invitation(row) if row is not None else None

    def list_invitations(self, created_by: str) -> list[InvitationToken]:
        """Invitations minted by created_by, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _invitations.select()
                .where(_invitations.c.created_by == created_by)
                .order_by(_invitations.c.created_at.desc())
            ).fetchall()
        return [_row_to_invitation(r) for r in rows]

    # ------------------------------------------------------------------
    # Setup tokens
    # ------------------------------------------------------------------

    def create_setup_token(self, user_id: str, token: str, expires_at: datetime) -> SetupToken:
        now = self.now()
        setup = SetupToken(
            id=_new_id(),
            user_id=user_id,
            token=token,
            expires_at=_iso(expires_at),
            created_at=now,
        )
        with self.engine.begin() as conn:
            conn.execute(
                _setup_tokens.insert().values(
                    id=setup.id,
                    user_id=user_id,
                    token=token,
                    expires_at=setup.expires_at,
                    used=0,
                    created_at=now,
                )
            )
        return setup

    def get_valid_setup_token(self, token: str) -> SetupToken | None:
        """Return the setup token if it exists, is unused, and has not expired."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _setup_tokens.select().where(
                    (_setup_tokens.c.token == token)
                    & (_setup_tokens.c.used == 0)
                    & (_setup_tokens.c.expires_at > self.now())
                )
            ).fetchone()
        return _row_to_setup_token(row) if row is not None else None

    def add_credential_with_setup_token(
        self,
        token: str,
        credential: NewCredential,
        device_name: str | None = None,
    ) -> tuple[User, PasskeyCredential]:
        """Consume a setup token and attach the new passkey to its owner.

        No user row and no recovery codes are created. If the credential
        insert fails the token is returned to the unused state.
        """
        now = self.now()
        with self.engine.begin() as conn:
            consumed = conn.execute(
                _setup_tokens.update()
                .where(
                    (_setup_tokens.c.token == token) & (_setup_tokens.c.used == 0) & (_setup_tokens.c.expires_at > now)
                )
                .values(used=1, used_at=now)
            )
            if consumed.rowcount != 1:
                raise InvalidSetupToken()
            owner_id = conn.execute(select(_setup_tokens.c.user_id).where(_setup_tokens.c.token == token)).scalar()
            owner_row = conn.execute(_users.select().where(_users.c.id == owner_id)).fetchone()
            if owner_row is None:
                raise InvalidSetupToken()
            passkey = self._insert_credential(conn, owner_row.id, credential, device_name, now)
        return _row_to_user(owner_row), passkey

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_stale_tokens(self, retention: timedelta) -> int:
        """Delete invitation/setup tokens expired or used longer ago than retention.

        Tokens inside the retention window are kept for audit even though they
        can no longer be used. Returns the number of rows removed.
        """
        cutoff = _iso(self.clock() - retention)
        removed = 0
        with self.engine.begin() as conn:
            for table in (_invitations, _setup_tokens):
                result = conn.execute(
                    table.delete().where(
                        (table.c.expires_at < cutoff) | ((table.c.used == 1) & (table.c.used_at < cutoff))
                    )
                )
                removed += result.rowcount
        return removed

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        created_at=row.created_at,
        is_initial_user=bool(row.is_initial_user),
    )


def _row_to_credential(row) -> PasskeyCredential:
    return PasskeyCredential(
        id=row.id,
        user_id=row.user_id,
        credential_id=row.credential_id,
        public_key=bytes(row.public_key),
        sign_count=row.sign_count,
        device_name=row.device_name,
        transports=json.loads(row.transports) if row.transports else [],
        created_at=row.created_at,
        last_used_at=row.last_used_at,
    )


def _row_to_recovery_code(row) -> RecoveryCode:
    return RecoveryCode(
        id=row.id,
        user_id=row.user_id,
        code_hash=row.code_hash,
        used=bool(row.used),
        used_at=row.used_at,
        created_at=row.created_at,
    )


def _row_to_invitation(row) -> InvitationToken:
    return InvitationToken(
        id=row.id,
        created_by=row.created_by,
        token=row.token,
        expires_at=row.expires_at,
        used=bool(row.used),
        used_at=row.used_at,
        used_by=row.used_by,
        created_at=row.created_at,
    )


def _row_to_setup_token(row) -> SetupToken:
    return SetupToken(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        expires_at=row.expires_at,
        used=bool(row.used),
        used_at=row.used_at,
        created_at=row.created_at,
    )
