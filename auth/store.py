"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts and identities.

Pattern: Repository + Data Mapper.
AccountStore is the repository; _row_to_account / _row_to_identity are the
mappers. Gateway, route and dependency code never touches SQL directly.

Session fields (refresh token, verification token, reset token, verified flag,
password hash) are the only mutable session state in the system. Every write
to them is a compare-and-swap on accounts.version:

    UPDATE accounts SET ..., version = version + 1
     WHERE id = :id AND version = :expected

Zero rows updated means a concurrent request wrote first; the store raises
SessionConflictError instead of overwriting. This turns the refresh race
(two callers presenting the same token) into an explicit 409 for the loser.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Token columns hold HMAC digests only (see auth/tokens.hash_token).

  UNIQUE(provider, provider_subject_id) is a real SQL constraint here. Both
  columns are NOT NULL, so SQLite's NULL-distinct UNIQUE semantics do not
  apply, and a concurrent duplicate link fails with IntegrityError.

DB path: auth/sessionkeep_auth.db unless DATABASE_URL is set.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.errors import SessionConflictError
from auth.models import Account, ExternalIdentity, Role

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'sessionkeep_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # stored lower-cased
    Column("password_hash", Text),  # NULL for external-only accounts
    Column("role", String(20), nullable=False, server_default=Role.USER.value),
    Column("full_name", String(100), nullable=False, server_default=""),
    Column("phone_number", String(20), nullable=False, server_default=""),
    Column("avatar_url", Text),
    Column("created_at", String(32), nullable=False),
    Column("refresh_token", String(64), index=True),  # HMAC-SHA256 hex
    Column("refresh_token_expires_at", String(32)),
    Column("email_verification_token", String(64), index=True),
    Column("is_email_verified", Integer, nullable=False, server_default="0"),
    Column("password_reset_token", String(64), index=True),
    Column("password_reset_token_expires_at", String(32)),
    Column("version", Integer, nullable=False, server_default="0"),
)

_identities = Table(
    "external_identities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("provider", String(30), nullable=False),
    Column("provider_subject_id", String(255), nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("provider", "provider_subject_id", name="uq_external_identity"),
)

# Columns written through _compare_and_swap(). Validated before any SQL so a
# caller typo fails loudly instead of silently writing nothing.
_SESSION_FIELDS = frozenset(
    {
        "password_hash",
        "refresh_token",
        "refresh_token_expires_at",
        "email_verification_token",
        "is_email_verified",
        "password_reset_token",
        "password_reset_token_expires_at",
    }
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. Foreign keys are off by default in SQLite.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_column(value):
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, bool):
        return 1 if value else 0
    return value


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account and ExternalIdentity entities.

    Usage:
        store = AccountStore()
        account = Account(email="a@b.com", password_hash=hash_password("secret"))
        store.create_account(account)
        store.set_refresh_token(account, hash_token(raw), expires_at)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Account queries
    # ------------------------------------------------------------------

    def create_account(self, account: Account, identity: ExternalIdentity | None = None) -> int:
        """Insert a new account (and optionally its first external identity).

        Both rows are written in one transaction, so a first external login
        never leaves an account without its identity. Fills in account.id,
        account.created_at and account.version on success.

        Raises sqlalchemy.exc.IntegrityError if the email is already taken or
        the identity is already linked. Callers treat that as "a concurrent
        request got there first".
        """
        created_at = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    email=account.email.lower(),
                    password_hash=account.password_hash,
                    role=account.role,
                    full_name=account.full_name,
                    phone_number=account.phone_number,
                    avatar_url=account.avatar_url,
                    created_at=created_at,
                    refresh_token=account.refresh_token,
                    refresh_token_expires_at=_to_column(account.refresh_token_expires_at),
                    email_verification_token=account.email_verification_token,
                    is_email_verified=1 if account.is_email_verified else 0,
                    version=0,
                )
            )
            account_id = result.inserted_primary_key[0]
            if identity is not None:
                identity_result = conn.execute(
                    _identities.insert().values(
                        provider=identity.provider,
                        provider_subject_id=identity.provider_subject_id,
                        account_id=account_id,
                        created_at=created_at,
                    )
                )
                identity.id = identity_result.inserted_primary_key[0]
                identity.account_id = account_id
                identity.created_at = created_at
        account.id = account_id
        account.email = account.email.lower()
        account.created_at = created_at
        account.version = 0
        return account_id

    def get_by_id(self, account_id: int) -> Account | None:
        """Look up an account by primary key. Returns None if not found."""
        return self._fetch_one(_accounts.c.id == account_id)

    def get_by_email(self, email: str) -> Account | None:
        """Look up an account by email, case-insensitively."""
        return self._fetch_one(func.lower(_accounts.c.email) == email.strip().lower())

    def get_by_refresh_token(self, token_digest: str) -> Account | None:
        """Return the account whose current refresh token digest matches exactly."""
        return self._fetch_one(_accounts.c.refresh_token == token_digest)

    def get_by_verification_token(self, token_digest: str) -> Account | None:
        return self._fetch_one(_accounts.c.email_verification_token == token_digest)

    def get_by_reset_token(self, token_digest: str) -> Account | None:
        return self._fetch_one(_accounts.c.password_reset_token == token_digest)

    def has_admin(self) -> bool:
        """Return True if at least one Admin account exists (startup seeding)."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_accounts).where(_accounts.c.role == Role.ADMIN.value)
            ).scalar()
        return (result or 0) > 0

    def count_accounts(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_accounts)).scalar()
        return result or 0

    def set_avatar_url(self, account: Account, avatar_url: str) -> None:
        """Store a profile picture URL. Not a session field -- no version check."""
        with self.engine.begin() as conn:
            conn.execute(_accounts.update().where(_accounts.c.id == account.id).values(avatar_url=avatar_url))
        account.avatar_url = avatar_url

    # ------------------------------------------------------------------
    # External identity queries
    # ------------------------------------------------------------------

    def get_by_identity(self, provider: str, subject: str) -> Account | None:
        """Return the account linked to (provider, subject), or None."""
        query = (
            _accounts.select()
            .join(_identities, _identities.c.account_id == _accounts.c.id)
            .where((_identities.c.provider == provider) & (_identities.c.provider_subject_id == subject))
        )
        with self.engine.connect() as conn:
            row = conn.execute(query).fetchone()
        return _row_to_account(row) if row is not None else None

    def link_identity(self, account: Account, provider: str, subject: str) -> ExternalIdentity:
        """Link a new external identity to an existing account.

        Raises sqlalchemy.exc.IntegrityError if (provider, subject) is already
        linked -- the UNIQUE constraint is the arbiter for concurrent links.
        """
        identity = ExternalIdentity(provider=provider, provider_subject_id=subject, account_id=account.id)
        identity.created_at = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _identities.insert().values(
                    provider=provider,
                    provider_subject_id=subject,
                    account_id=account.id,
                    created_at=identity.created_at,
                )
            )
            identity.id = result.inserted_primary_key[0]
        return identity

    def list_identities(self, account_id: int) -> list[ExternalIdentity]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _identities.select().where(_identities.c.account_id == account_id).order_by(_identities.c.id)
            ).fetchall()
        return [_row_to_identity(r) for r in rows]

    def count_identities(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_identities)).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Session fields (compare-and-swap on version)
    # ------------------------------------------------------------------

    def set_refresh_token(self, account: Account, token_digest: str, expires_at: datetime) -> None:
        """Replace the account's single live refresh token."""
        self._compare_and_swap(account, refresh_token=token_digest, refresh_token_expires_at=expires_at)

    def clear_refresh_token(self, account: Account) -> None:
        """Drop the live refresh token (logout)."""
        self._compare_and_swap(account, refresh_token=None, refresh_token_expires_at=None)

    def set_verification_token(self, account: Account, token_digest: str) -> None:
        """Store a new verification token, superseding any earlier one."""
        self._compare_and_swap(account, email_verification_token=token_digest)

    def mark_verified(self, account: Account) -> None:
        """Set the verified flag and consume the verification token."""
        self._compare_and_swap(account, is_email_verified=True, email_verification_token=None)

    def set_reset_token(self, account: Account, token_digest: str, expires_at: datetime) -> None:
        """Store a new password reset token, superseding any earlier one."""
        self._compare_and_swap(
            account,
            password_reset_token=token_digest,
            password_reset_token_expires_at=expires_at,
        )

    def clear_reset_token(self, account: Account) -> None:
        self._compare_and_swap(account, password_reset_token=None, password_reset_token_expires_at=None)

    def reset_password(self, account: Account, password_hash: str) -> None:
        """Store a new password hash and consume the reset token in one write.

        The live refresh token is dropped too, so sessions opened with the old
        password cannot be extended.
        """
        self._compare_and_swap(
            account,
            password_hash=password_hash,
            password_reset_token=None,
            password_reset_token_expires_at=None,
            refresh_token=None,
            refresh_token_expires_at=None,
        )

    def _compare_and_swap(self, account: Account, **fields) -> None:
        unknown = set(fields) - _SESSION_FIELDS
        if unknown:
            raise ValueError(f"Unknown session fields: {unknown!r}")
        values = {name: _to_column(value) for name, value in fields.items()}
        values["version"] = _accounts.c.version + 1
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account.id) & (_accounts.c.version == account.version))
                .values(**values)
            )
        if result.rowcount == 0:
            raise SessionConflictError()
        account.version += 1
        for name, value in fields.items():
            setattr(account, name, value)

    def close(self) -> None:
        self.engine.dispose()

    def _fetch_one(self, condition) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(condition)).fetchone()
        return _row_to_account(row) if row is not None else None


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        role=row.role,
        full_name=row.full_name,
        phone_number=row.phone_number,
        avatar_url=row.avatar_url,
        created_at=row.created_at,
        refresh_token=row.refresh_token,
        refresh_token_expires_at=_parse_ts(row.refresh_token_expires_at),
        email_verification_token=row.email_verification_token,
        is_email_verified=bool(row.is_email_verified),
        password_reset_token=row.password_reset_token,
        password_reset_token_expires_at=_parse_ts(row.password_reset_token_expires_at),
        version=row.version,
    )


def _row_to_identity(row) -> ExternalIdentity:
    return ExternalIdentity(
        id=row.id,
        provider=row.provider,
        provider_subject_id=row.provider_subject_id,
        account_id=row.account_id,
        created_at=row.created_at,
    )
