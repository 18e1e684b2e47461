"""
auth/store.py -- SQLAlchemy Core persistence layer for user identity records.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. Resolver, session, and guard code never touch SQL directly.

Contract consumed by the core:
  find_by_email, find_by_provider_id, find_by_id, insert, update_fields.
  Each call is atomic at the single-row level. Uniqueness violations surface
  as DuplicateKey(field), never as a raw IntegrityError.

Uniqueness:
  email, google_id, and github_id each carry a UNIQUE constraint. NULL provider
  ids do not collide (SQL treats NULLs as distinct in UNIQUE), which is exactly
  the "unique when present" rule.

  Emails are stored lowercase. Lookups lowercase their argument, so the
  unique index is also the case-insensitive comparison key.

Security:
  All queries use bound parameters. No f-strings in SQL.
  password_hash and refresh_token_hash are digests; the store never sees
  plaintext secrets.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateKey
from auth.models import PROVIDER_FIELDS, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(254), nullable=False, unique=True),
    Column("username", String(255)),
    Column("password_hash", Text),  # NULL for federated-only accounts
    Column("google_id", String(255), unique=True),
    Column("github_id", String(255), unique=True),
    Column("thumbnail", Text),
    Column("refresh_token_hash", Text),  # NULL = no active refresh session
    Column("created_at", String(32), nullable=False),
)

# Columns update_fields() may touch. id, email, and created_at are immutable
# once the record exists.
_MUTABLE_FIELDS = frozenset(
    {"username", "password_hash", "google_id", "github_id", "thumbnail", "refresh_token_hash"}
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _duplicate_field(exc: IntegrityError) -> str:
    """Name the unique column an IntegrityError came from.

    SQLite reports "UNIQUE constraint failed: users.email"; PostgreSQL
    includes the constraint name (users_email_key). Both contain the column.
    """
    message = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
    for field in ("email", "google_id", "github_id"):
        if field in message:
            return field
    return "id"


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User records.

    Usage:
        store = UserStore("sqlite:///gatehouse.db")
        user = store.insert(User(email="a@x.com", password_hash=digest))
        store.update_fields(user.id, refresh_token_hash=token_digest)
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def find_by_id(self, user_id: str) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_email(self, email: str) -> User | None:
        """Look up a user by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def find_by_provider_id(self, provider: str, provider_id: str) -> User | None:
        """Look up a user by a provider's stable user id.

        Only the column belonging to provider is searched: a GitHub id is never
        compared against google_id. Raises KeyError for an unknown provider.
        """
        column = _users.c[PROVIDER_FIELDS[provider]]
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(column == provider_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, user: User) -> User:
        """Insert a new record and return it with id and created_at assigned.

        Raises DuplicateKey if the email or a provider id is already taken.
        The existing record is left untouched.
        """
        record = {
            "id": user.id or str(uuid.uuid4()),
            "email": user.email.strip().lower(),
            "username": user.username,
            "password_hash": user.password_hash,
            "google_id": user.google_id,
            "github_id": user.github_id,
            "thumbnail": user.thumbnail,
            "refresh_token_hash": user.refresh_token_hash,
            "created_at": _now_iso(),
        }
        try:
            with self.engine.begin() as conn:
                conn.execute(_users.insert().values(**record))
        except IntegrityError as exc:
            raise DuplicateKey(_duplicate_field(exc)) from exc
        return User(**record)

    def update_fields(self, user_id: str, **fields) -> bool:
        """Overwrite mutable fields on one record (last write wins).

        Accepted fields: username, password_hash, google_id, github_id,
        thumbnail, refresh_token_hash. Unknown or immutable fields raise
        ValueError rather than being silently ignored.

        Returns True if a row was updated, False if user_id was not found.
        Raises DuplicateKey if a provider id collides with another record.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)!r}")
        if not fields:
            return self.find_by_id(user_id) is not None
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
        except IntegrityError as exc:
            raise DuplicateKey(_duplicate_field(exc)) from exc
        return result.rowcount > 0

    def ping(self) -> bool:
        """Return True if the database answers a trivial query. Used by /health."""
        try:
            with self.engine.connect() as conn:
                conn.execute(_users.select().limit(1))
        except Exception:  # noqa: BLE001 -- health probe reports, never raises
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        password_hash=row.password_hash,
        google_id=row.google_id,
        github_id=row.github_id,
        thumbnail=row.thumbnail,
        refresh_token_hash=row.refresh_token_hash,
        created_at=row.created_at,
    )
