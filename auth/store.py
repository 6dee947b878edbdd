"""
auth/store.py -- SQLAlchemy Core schema and the User repository.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
is the mapper. SessionStore (auth/sessions.py) and AuditLog (auth/audit.py)
share the same engine and metadata. Route and service code never touches SQL
directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency:
  Lockout fields are never written by a read-modify-write in Python. The
  failed-attempt path increments in SQL (login_attempts = login_attempts + 1)
  inside one transaction, and the success path resets only the lockout
  fields. Two parallel failures therefore cannot under-count, and a reset
  cannot clobber a concurrent increment with a stale full-row write. Exact
  serializability under a burst is whatever the backing store's isolation
  level provides.

Timestamps:
  Stored as fixed-width ISO 8601 UTC strings (microsecond precision). Every
  value has the same width and offset, so SQL string comparison is time
  comparison -- expires_at > :now works without dialect date functions.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    case,
    create_engine,
    event,
    or_,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.models import User
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(50), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("role", String(20), nullable=False, server_default="developer"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

user_sessions = Table(
    "user_sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("jti", String(32), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
    Index("idx_sessions_expires", "expires_at"),
    Index("idx_sessions_user_active", "user_id", "is_active"),
)

audit_log = Table(
    "audit_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="SET NULL")),
    Column("action", String(50), nullable=False),
    Column("resource_type", String(50)),
    Column("resource_id", Integer),
    Column("old_values", Text),  # JSON
    Column("new_values", Text),  # JSON
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("created_at", String(32), nullable=False),
    Index("idx_audit_user_action", "user_id", "action"),
    Index("idx_audit_created", "created_at"),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_auth_engine(db_url: str | None = None) -> Engine:
    """Create the engine for the auth tables and ensure the schema exists.

    Defaults to Settings.database_url. SQLite connections get
    check_same_thread=False because FastAPI runs sync handlers in a thread pool.
    """
    db_url = db_url or get_settings().database_url
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    """Render a datetime in the fixed-width storage format."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


@contextmanager
def transaction(engine: Engine, conn: Connection | None = None) -> Iterator[Connection]:
    """Join the caller's transaction when conn is given, otherwise open and commit a new one."""
    if conn is not None:
        yield conn
        return
    with engine.begin() as own:
        yield own


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        engine = create_auth_engine()
        store = UserStore(engine)
        user_id = store.create_user(User(username="alice", email="a@example.com", password_hash=h))
        user = store.get_by_login("alice")
    """

    # Fields update_user() may touch. Lockout fields are deliberately absent:
    # they change only through record_failed_attempt() / reset_login_state().
    _UPDATABLE_FIELDS: frozenset = frozenset({"role", "is_active", "email", "password_hash"})

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def exists(self, username: str, email: str) -> bool:
        """Return True if any user already has this username or this email (single query)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(users.c.id).where(or_(users.c.username == username, users.c.email == email)).limit(1)
            ).fetchone()
        return row is not None

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_login(self, identifier: str) -> User | None:
        """Look up by username (case-sensitive) OR exact email in a single query.

        Usernames are alphanumeric and emails always contain "@", so one
        identifier can match at most one row.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                users.select().where(or_(users.c.username == identifier, users.c.email == identifier)).limit(1)
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(users.c.id).limit(1)).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. The service layer checks exists() first; the UNIQUE constraints
        catch the race where two registrations pass that check concurrently.
        """
        now = iso(utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(
                users.insert().values(
                    username=user.username,
                    email=user.email,
                    password_hash=user.password_hash,
                    role=user.role,
                    is_active=1 if user.is_active else 0,
                    login_attempts=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable profile fields. Returns True if a row was updated.

        Unknown or lockout-related fields raise ValueError (fail fast).
        """
        unknown = set(fields) - self._UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        fields["updated_at"] = iso(utcnow())
        with self.engine.begin() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def record_failed_attempt(self, user_id: int, threshold: int, lock_until: str) -> tuple[int, str | None]:
        """Atomically increment login_attempts and lock when the threshold is reached.

        Runs as a single conditional UPDATE followed by a read-back in the same
        transaction. The CASE sees the pre-update login_attempts (SQLite and
        PostgreSQL evaluate SET expressions against the old row), so the lock
        fires on exactly the attempt that reaches the threshold.

        Returns (login_attempts, locked_until) after the update.
        """
        with self.engine.begin() as conn:
            conn.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(
                    login_attempts=users.c.login_attempts + 1,
                    locked_until=case(
                        (users.c.login_attempts + 1 >= threshold, lock_until),
                        else_=users.c.locked_until,
                    ),
                )
            )
            row = conn.execute(
                select(users.c.login_attempts, users.c.locked_until).where(users.c.id == user_id)
            ).fetchone()
        if row is None:
            return 0, None
        return row.login_attempts, row.locked_until

    def reset_login_state(self, user_id: int, stamp_last_login: bool = True, conn: Connection | None = None) -> None:
        """Clear lockout fields; stamp last_login when called for a successful login.

        Pass conn to make the reset part of a larger transaction (login success).
        """
        values: dict = {"login_attempts": 0, "locked_until": None}
        if stamp_last_login:
            values["last_login"] = iso(utcnow())
        with transaction(self.engine, conn) as tx:
            tx.execute(users.update().where(users.c.id == user_id).values(**values))


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        role=row.role,
        is_active=bool(row.is_active),
        login_attempts=row.login_attempts,
        locked_until=row.locked_until,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
    )
