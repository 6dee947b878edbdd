"""
auth/sessions.py -- Server-side session records for issued bearer tokens.

One row per successful login. A bearer token is only honoured while its
session row is active and unexpired, which gives immediate server-side
revocation despite the token's own self-contained validity window.

Two-tier expiry:
  JWT exp and user_sessions.expires_at are independent clocks. The session
  check is authoritative for revocation; the token's exp is only an upper
  bound. Both must pass for an authenticated request.

Ownership:
  Session rows are written only through the session that created them
  (revoke by id is owner-checked in the WHERE clause). Reads may run
  concurrently and unsynchronized.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import and_, func, or_, select
from sqlalchemy.engine import Connection, Engine

from auth.models import Session
from auth.store import iso, transaction, user_sessions, utcnow
from auth.tokens import token_hashes_match


class SessionStore:
    """Repository for Session entities.

    Usage:
        sessions = SessionStore(engine)
        session_id = sessions.create(user_id, token_hash, jti, expires_at, ip, user_agent)
        session = sessions.find_active(token_hash)
        sessions.revoke(session_id)
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(
        self,
        user_id: int,
        token_hash: str,
        jti: str,
        expires_at: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
        conn: Connection | None = None,
    ) -> int:
        """Insert a session row and return its ID. Concurrent logins each get their own row.

        Pass conn to insert inside the caller's transaction.
        """
        with transaction(self.engine, conn) as tx:
            result = tx.execute(
                user_sessions.insert().values(
                    user_id=user_id,
                    token_hash=token_hash,
                    jti=jti,
                    expires_at=iso(expires_at),
                    is_active=1,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    created_at=iso(utcnow()),
                )
            )
            return result.inserted_primary_key[0]

    def find_active(self, token_hash: str, now: datetime | None = None) -> Session | None:
        """Return the active, unexpired session for this token hash, or None.

        The indexed equality lookup is followed by a constant-time comparison
        of the stored hash before the row is trusted.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                user_sessions.select().where(
                    and_(
                        user_sessions.c.token_hash == token_hash,
                        user_sessions.c.is_active == 1,
                        user_sessions.c.expires_at > iso(now or utcnow()),
                    )
                )
            ).fetchone()
        if row is None or not token_hashes_match(row.token_hash, token_hash):
            return None
        return _row_to_session(row)

    def get(self, session_id: int) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(user_sessions.select().where(user_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_active_for_user(self, user_id: int, now: datetime | None = None) -> list[Session]:
        """All of a user's active, unexpired sessions, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                user_sessions.select()
                .where(
                    and_(
                        user_sessions.c.user_id == user_id,
                        user_sessions.c.is_active == 1,
                        user_sessions.c.expires_at > iso(now or utcnow()),
                    )
                )
                .order_by(user_sessions.c.created_at.desc(), user_sessions.c.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def revoke(self, session_id: int, user_id: int | None = None) -> bool:
        """Mark a session inactive. Idempotent.

        When user_id is given it is part of the WHERE clause, so a caller can
        only revoke their own sessions even if they know another session's ID.
        Returns True if a matching row exists (active or already revoked).
        """
        condition = user_sessions.c.id == session_id
        if user_id is not None:
            condition = and_(condition, user_sessions.c.user_id == user_id)
        with self.engine.begin() as conn:
            result = conn.execute(user_sessions.update().where(condition).values(is_active=0))
        return result.rowcount > 0

    def revoke_by_token(self, token_hash: str) -> bool:
        """Revoke the session for a token hash (logout). Expired rows are revoked too."""
        with self.engine.begin() as conn:
            result = conn.execute(
                user_sessions.update()
                .where(and_(user_sessions.c.token_hash == token_hash, user_sessions.c.is_active == 1))
                .values(is_active=0)
            )
        return result.rowcount > 0

    def revoke_all_for_user(self, user_id: int, except_session_id: int | None = None) -> int:
        """Revoke every active session of a user, optionally sparing one. Returns the count."""
        condition = and_(user_sessions.c.user_id == user_id, user_sessions.c.is_active == 1)
        if except_session_id is not None:
            condition = and_(condition, user_sessions.c.id != except_session_id)
        with self.engine.begin() as conn:
            result = conn.execute(user_sessions.update().where(condition).values(is_active=0))
        return result.rowcount

    def purge_expired(self, now: datetime | None = None) -> int:
        """Delete sessions that are revoked or past expires_at. Returns rows deleted."""
        with self.engine.begin() as conn:
            result = conn.execute(
                user_sessions.delete().where(
                    or_(user_sessions.c.is_active == 0, user_sessions.c.expires_at <= iso(now or utcnow()))
                )
            )
        return result.rowcount

    def count_active(self, now: datetime | None = None) -> int:
        """Sessions that would still authenticate: active and not yet expired."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(user_sessions)
                .where(and_(user_sessions.c.is_active == 1, user_sessions.c.expires_at > iso(now or utcnow())))
            ).scalar()
        return result or 0


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        jti=row.jti,
        expires_at=row.expires_at,
        is_active=bool(row.is_active),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
    )
