"""
auth/audit.py -- Append-only audit trail of security-relevant actions.

Entries are write-once: this module exposes insert and read, never update
or delete. old_values / new_values are opaque JSON snapshots.

A failed audit write never rolls back or fails the primary operation. It is
logged at ERROR with the stack trace on the "adminauth.audit" logger, which
is where operational monitoring picks it up.
"""

from __future__ import annotations

import json
import logging

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import AuditAction, AuditLogEntry, RequestContext
from auth.store import audit_log, iso, utcnow

logger = logging.getLogger("adminauth.audit")


class AuditLog:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def record(
        self,
        action: AuditAction,
        user_id: int | None = None,
        ctx: RequestContext | None = None,
        resource_type: str | None = None,
        resource_id: int | None = None,
        old_values: dict | None = None,
        new_values: dict | None = None,
    ) -> int | None:
        """Append one entry. Returns its ID, or None if the write failed."""
        ctx = ctx or RequestContext()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    audit_log.insert().values(
                        user_id=user_id,
                        action=action.value,
                        resource_type=resource_type,
                        resource_id=resource_id,
                        old_values=json.dumps(old_values) if old_values is not None else None,
                        new_values=json.dumps(new_values) if new_values is not None else None,
                        ip_address=ctx.ip_address,
                        user_agent=ctx.user_agent,
                        created_at=iso(utcnow()),
                    )
                )
                entry_id = result.inserted_primary_key[0]
        except SQLAlchemyError:
            logger.exception("Audit write failed: action=%s user_id=%s", action.value, user_id)
            return None
        logger.info("%s user_id=%s ip=%s", action.value, user_id, ctx.ip_address)
        return entry_id

    def list_for_user(self, user_id: int, limit: int = 100) -> list[AuditLogEntry]:
        """Most recent entries for a user, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                audit_log.select()
                .where(audit_log.c.user_id == user_id)
                .order_by(audit_log.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def list_by_action(self, action: AuditAction, limit: int = 100) -> list[AuditLogEntry]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                audit_log.select()
                .where(audit_log.c.action == action.value)
                .order_by(audit_log.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_entry(r) for r in rows]


def _row_to_entry(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        old_values=json.loads(row.old_values) if row.old_values else None,
        new_values=json.loads(row.new_values) if row.new_values else None,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
    )
