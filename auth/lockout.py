"""
auth/lockout.py -- Per-user failed-attempt tracking and time-boxed locks.

State machine per user, keyed by login_attempts and locked_until:

  Unlocked  locked_until is NULL or in the past
  Locked    locked_until is in the future

  Unlocked --fail--> login_attempts += 1; when the new count reaches
                     max_login_attempts, locked_until = now + lock_duration
  Locked   --any---> refused before credentials are checked; attempts untouched
  any      --ok----> login_attempts = 0, locked_until = NULL, last_login = now

An expired lock leaves login_attempts at the threshold, so the next failure
re-locks immediately while a success clears the counter.

The tracker holds no state of its own: the users row is the single source
of truth, written only through UserStore's field-scoped updates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.engine import Connection

from auth.models import User
from auth.store import UserStore, iso, parse_iso, utcnow
from core.config import get_settings

logger = logging.getLogger("adminauth.auth.lockout")


@dataclass
class FailureOutcome:
    attempts: int
    locked_until: str | None
    just_locked: bool


class LockoutTracker:
    """Consults and updates lockout state around every login attempt."""

    def __init__(
        self,
        store: UserStore,
        max_attempts: int | None = None,
        lock_duration_seconds: int | None = None,
    ) -> None:
        settings = get_settings()
        self.store = store
        self.max_attempts = max_attempts or settings.max_login_attempts
        self.lock_duration = timedelta(seconds=lock_duration_seconds or settings.lock_duration_seconds)

    def is_locked(self, user: User, now: datetime | None = None) -> bool:
        locked_until = parse_iso(user.locked_until)
        if locked_until is None:
            return False
        return locked_until > (now or utcnow())

    def retry_after(self, user: User, now: datetime | None = None) -> int:
        """Whole seconds until the lock lifts (0 when unlocked)."""
        locked_until = parse_iso(user.locked_until)
        if locked_until is None:
            return 0
        remaining = (locked_until - (now or utcnow())).total_seconds()
        return max(0, int(remaining + 0.999))

    def record_failure(self, user: User, now: datetime | None = None) -> FailureOutcome:
        """Count one failed attempt; lock the account on reaching the threshold."""
        lock_until = iso((now or utcnow()) + self.lock_duration)
        attempts, locked_until = self.store.record_failed_attempt(user.id, self.max_attempts, lock_until)
        just_locked = locked_until == lock_until
        if just_locked:
            logger.warning("Account locked: user_id=%s attempts=%d until=%s", user.id, attempts, locked_until)
        else:
            logger.info("Failed login: user_id=%s attempts=%d/%d", user.id, attempts, self.max_attempts)
        return FailureOutcome(attempts=attempts, locked_until=locked_until, just_locked=just_locked)

    def record_success(self, user: User, conn: Connection | None = None) -> None:
        self.store.reset_login_state(user.id, conn=conn)

    def unlock(self, user: User) -> None:
        """Operator override: clear the lock without stamping last_login."""
        self.store.reset_login_state(user.id, stamp_last_login=False)
