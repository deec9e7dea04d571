from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class LockoutState:
    """Failed-login counter and lock deadline stored on the user row.

    Transitions return a new state; callers persist ``login_attempts`` and
    ``lock_until`` back onto the user.
    """

    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    max_attempts: int = 5
    lock_duration: timedelta = timedelta(minutes=30)

    @classmethod
    def for_user(cls, user, *, max_attempts: int = 5, lockout_minutes: int = 30) -> "LockoutState":
        return cls(
            login_attempts=user.login_attempts or 0,
            lock_until=user.lock_until,
            max_attempts=max_attempts,
            lock_duration=timedelta(minutes=lockout_minutes),
        )

    def is_locked(self, now: datetime) -> bool:
        return bool(self.lock_until and self.lock_until > now)

    def record_failure(self, now: datetime) -> "LockoutState":
        # A lapsed lock starts a fresh window at attempt one
        if self.lock_until and self.lock_until <= now:
            return replace(self, login_attempts=1, lock_until=None)
        attempts = self.login_attempts + 1
        lock_until = self.lock_until
        if attempts >= self.max_attempts and not self.is_locked(now):
            lock_until = now + self.lock_duration
        return replace(self, login_attempts=attempts, lock_until=lock_until)

    def record_success(self) -> "LockoutState":
        return replace(self, login_attempts=0, lock_until=None)

    def as_fields(self) -> dict:
        return {"login_attempts": self.login_attempts, "lock_until": self.lock_until}
