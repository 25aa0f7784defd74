from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from onboarding.storage.models import Account


@dataclass(frozen=True)
class GuardState:
    failed_login_count: int
    locked_until: Optional[datetime]

    def as_changes(self) -> dict:
        return {
            "failed_login_count": self.failed_login_count,
            "locked_until": self.locked_until,
        }

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


class LoginGuard:
    """Per-account failed login counting with a fixed lockout window.

    The counter goes back to zero when the lock engages, so the first wrong
    password after the window expires starts a fresh run instead of
    re-locking immediately. Expired locks are cleared lazily on the next
    recorded outcome.
    """

    def __init__(
        self, max_attempts: int = 5, lock_duration: timedelta = timedelta(minutes=15)
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.lock_duration = lock_duration

    def is_locked(self, account: Account, now: datetime) -> bool:
        return account.locked_until is not None and account.locked_until > now

    def record_failure(self, account: Account, now: datetime) -> GuardState:
        count = account.failed_login_count + 1
        if count >= self.max_attempts:
            return GuardState(failed_login_count=0, locked_until=now + self.lock_duration)
        locked_until = account.locked_until
        if locked_until is not None and locked_until <= now:
            locked_until = None
        return GuardState(failed_login_count=count, locked_until=locked_until)

    def record_success(self, account: Optional[Account] = None) -> GuardState:
        return GuardState(failed_login_count=0, locked_until=None)
