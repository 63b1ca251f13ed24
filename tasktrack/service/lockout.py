from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


@dataclass(frozen=True)
class LockoutState:
    failure_count: int = 0
    locked_until: Optional[datetime] = None


class LockoutPolicy:
    """Failure counting and lockout deadlines for password logins.

    Pure state transitions: nothing here reads the clock or touches storage.
    A deadline in the past means unlocked; there is no sweep that clears it.
    """

    def __init__(self, threshold: int, lockout_duration: timedelta) -> None:
        if threshold < 1:
            raise ValueError("lockout threshold must be at least 1")
        if lockout_duration <= timedelta(0):
            raise ValueError("lockout duration must be positive")
        self.threshold = threshold
        self.lockout_duration = lockout_duration

    @staticmethod
    def is_locked(locked_until: Optional[datetime], now: datetime) -> bool:
        return locked_until is not None and locked_until > now

    def on_failure(self, failure_count: int, now: datetime) -> LockoutState:
        count = failure_count + 1
        if count >= self.threshold:
            return LockoutState(count, now + self.lockout_duration)
        return LockoutState(count, None)

    @staticmethod
    def on_success() -> LockoutState:
        return LockoutState(0, None)
