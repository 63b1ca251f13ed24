from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Identity:
    """A registered user. Snapshots are immutable; use ``evolve`` to change one."""

    id: str
    email: str
    handle: str
    credential_hash: str
    first_name: str
    last_name: str
    email_verified: bool = False
    verification_code: Optional[str] = None
    verification_expiry: Optional[datetime] = None
    reset_code: Optional[str] = None
    reset_expiry: Optional[datetime] = None
    refresh_token: Optional[str] = None
    refresh_expiry: Optional[datetime] = None
    failure_count: int = 0
    locked_until: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        handle: str,
        credential_hash: str,
        first_name: str,
        last_name: str,
        *,
        now: Optional[datetime] = None,
    ) -> "Identity":
        stamp = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            handle=handle,
            credential_hash=credential_hash,
            first_name=first_name,
            last_name=last_name,
            created_at=stamp,
            updated_at=stamp,
        )

    def evolve(self, now: Optional[datetime] = None, **changes) -> "Identity":
        return replace(self, updated_at=now or utcnow(), **changes)


@dataclass(frozen=True)
class Task:
    id: str
    user_id: str
    title: str
    description: Optional[str] = None
    completed: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, user_id: str, title: str, description: Optional[str] = None
    ) -> "Task":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            title=title,
            description=description,
            created_at=now,
            updated_at=now,
        )

    def evolve(self, **changes) -> "Task":
        return replace(self, updated_at=utcnow(), **changes)
