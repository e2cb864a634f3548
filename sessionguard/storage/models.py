from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

USER_ROLE = "USER"
GUEST_ROLE = "GUEST"
STATUS_ACTIVE = "ACTIVE"

NICKNAME_MAX_LENGTH = 100


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    nickname: str
    role: str = USER_ROLE
    status: str = STATUS_ACTIVE
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, email: str, nickname: str, *, role: str = USER_ROLE) -> "User":
        return cls(id=str(uuid.uuid4()), email=email, nickname=nickname, role=role)


@dataclass
class UserAuthProvider:
    id: int
    user_id: str
    provider: str
    provider_user_id: str
    email: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Guest:
    """Pseudo-identity keyed by a salted hash of the caller's address."""

    id: str
    ip_hash: str
    status: str = STATUS_ACTIVE
    last_seen_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, ip_hash: str, *, seen_at: Optional[datetime] = None) -> "Guest":
        now = seen_at or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            ip_hash=ip_hash,
            last_seen_at=now,
            created_at=now,
        )
