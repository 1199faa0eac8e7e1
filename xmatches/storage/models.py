from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

# 32 random bytes, hex encoded
SESSION_TOKEN_BYTES = 32


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_token() -> str:
    return secrets.token_hex(SESSION_TOKEN_BYTES)


@dataclass
class User:
    id: int
    email: str
    password_hash: str
    is_admin: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    token: str
    user_id: int
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: int, ttl: timedelta) -> "Session":
        now = utcnow()
        return cls(
            token=new_session_token(),
            user_id=user_id,
            expires_at=now + ttl,
            created_at=now,
        )

    def is_live(self, now: datetime | None = None) -> bool:
        return self.expires_at > (now or utcnow())
