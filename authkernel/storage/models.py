from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationContext(str, Enum):
    """Purpose a verification code was issued for."""

    EMAIL_CONFIRMATION = "email_confirmation"


@dataclass
class Session:
    session_id: str
    refresh_secret_hash: str
    created_at: datetime
    expires_at: datetime
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    rotated_at: Optional[datetime] = None
    rotation_count: int = 0

    @classmethod
    def new(
        cls,
        refresh_secret_hash: str,
        *,
        now: datetime,
        ttl_minutes: int,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        return cls(
            session_id=str(uuid.uuid4()),
            refresh_secret_hash=refresh_secret_hash,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            ip=ip,
            user_agent=user_agent,
        )

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked and now < self.expires_at


@dataclass
class VerificationCode:
    code: str
    context: VerificationContext
    created_at: datetime
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class ResetToken:
    """Single pending password reset; only the hash of the emailed token is kept."""

    token_hash: str
    created_at: datetime
    expires_at: datetime


@dataclass
class User:
    id: str
    email: str
    password_hash: Optional[str] = None
    display_name: Optional[str] = None
    is_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    sessions: List[Session] = field(default_factory=list)
    verifications: List[VerificationCode] = field(default_factory=list)
    password_reset: Optional[ResetToken] = None

    @classmethod
    def new(
        cls,
        email: str,
        *,
        password_hash: str | None = None,
        display_name: str | None = None,
        now: datetime | None = None,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            password_hash=password_hash,
            display_name=display_name,
            created_at=now or utcnow(),
        )

    def find_session(self, session_id: str) -> Optional[Session]:
        for sess in self.sessions:
            if sess.session_id == session_id:
                return sess
        return None
