"""User aggregate helpers shared by the document-oriented stores.

The memory and Redis backends keep each user as one document holding its
sessions, verification codes and pending reset. The ``apply_*`` functions
below perform the conditional updates on a deserialized aggregate; each
backend is responsible for running them atomically (under a lock, or inside
an optimistic transaction) and persisting the result.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

from authkernel.service.errors import (
    CodeAlreadyUsedError,
    CodeExpiredError,
    InvalidCodeError,
    VerificationError,
)
from authkernel.storage.models import (
    ResetToken,
    Session,
    User,
    VerificationCode,
    VerificationContext,
)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


def serialize_session(session: Session) -> dict:
    return {
        "session_id": session.session_id,
        "refresh_secret_hash": session.refresh_secret_hash,
        "created_at": serialize_datetime(session.created_at),
        "expires_at": serialize_datetime(session.expires_at),
        "ip": session.ip,
        "user_agent": session.user_agent,
        "is_revoked": session.is_revoked,
        "revoked_at": serialize_datetime(session.revoked_at),
        "rotated_at": serialize_datetime(session.rotated_at),
        "rotation_count": session.rotation_count,
    }


def deserialize_session(data: dict) -> Session:
    return Session(
        session_id=data["session_id"],
        refresh_secret_hash=data["refresh_secret_hash"],
        created_at=deserialize_datetime(data["created_at"]),
        expires_at=deserialize_datetime(data["expires_at"]),
        ip=data.get("ip"),
        user_agent=data.get("user_agent"),
        is_revoked=data.get("is_revoked", False),
        revoked_at=deserialize_datetime(data.get("revoked_at")),
        rotated_at=deserialize_datetime(data.get("rotated_at")),
        rotation_count=data.get("rotation_count", 0),
    )


def serialize_verification(verification: VerificationCode) -> dict:
    return {
        "code": verification.code,
        "context": verification.context.value,
        "created_at": serialize_datetime(verification.created_at),
        "expires_at": serialize_datetime(verification.expires_at),
        "used": verification.used,
        "used_at": serialize_datetime(verification.used_at),
    }


def deserialize_verification(data: dict) -> VerificationCode:
    return VerificationCode(
        code=data["code"],
        context=VerificationContext(data["context"]),
        created_at=deserialize_datetime(data["created_at"]),
        expires_at=deserialize_datetime(data["expires_at"]),
        used=data.get("used", False),
        used_at=deserialize_datetime(data.get("used_at")),
    )


def serialize_user(user: User) -> dict:
    reset = user.password_reset
    return {
        "id": user.id,
        "email": user.email,
        "password_hash": user.password_hash,
        "display_name": user.display_name,
        "is_verified": user.is_verified,
        "created_at": serialize_datetime(user.created_at),
        "sessions": [serialize_session(s) for s in user.sessions],
        "verifications": [serialize_verification(v) for v in user.verifications],
        "password_reset": (
            {
                "token_hash": reset.token_hash,
                "created_at": serialize_datetime(reset.created_at),
                "expires_at": serialize_datetime(reset.expires_at),
            }
            if reset
            else None
        ),
    }


def deserialize_user(data: dict) -> User:
    raw_reset = data.get("password_reset")
    reset = None
    if raw_reset:
        reset = ResetToken(
            token_hash=raw_reset["token_hash"],
            created_at=deserialize_datetime(raw_reset["created_at"]),
            expires_at=deserialize_datetime(raw_reset["expires_at"]),
        )
    return User(
        id=str(data["id"]),
        email=data["email"],
        password_hash=data.get("password_hash"),
        display_name=data.get("display_name"),
        is_verified=data.get("is_verified", False),
        created_at=deserialize_datetime(data["created_at"]),
        sessions=[deserialize_session(s) for s in data.get("sessions", [])],
        verifications=[
            deserialize_verification(v) for v in data.get("verifications", [])
        ],
        password_reset=reset,
    )


def apply_rotate(
    user: User,
    session_id: str,
    expected_secret_hash: str,
    new_secret_hash: str,
    new_expires_at: Optional[datetime],
    now: datetime,
) -> Optional[Session]:
    sess = user.find_session(session_id)
    if sess is None or not sess.is_active(now):
        return None
    if sess.refresh_secret_hash != expected_secret_hash:
        return None
    sess.refresh_secret_hash = new_secret_hash
    sess.rotated_at = now
    sess.rotation_count += 1
    if new_expires_at is not None:
        sess.expires_at = new_expires_at
    return sess


def apply_revoke(user: User, session_id: str, now: datetime) -> bool:
    sess = user.find_session(session_id)
    if sess is None or sess.is_revoked:
        return False
    sess.is_revoked = True
    sess.revoked_at = now
    return True


def apply_revoke_all(user: User, now: datetime) -> int:
    revoked = 0
    for sess in user.sessions:
        if not sess.is_revoked:
            sess.is_revoked = True
            sess.revoked_at = now
            revoked += 1
    return revoked


def apply_consume(
    user: User, code: str, context: VerificationContext, now: datetime
) -> VerificationCode:
    """Mark the matching code used or raise the most specific failure.

    Failure priority: unknown code, then an unused expired code, then a code
    that was already used.
    """
    candidates = [
        v for v in user.verifications if v.code == code and v.context == context
    ]
    for verification in candidates:
        if not verification.used and not verification.is_expired(now):
            verification.used = True
            verification.used_at = now
            return verification
    raise consume_failure(candidates)


def consume_failure(candidates: Sequence[VerificationCode]) -> VerificationError:
    """Classify why none of ``candidates`` (same code and context) was consumable."""
    if not candidates:
        return InvalidCodeError()
    if any(not v.used for v in candidates):
        return CodeExpiredError()
    return CodeAlreadyUsedError()


def apply_replace_verification(user: User, verification: VerificationCode) -> int:
    before = len(user.verifications)
    user.verifications = [
        v
        for v in user.verifications
        if v.used or v.context != verification.context
    ]
    superseded = before - len(user.verifications)
    user.verifications.append(verification)
    return superseded


def apply_claim_reset(user: User, token_hash: str, now: datetime) -> bool:
    reset = user.password_reset
    if reset is None or reset.token_hash != token_hash or now >= reset.expires_at:
        return False
    user.password_reset = None
    return True
