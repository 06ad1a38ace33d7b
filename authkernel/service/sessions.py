from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

from authkernel.logging import get_logger
from authkernel.service.clock import Clock, SystemClock
from authkernel.service.errors import (
    InvalidRefreshTokenError,
    RefreshTokenError,
    RefreshTokenExpiredError,
    RefreshTokenReusedError,
)
from authkernel.service.tokens import AccessClaims, RefreshClaims, TokenCodec
from authkernel.service.trust import AccountTrustGate
from authkernel.storage.models import Session

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(self, user_id: str, session: Session) -> None: ...

    def rotate_session(
        self,
        user_id: str,
        session_id: str,
        expected_secret_hash: str,
        new_secret_hash: str,
        new_expires_at: Optional[datetime] = None,
        *,
        now: datetime,
    ) -> Optional[Session]: ...

    def revoke_session(self, user_id: str, session_id: str, *, now: datetime) -> bool: ...

    def revoke_all_sessions(self, user_id: str, *, now: datetime) -> int: ...

    def find_session(self, user_id: str, session_id: str) -> Optional[Session]: ...

    def list_sessions(self, user_id: str) -> List[Session]: ...


@dataclass
class LoginResult:
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    session: Session
    pending_verification: bool = False


@dataclass
class RefreshResult:
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    session: Session


class SessionManager:
    """Login, refresh rotation and revocation of per-user sessions.

    A session moves Active -> Active on every successful refresh (new secret,
    same id) and Active -> Revoked on logout, revoke-all or detected reuse.
    Revocation is terminal. Expiry is passive: a session whose ``expires_at``
    has been reached simply stops matching.
    """

    def __init__(
        self,
        store: SessionStore,
        codec: TokenCodec,
        trust: AccountTrustGate,
        *,
        session_ttl_minutes: int = 7 * 24 * 60,
        refresh_secret_bytes: int = 32,
        reuse_revokes_all: bool = False,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.trust = trust
        self.session_ttl_minutes = session_ttl_minutes
        self.refresh_secret_bytes = refresh_secret_bytes
        self.reuse_revokes_all = reuse_revokes_all
        self.clock = clock or codec.clock or SystemClock()

    async def login(
        self,
        user_id: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        pending = self.trust.check_login_allowed(user_id)
        secret = self.codec.generate_opaque_secret(self.refresh_secret_bytes)
        session = Session.new(
            self.codec.hash_secret(secret),
            now=self.clock.now(),
            ttl_minutes=self.session_ttl_minutes,
            ip=ip,
            user_agent=user_agent,
        )
        self.store.create_session(user_id, session)
        access_token, access_expires_at = self.codec.issue_access_token(
            user_id, session.session_id
        )
        refresh_token = self.codec.issue_refresh_token(
            user_id, session.session_id, secret, session.expires_at
        )
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=session.session_id,
            pending_verification=pending,
        )
        return LoginResult(
            access_token=access_token,
            access_expires_at=access_expires_at,
            refresh_token=refresh_token,
            session=session,
            pending_verification=pending,
        )

    async def refresh(self, refresh_token: Optional[str]) -> RefreshResult:
        try:
            claims = self.codec.decode_refresh_token(refresh_token)
        except RefreshTokenError as exc:
            logger.info("refresh_rejected", error_code=exc.error_code, **exc.detail)
            raise
        now = self.clock.now()
        presented_hash = self.codec.hash_secret(claims.secret)
        new_secret = self.codec.generate_opaque_secret(self.refresh_secret_bytes)
        rotated = self.store.rotate_session(
            claims.user_id,
            claims.session_id,
            presented_hash,
            self.codec.hash_secret(new_secret),
            None,
            now=now,
        )
        if rotated is None:
            self._reject_refresh(claims, presented_hash, now)
        access_token, access_expires_at = self.codec.issue_access_token(
            claims.user_id, rotated.session_id
        )
        new_refresh_token = self.codec.issue_refresh_token(
            claims.user_id, rotated.session_id, new_secret, rotated.expires_at
        )
        logger.info(
            "session_rotated",
            user_id=claims.user_id,
            session_id=rotated.session_id,
            rotation_count=rotated.rotation_count,
        )
        return RefreshResult(
            access_token=access_token,
            access_expires_at=access_expires_at,
            refresh_token=new_refresh_token,
            session=rotated,
        )

    def _reject_refresh(
        self, claims: RefreshClaims, presented_hash: str, now: datetime
    ) -> None:
        """Classify a failed rotation and raise; revokes on detected reuse."""
        session = self.store.find_session(claims.user_id, claims.session_id)
        context = {"user_id": claims.user_id, "session_id": claims.session_id}
        if session is None or session.is_revoked:
            logger.info("refresh_rejected", reason="inactive_session", **context)
            raise InvalidRefreshTokenError(detail=context)
        if now >= session.expires_at:
            logger.info("refresh_rejected", reason="session_expired", **context)
            raise RefreshTokenExpiredError(detail=context)
        if self.codec.secrets_match(session.refresh_secret_hash, presented_hash):
            # Session changed between the write and this read; fail closed
            logger.warning("refresh_rejected", reason="concurrent_change", **context)
            raise InvalidRefreshTokenError(detail=context)
        if self.reuse_revokes_all:
            revoked = self.store.revoke_all_sessions(claims.user_id, now=now)
        else:
            revoked = int(
                self.store.revoke_session(claims.user_id, claims.session_id, now=now)
            )
        logger.warning(
            "refresh_reuse_detected",
            revoked_sessions=revoked,
            revoke_all=self.reuse_revokes_all,
            **context,
        )
        raise RefreshTokenReusedError(detail={**context, "revoked_sessions": revoked})

    async def logout(self, user_id: str, session_id: str) -> None:
        revoked = self.store.revoke_session(user_id, session_id, now=self.clock.now())
        logger.info("session_logout", user_id=user_id, session_id=session_id, revoked=revoked)

    async def logout_with_refresh_token(self, refresh_token: Optional[str]) -> None:
        """Revoke the session named by a refresh token; invalid tokens are ignored."""
        try:
            claims = self.codec.decode_refresh_token(refresh_token)
        except RefreshTokenError as exc:
            logger.info("logout_token_ignored", error_code=exc.error_code)
            return
        await self.logout(claims.user_id, claims.session_id)

    async def revoke_all_sessions(self, user_id: str) -> int:
        revoked = self.store.revoke_all_sessions(user_id, now=self.clock.now())
        logger.info("sessions_revoked", user_id=user_id, revoked_sessions=revoked)
        return revoked

    async def authenticate(self, access_token: Optional[str]) -> AccessClaims:
        return self.codec.verify_access_token(access_token)

    def describe_session(self, user_id: str, session_id: str) -> Optional[Session]:
        return self.store.find_session(user_id, session_id)

    def list_sessions(self, user_id: str) -> List[Session]:
        return self.store.list_sessions(user_id)
