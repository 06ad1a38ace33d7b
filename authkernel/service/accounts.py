from __future__ import annotations

import hashlib
from datetime import timedelta
from typing import Optional, Protocol, Tuple
from urllib.parse import urlencode

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError
from argon2.exceptions import VerificationError as HashVerificationError

from authkernel.logging import get_logger
from authkernel.service.clock import Clock, SystemClock
from authkernel.service.email import ResetDispatcher
from authkernel.service.errors import (
    AuthenticationFailedError,
    ConflictError,
    DispatchFailedError,
    InvalidCodeError,
    UserNotFoundError,
    ValidationError,
)
from authkernel.service.sessions import LoginResult, SessionManager
from authkernel.service.tokens import TokenCodec
from authkernel.service.verification import VerificationManager
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import ResetToken, User, VerificationContext

logger = get_logger(__name__)


class AccountStore(Protocol):
    def create_user(self, user: User) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def set_password_reset(self, user_id: str, reset: ResetToken) -> None: ...

    def claim_password_reset(self, token_hash: str, *, now) -> Optional[User]: ...

    def clear_password_reset(self, user_id: str) -> None: ...


def _lookup_digest(email: str) -> str:
    return hashlib.sha256(email.lower().encode()).hexdigest()[:16]


class AccountService:
    """Registration, password checks and the forgot/reset password flow.

    Password changes of any kind clear the pending reset and revoke every
    session of the account.
    """

    def __init__(
        self,
        store: AccountStore,
        sessions: SessionManager,
        verification: VerificationManager,
        dispatcher: ResetDispatcher,
        *,
        password_min_length: int = 8,
        reset_ttl_minutes: int = 60,
        reset_token_bytes: int = 32,
        reset_base_url: str = "http://localhost:8000/reset-password",
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.verification = verification
        self.dispatcher = dispatcher
        self.password_min_length = password_min_length
        self.reset_ttl_minutes = reset_ttl_minutes
        self.reset_token_bytes = reset_token_bytes
        self.reset_base_url = reset_base_url
        self.clock = clock or SystemClock()
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def _hash_password(self, password: str) -> str:
        if not password or len(password) < self.password_min_length:
            raise ValidationError(
                f"Password must be at least {self.password_min_length} characters"
            )
        return self._pwd_hasher.hash(password)

    def _password_matches(self, user: User, password: str) -> bool:
        if not user.password_hash or not password:
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, HashVerificationError):
            return False

    async def register(
        self, email: str, password: str, *, display_name: Optional[str] = None
    ) -> User:
        """Create an unverified account and send its confirmation code.

        No session is opened here; use register_and_login for that. A failed
        dispatch does not undo the account, the stored code can be resent.
        """
        normalized = (email or "").strip().lower()
        if "@" not in normalized:
            raise ValidationError("A valid email address is required")
        user = User.new(
            normalized,
            password_hash=self._hash_password(password),
            display_name=display_name,
            now=self.clock.now(),
        )
        try:
            self.store.create_user(user)
        except ConstraintViolation as exc:
            raise ConflictError("Email is already registered", detail=exc.detail) from exc
        logger.info("user_registered", user_id=user.id)
        try:
            await self.verification.issue(user.id, VerificationContext.EMAIL_CONFIRMATION)
        except DispatchFailedError as exc:
            logger.warning(
                "verification_dispatch_failed",
                user_id=user.id,
                reason=exc.detail.get("reason"),
            )
        return user

    async def register_and_login(
        self,
        email: str,
        password: str,
        *,
        display_name: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[User, LoginResult]:
        user = await self.register(email, password, display_name=display_name)
        login = await self.sessions.login(user.id, ip=ip, user_agent=user_agent)
        return user, login

    async def authenticate(self, email: str, password: str) -> User:
        user = self.store.get_user_by_email((email or "").strip())
        if user is None or not self._password_matches(user, password):
            logger.info("authentication_failed", lookup_digest=_lookup_digest(email or ""))
            raise AuthenticationFailedError()
        return user

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> int:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(detail={"user_id": user_id})
        if not self._password_matches(user, current_password):
            raise AuthenticationFailedError()
        self.store.set_password_hash(user_id, self._hash_password(new_password))
        self.store.clear_password_reset(user_id)
        revoked = await self.sessions.revoke_all_sessions(user_id)
        logger.info("password_changed", user_id=user_id, revoked_sessions=revoked)
        return revoked

    def _reset_url(self, token: str) -> str:
        separator = "&" if "?" in self.reset_base_url else "?"
        return f"{self.reset_base_url}{separator}{urlencode({'token': token})}"

    async def request_password_reset(self, email: str) -> str:
        """Store a fresh reset token for ``email`` and dispatch the link.

        Any earlier pending token for the account stops working.
        """
        user = self.store.get_user_by_email((email or "").strip())
        if user is None:
            logger.info("password_reset_unknown_email", lookup_digest=_lookup_digest(email or ""))
            raise UserNotFoundError()
        token = TokenCodec.generate_hex_token(self.reset_token_bytes)
        now = self.clock.now()
        self.store.set_password_reset(
            user.id,
            ResetToken(
                token_hash=TokenCodec.hash_secret(token),
                created_at=now,
                expires_at=now + timedelta(minutes=self.reset_ttl_minutes),
            ),
        )
        logger.info("password_reset_requested", user_id=user.id)
        self.dispatcher.dispatch_password_reset(
            user.email, self._reset_url(token), self.reset_ttl_minutes
        )
        return token

    async def reset_password(self, token: Optional[str], new_password: str) -> User:
        if not token:
            raise InvalidCodeError("Password reset token is invalid or expired")
        new_hash = self._hash_password(new_password)
        user = self.store.claim_password_reset(
            TokenCodec.hash_secret(token), now=self.clock.now()
        )
        if user is None:
            logger.info("password_reset_rejected")
            raise InvalidCodeError("Password reset token is invalid or expired")
        self.store.set_password_hash(user.id, new_hash)
        revoked = await self.sessions.revoke_all_sessions(user.id)
        logger.info("password_reset_completed", user_id=user.id, revoked_sessions=revoked)
        return user
