from __future__ import annotations

from typing import Optional, Protocol

from authkernel.logging import get_logger
from authkernel.service.errors import EmailNotVerifiedError, UserNotFoundError
from authkernel.storage.models import User

logger = get_logger(__name__)


class TrustStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def mark_verified(self, user_id: str) -> bool: ...


class AccountTrustGate:
    """One-way account verification flag and the checks that depend on it."""

    def __init__(self, store: TrustStore, *, require_verified_login: bool = False) -> None:
        self.store = store
        self.require_verified_login = require_verified_login

    def _user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(detail={"user_id": user_id})
        return user

    def is_verified(self, user_id: str) -> bool:
        return self._user(user_id).is_verified

    def mark_verified(self, user_id: str) -> bool:
        changed = self.store.mark_verified(user_id)
        if changed:
            logger.info("account_verified", user_id=user_id)
        return changed

    def check_login_allowed(self, user_id: str) -> bool:
        """Return whether verification is still pending for this login.

        Raises EmailNotVerifiedError instead when unverified logins are refused.
        """
        verified = self.is_verified(user_id)
        if not verified and self.require_verified_login:
            logger.info("login_refused_unverified", user_id=user_id)
            raise EmailNotVerifiedError(detail={"user_id": user_id})
        return not verified

    def require_verified(self, user_id: str) -> None:
        if not self.is_verified(user_id):
            raise EmailNotVerifiedError(detail={"user_id": user_id})
