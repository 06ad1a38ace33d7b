from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol

from authkernel.logging import get_logger
from authkernel.service.clock import Clock, SystemClock
from authkernel.service.email import VerificationDispatcher
from authkernel.service.errors import (
    CodeMissingError,
    DispatchFailedError,
    UserNotFoundError,
    VerificationError,
)
from authkernel.service.tokens import TokenCodec
from authkernel.service.trust import AccountTrustGate
from authkernel.storage.models import User, VerificationCode, VerificationContext

logger = get_logger(__name__)


class VerificationStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def append_verification(self, user_id: str, verification: VerificationCode) -> None: ...

    def replace_verification(self, user_id: str, verification: VerificationCode) -> int: ...

    def consume_verification(
        self,
        user_id: str,
        code: str,
        context: VerificationContext,
        *,
        now: datetime,
    ) -> VerificationCode: ...


class VerificationManager:
    """Issues, dispatches and consumes single-use numeric codes."""

    def __init__(
        self,
        store: VerificationStore,
        trust: AccountTrustGate,
        dispatcher: VerificationDispatcher,
        *,
        code_length: int = 6,
        ttl_minutes: int = 10,
        single_active_code: bool = True,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.trust = trust
        self.dispatcher = dispatcher
        self.code_length = code_length
        self.ttl_minutes = ttl_minutes
        self.single_active_code = single_active_code
        self.clock = clock or SystemClock()

    async def issue(
        self, user_id: str, context: VerificationContext = VerificationContext.EMAIL_CONFIRMATION
    ) -> VerificationCode:
        """Create a code, persist it, then hand it to the dispatcher.

        The code is stored before dispatch, so a delivery failure leaves a
        valid code behind; the caller sees DispatchFailedError and may resend.
        """
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(detail={"user_id": user_id})
        now = self.clock.now()
        verification = VerificationCode(
            code=TokenCodec.generate_numeric_code(self.code_length),
            context=context,
            created_at=now,
            expires_at=now + timedelta(minutes=self.ttl_minutes),
        )
        if self.single_active_code:
            superseded = self.store.replace_verification(user_id, verification)
        else:
            self.store.append_verification(user_id, verification)
            superseded = 0
        logger.info(
            "verification_issued",
            user_id=user_id,
            context=context.value,
            superseded=superseded,
        )
        try:
            self.dispatcher.dispatch_verification_code(
                user.email, verification.code, self.ttl_minutes
            )
        except DispatchFailedError:
            logger.error("verification_dispatch_failed", user_id=user_id)
            raise
        return verification

    async def consume(
        self,
        user_id: str,
        code: Optional[str],
        context: VerificationContext = VerificationContext.EMAIL_CONFIRMATION,
    ) -> None:
        if not code:
            raise CodeMissingError()
        try:
            self.store.consume_verification(
                user_id, code.strip(), context, now=self.clock.now()
            )
        except (UserNotFoundError, VerificationError) as exc:
            logger.info(
                "verification_rejected",
                user_id=user_id,
                context=context.value,
                error_code=exc.error_code,
            )
            raise
        logger.info("verification_consumed", user_id=user_id, context=context.value)
        if context is VerificationContext.EMAIL_CONFIRMATION:
            self.trust.mark_verified(user_id)

    async def resend(
        self,
        user_id: str,
        context: VerificationContext = VerificationContext.EMAIL_CONFIRMATION,
    ) -> Optional[VerificationCode]:
        if context is VerificationContext.EMAIL_CONFIRMATION and self.trust.is_verified(
            user_id
        ):
            logger.info("verification_resend_skipped", user_id=user_id)
            return None
        return await self.issue(user_id, context)
