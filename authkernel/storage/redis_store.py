from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator, List, Optional

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from authkernel.logging import get_logger
from authkernel.service.errors import UserNotFoundError
from authkernel.storage.documents import (
    apply_claim_reset,
    apply_consume,
    apply_replace_verification,
    apply_revoke,
    apply_revoke_all,
    apply_rotate,
    deserialize_user,
    serialize_user,
)
from authkernel.storage.errors import ConstraintViolation, StorageUnavailable
from authkernel.storage.models import (
    ResetToken,
    Session,
    User,
    VerificationCode,
    VerificationContext,
)

logger = get_logger(__name__)

QueuedOp = Callable[[Any], Any]


class RedisStore:
    """User aggregates stored as one JSON document per Redis key.

    Writes run inside ``WATCH``/``MULTI``/``EXEC`` on the user key: the
    document is read, the conditional update applied in process, and the
    result committed only if nobody else wrote the key in between. A
    ``WatchError`` restarts the attempt from a fresh read.
    """

    def __init__(
        self,
        redis_url: str,
        *,
        key_prefix: str = "authkernel",
        max_retries: int = 8,
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.max_retries = max_retries
        self._client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        with self._guard():
            self._client.ping()

    def close(self) -> None:
        self._client.close()

    # -- keys ------------------------------------------------------------

    def _user_key(self, user_id: str) -> str:
        return f"{self.key_prefix}:user:{user_id}"

    def _email_key(self, email: str) -> str:
        return f"{self.key_prefix}:email:{email.lower()}"

    def _reset_key(self, token_hash: str) -> str:
        return f"{self.key_prefix}:reset:{token_hash}"

    @staticmethod
    def _ttl_ms(expires_at: datetime, now: datetime) -> int:
        return max(int((expires_at - now).total_seconds() * 1000), 1)

    @contextmanager
    def _guard(self) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error("redis_unavailable", error=str(exc))
            raise StorageUnavailable(detail={"backend": "redis"}) from exc

    def _read(self, user_id: str) -> Optional[User]:
        with self._guard():
            raw = self._client.get(self._user_key(user_id))
        return deserialize_user(json.loads(raw)) if raw else None

    def _transact(
        self,
        user_id: str,
        mutate: Callable[[User, List[QueuedOp]], Any],
        *,
        missing: Callable[[], Any] | None = None,
    ) -> Any:
        """Apply ``mutate`` to the stored aggregate under optimistic locking.

        ``mutate`` may queue extra commands for the same ``MULTI`` block.
        When the document is unchanged and nothing was queued the watch is
        released without a write. ``missing`` supplies the result for an
        absent user; by default ``UserNotFoundError`` is raised.
        """
        key = self._user_key(user_id)
        with self._guard(), self._client.pipeline() as pipe:
            for _ in range(self.max_retries):
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if not raw:
                        pipe.unwatch()
                        if missing is not None:
                            return missing()
                        raise UserNotFoundError(detail={"user_id": user_id})
                    user = deserialize_user(json.loads(raw))
                    ops: List[QueuedOp] = []
                    result = mutate(user, ops)
                    updated = json.dumps(serialize_user(user))
                    if updated == json.dumps(json.loads(raw)) and not ops:
                        pipe.unwatch()
                        return result
                    pipe.multi()
                    pipe.set(key, updated)
                    for op in ops:
                        op(pipe)
                    pipe.execute()
                    return result
                except WatchError:
                    logger.debug("redis_transaction_retry", user_id=user_id)
                    continue
        logger.error("redis_transaction_exhausted", user_id=user_id, attempts=self.max_retries)
        raise StorageUnavailable(
            "Concurrent updates prevented the write",
            detail={"user_id": user_id, "attempts": self.max_retries},
        )

    # -- users -----------------------------------------------------------

    def create_user(self, user: User) -> User:
        email_key = self._email_key(user.email)
        user_key = self._user_key(user.id)
        with self._guard(), self._client.pipeline() as pipe:
            for _ in range(self.max_retries):
                try:
                    pipe.watch(email_key, user_key)
                    if pipe.get(email_key):
                        pipe.unwatch()
                        raise ConstraintViolation("email already exists", {"field": "email"})
                    if pipe.get(user_key):
                        pipe.unwatch()
                        raise ConstraintViolation("user id already exists", {"field": "id"})
                    pipe.multi()
                    pipe.set(user_key, json.dumps(serialize_user(user)))
                    pipe.set(email_key, user.id)
                    pipe.execute()
                    return user
                except WatchError:
                    continue
        raise StorageUnavailable(detail={"email_key": email_key})

    def get_user(self, user_id: str) -> Optional[User]:
        return self._read(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._guard():
            user_id = self._client.get(self._email_key(email))
        return self._read(user_id) if user_id else None

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        def mutate(user: User, ops: List[QueuedOp]) -> None:
            user.password_hash = password_hash

        self._transact(user_id, mutate)

    def mark_verified(self, user_id: str) -> bool:
        def mutate(user: User, ops: List[QueuedOp]) -> bool:
            if user.is_verified:
                return False
            user.is_verified = True
            return True

        return self._transact(user_id, mutate)

    # -- sessions --------------------------------------------------------

    def create_session(self, user_id: str, session: Session) -> None:
        def mutate(user: User, ops: List[QueuedOp]) -> None:
            if user.find_session(session.session_id) is not None:
                raise ConstraintViolation(
                    "session already exists", {"session_id": session.session_id}
                )
            user.sessions.append(session)

        self._transact(user_id, mutate)

    def rotate_session(
        self,
        user_id: str,
        session_id: str,
        expected_secret_hash: str,
        new_secret_hash: str,
        new_expires_at: Optional[datetime] = None,
        *,
        now: datetime,
    ) -> Optional[Session]:
        def mutate(user: User, ops: List[QueuedOp]) -> Optional[Session]:
            return apply_rotate(
                user,
                session_id,
                expected_secret_hash,
                new_secret_hash,
                new_expires_at,
                now,
            )

        return self._transact(user_id, mutate, missing=lambda: None)

    def revoke_session(self, user_id: str, session_id: str, *, now: datetime) -> bool:
        return self._transact(
            user_id,
            lambda user, ops: apply_revoke(user, session_id, now),
            missing=lambda: False,
        )

    def revoke_all_sessions(self, user_id: str, *, now: datetime) -> int:
        return self._transact(
            user_id,
            lambda user, ops: apply_revoke_all(user, now),
            missing=lambda: 0,
        )

    def find_session(self, user_id: str, session_id: str) -> Optional[Session]:
        user = self._read(user_id)
        return user.find_session(session_id) if user else None

    def list_sessions(self, user_id: str) -> List[Session]:
        user = self._read(user_id)
        return user.sessions if user else []

    # -- verification codes ----------------------------------------------

    def append_verification(self, user_id: str, verification: VerificationCode) -> None:
        self._transact(
            user_id, lambda user, ops: user.verifications.append(verification)
        )

    def replace_verification(self, user_id: str, verification: VerificationCode) -> int:
        return self._transact(
            user_id, lambda user, ops: apply_replace_verification(user, verification)
        )

    def consume_verification(
        self,
        user_id: str,
        code: str,
        context: VerificationContext,
        *,
        now: datetime,
    ) -> VerificationCode:
        return self._transact(
            user_id, lambda user, ops: apply_consume(user, code, context, now)
        )

    def list_verifications(self, user_id: str) -> List[VerificationCode]:
        user = self._read(user_id)
        return user.verifications if user else []

    # -- password reset --------------------------------------------------

    def set_password_reset(self, user_id: str, reset: ResetToken) -> None:
        def mutate(user: User, ops: List[QueuedOp]) -> None:
            previous = user.password_reset
            if previous is not None:
                stale_key = self._reset_key(previous.token_hash)
                ops.append(lambda p: p.delete(stale_key))
            user.password_reset = reset
            index_key = self._reset_key(reset.token_hash)
            ttl = self._ttl_ms(reset.expires_at, reset.created_at)
            ops.append(lambda p: p.set(index_key, user.id, px=ttl))

        self._transact(user_id, mutate)

    def claim_password_reset(self, token_hash: str, *, now: datetime) -> Optional[User]:
        index_key = self._reset_key(token_hash)
        with self._guard():
            user_id = self._client.get(index_key)
        if not user_id:
            return None

        def mutate(user: User, ops: List[QueuedOp]) -> Optional[User]:
            if not apply_claim_reset(user, token_hash, now):
                return None
            ops.append(lambda p: p.delete(index_key))
            return user

        return self._transact(user_id, mutate, missing=lambda: None)

    def clear_password_reset(self, user_id: str) -> None:
        def mutate(user: User, ops: List[QueuedOp]) -> None:
            if user.password_reset is None:
                return
            stale_key = self._reset_key(user.password_reset.token_hash)
            ops.append(lambda p: p.delete(stale_key))
            user.password_reset = None

        self._transact(user_id, mutate, missing=lambda: None)
