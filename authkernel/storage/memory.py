from __future__ import annotations

import copy
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

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


class MemoryStore:
    """In-process user aggregate store with JSON snapshots under ``fs_root``.

    Every read-compare-write happens while holding ``_data_lock`` so rotate,
    consume and reset claims are atomic with respect to concurrent callers in
    the same process. Returned objects are copies; mutating them never
    changes stored state.
    """

    def __init__(self, fs_root: str = "/srv/authkernel", *, persist: bool = True) -> None:
        self.users: Dict[str, User] = {}
        # RLock so helpers can re-enter while a mutation holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {"users": [serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            logger.error("memory_store_persist_failed", path=str(path), error=str(exc))
            raise StorageUnavailable(detail={"backend": "memory"}) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: deserialize_user(u) for u in data.get("users", [])}
        logger.info("memory_store_loaded", users=len(self.users))
        return True

    def _require_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if user is None:
            raise UserNotFoundError(detail={"user_id": user_id})
        return user

    # -- users -----------------------------------------------------------

    def create_user(self, user: User) -> User:
        with self._data_lock:
            email = user.email.lower()
            if any(existing.email.lower() == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            self.users[user.id] = copy.deepcopy(user)
            self._persist_state()
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            email = email.lower()
            user = next(
                (u for u in self.users.values() if u.email.lower() == email), None
            )
            return copy.deepcopy(user) if user else None

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.password_hash = password_hash
            self._persist_state()

    def mark_verified(self, user_id: str) -> bool:
        with self._data_lock:
            user = self._require_user(user_id)
            if user.is_verified:
                return False
            user.is_verified = True
            self._persist_state()
            return True

    # -- sessions --------------------------------------------------------

    def create_session(self, user_id: str, session: Session) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            if user.find_session(session.session_id) is not None:
                raise ConstraintViolation(
                    "session already exists", {"session_id": session.session_id}
                )
            user.sessions.append(copy.deepcopy(session))
            self._persist_state()

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
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            rotated = apply_rotate(
                user,
                session_id,
                expected_secret_hash,
                new_secret_hash,
                new_expires_at,
                now,
            )
            if rotated is None:
                return None
            self._persist_state()
            return copy.deepcopy(rotated)

    def revoke_session(self, user_id: str, session_id: str, *, now: datetime) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or not apply_revoke(user, session_id, now):
                return False
            self._persist_state()
            return True

    def revoke_all_sessions(self, user_id: str, *, now: datetime) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return 0
            revoked = apply_revoke_all(user, now)
            if revoked:
                self._persist_state()
            return revoked

    def find_session(self, user_id: str, session_id: str) -> Optional[Session]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            sess = user.find_session(session_id)
            return copy.deepcopy(sess) if sess else None

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user.sessions) if user else []

    # -- verification codes ----------------------------------------------

    def append_verification(self, user_id: str, verification: VerificationCode) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.verifications.append(copy.deepcopy(verification))
            self._persist_state()

    def replace_verification(self, user_id: str, verification: VerificationCode) -> int:
        with self._data_lock:
            user = self._require_user(user_id)
            superseded = apply_replace_verification(user, copy.deepcopy(verification))
            self._persist_state()
            return superseded

    def consume_verification(
        self,
        user_id: str,
        code: str,
        context: VerificationContext,
        *,
        now: datetime,
    ) -> VerificationCode:
        with self._data_lock:
            user = self._require_user(user_id)
            consumed = apply_consume(user, code, context, now)
            self._persist_state()
            return copy.deepcopy(consumed)

    def list_verifications(self, user_id: str) -> List[VerificationCode]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user.verifications) if user else []

    # -- password reset --------------------------------------------------

    def set_password_reset(self, user_id: str, reset: ResetToken) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.password_reset = copy.deepcopy(reset)
            self._persist_state()

    def claim_password_reset(self, token_hash: str, *, now: datetime) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if apply_claim_reset(user, token_hash, now):
                    self._persist_state()
                    return copy.deepcopy(user)
            return None

    def clear_password_reset(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or user.password_reset is None:
                return
            user.password_reset = None
            self._persist_state()
