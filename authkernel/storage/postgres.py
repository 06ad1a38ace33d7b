from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authkernel.logging import get_logger
from authkernel.service.errors import UserNotFoundError
from authkernel.storage.documents import consume_failure
from authkernel.storage.errors import ConstraintViolation, StorageUnavailable
from authkernel.storage.models import (
    ResetToken,
    Session,
    User,
    VerificationCode,
    VerificationContext,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT,
        display_name TEXT,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_lower ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        refresh_secret_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        ip TEXT,
        user_agent TEXT,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        rotated_at TIMESTAMPTZ,
        rotation_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user ON auth_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS verification_code (
        id BIGSERIAL PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        code TEXT NOT NULL,
        context TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        used_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS verification_code_lookup ON verification_code (user_id, context, code)",
    """
    CREATE TABLE IF NOT EXISTS password_reset (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
)


class PostgresStore:
    """Postgres-backed user aggregate store.

    Sessions, verification codes and the pending reset live in their own
    tables keyed by ``user_id``. Every conditional write is a single
    ``UPDATE``/``DELETE ... RETURNING`` so the predicate and the mutation are
    applied atomically by the database.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def close(self) -> None:
        self.pool.close()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except psycopg.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable(detail={"backend": "postgres"}) from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # -- row mapping -----------------------------------------------------

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            session_id=str(row["id"]),
            refresh_secret_hash=row["refresh_secret_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            ip=row.get("ip"),
            user_agent=row.get("user_agent"),
            is_revoked=row.get("is_revoked", False),
            revoked_at=row.get("revoked_at"),
            rotated_at=row.get("rotated_at"),
            rotation_count=row.get("rotation_count", 0),
        )

    @staticmethod
    def _verification_from_row(row: dict) -> VerificationCode:
        return VerificationCode(
            code=row["code"],
            context=VerificationContext(row["context"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            used=row.get("used", False),
            used_at=row.get("used_at"),
        )

    def _load_user(self, conn: psycopg.Connection, row: dict) -> User:
        user_id = str(row["id"])
        sessions = conn.execute(
            "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at",
            (user_id,),
        ).fetchall()
        verifications = conn.execute(
            "SELECT * FROM verification_code WHERE user_id = %s ORDER BY id",
            (user_id,),
        ).fetchall()
        reset_row = conn.execute(
            "SELECT * FROM password_reset WHERE user_id = %s", (user_id,)
        ).fetchone()
        reset = None
        if reset_row:
            reset = ResetToken(
                token_hash=reset_row["token_hash"],
                created_at=reset_row["created_at"],
                expires_at=reset_row["expires_at"],
            )
        return User(
            id=user_id,
            email=row["email"],
            password_hash=row.get("password_hash"),
            display_name=row.get("display_name"),
            is_verified=row.get("is_verified", False),
            created_at=row["created_at"],
            sessions=[self._session_from_row(r) for r in sessions],
            verifications=[self._verification_from_row(r) for r in verifications],
            password_reset=reset,
        )

    @staticmethod
    def _user_exists(conn: psycopg.Connection, user_id: str) -> bool:
        row = conn.execute("SELECT 1 FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return row is not None

    # -- users -----------------------------------------------------------

    def create_user(self, user: User) -> User:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, display_name, is_verified, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.password_hash,
                        user.display_name,
                        user.is_verified,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
            if not row:
                return None
            return self._load_user(conn, row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
            if not row:
                return None
            return self._load_user(conn, row)

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s RETURNING id",
                (password_hash, user_id),
            ).fetchone()
        if not row:
            raise UserNotFoundError(detail={"user_id": user_id})

    def mark_verified(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET is_verified = TRUE WHERE id = %s AND NOT is_verified RETURNING id",
                (user_id,),
            ).fetchone()
            if row:
                return True
            if not self._user_exists(conn, user_id):
                raise UserNotFoundError(detail={"user_id": user_id})
        return False

    # -- sessions --------------------------------------------------------

    def create_session(self, user_id: str, session: Session) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, refresh_secret_hash, created_at, expires_at, ip, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.session_id,
                        user_id,
                        session.refresh_secret_hash,
                        session.created_at,
                        session.expires_at,
                        session.ip,
                        session.user_agent,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise UserNotFoundError(detail={"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "session already exists", {"session_id": session.session_id}
            )

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
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET refresh_secret_hash = %s,
                    rotated_at = %s,
                    rotation_count = rotation_count + 1,
                    expires_at = COALESCE(%s::timestamptz, expires_at)
                WHERE user_id = %s
                  AND id = %s
                  AND refresh_secret_hash = %s
                  AND NOT is_revoked
                  AND expires_at > %s
                RETURNING *
                """,
                (
                    new_secret_hash,
                    now,
                    new_expires_at,
                    user_id,
                    session_id,
                    expected_secret_hash,
                    now,
                ),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_session(self, user_id: str, session_id: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET is_revoked = TRUE, revoked_at = %s
                WHERE user_id = %s AND id = %s AND NOT is_revoked
                RETURNING id
                """,
                (now, user_id, session_id),
            ).fetchone()
        return row is not None

    def revoke_all_sessions(self, user_id: str, *, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session SET is_revoked = TRUE, revoked_at = %s
                WHERE user_id = %s AND NOT is_revoked
                """,
                (now, user_id),
            )
            return max(cur.rowcount, 0)

    def find_session(self, user_id: str, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s AND id = %s",
                (user_id, session_id),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(r) for r in rows]

    # -- verification codes ----------------------------------------------

    def _insert_verification(
        self, conn: psycopg.Connection, user_id: str, verification: VerificationCode
    ) -> None:
        conn.execute(
            """
            INSERT INTO verification_code (user_id, code, context, created_at, expires_at, used, used_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                user_id,
                verification.code,
                verification.context.value,
                verification.created_at,
                verification.expires_at,
                verification.used,
                verification.used_at,
            ),
        )

    def append_verification(self, user_id: str, verification: VerificationCode) -> None:
        try:
            with self._connect() as conn:
                self._insert_verification(conn, user_id, verification)
        except errors.ForeignKeyViolation:
            raise UserNotFoundError(detail={"user_id": user_id})

    def replace_verification(self, user_id: str, verification: VerificationCode) -> int:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "DELETE FROM verification_code WHERE user_id = %s AND context = %s AND NOT used",
                    (user_id, verification.context.value),
                )
                superseded = max(cur.rowcount, 0)
                self._insert_verification(conn, user_id, verification)
        except errors.ForeignKeyViolation:
            raise UserNotFoundError(detail={"user_id": user_id})
        return superseded

    def consume_verification(
        self,
        user_id: str,
        code: str,
        context: VerificationContext,
        *,
        now: datetime,
    ) -> VerificationCode:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE verification_code SET used = TRUE, used_at = %s
                WHERE id = (
                    SELECT id FROM verification_code
                    WHERE user_id = %s AND code = %s AND context = %s
                      AND NOT used AND expires_at > %s
                    ORDER BY id
                    LIMIT 1
                    FOR UPDATE
                )
                  AND NOT used
                RETURNING *
                """,
                (now, user_id, code, context.value, now),
            ).fetchone()
            if row:
                return self._verification_from_row(row)
            if not self._user_exists(conn, user_id):
                raise UserNotFoundError(detail={"user_id": user_id})
            rows = conn.execute(
                "SELECT * FROM verification_code WHERE user_id = %s AND code = %s AND context = %s",
                (user_id, code, context.value),
            ).fetchall()
        raise consume_failure([self._verification_from_row(r) for r in rows])

    def list_verifications(self, user_id: str) -> List[VerificationCode]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM verification_code WHERE user_id = %s ORDER BY id",
                (user_id,),
            ).fetchall()
        return [self._verification_from_row(r) for r in rows]

    # -- password reset --------------------------------------------------

    def set_password_reset(self, user_id: str, reset: ResetToken) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset (user_id, token_hash, created_at, expires_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET token_hash = EXCLUDED.token_hash,
                        created_at = EXCLUDED.created_at,
                        expires_at = EXCLUDED.expires_at
                    """,
                    (user_id, reset.token_hash, reset.created_at, reset.expires_at),
                )
        except errors.ForeignKeyViolation:
            raise UserNotFoundError(detail={"user_id": user_id})

    def claim_password_reset(self, token_hash: str, *, now: datetime) -> Optional[User]:
        with self._connect() as conn:
            claimed = conn.execute(
                "DELETE FROM password_reset WHERE token_hash = %s AND expires_at > %s RETURNING user_id",
                (token_hash, now),
            ).fetchone()
            if not claimed:
                return None
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (claimed["user_id"],)
            ).fetchone()
            if not row:
                return None
            return self._load_user(conn, row)

    def clear_password_reset(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM password_reset WHERE user_id = %s", (user_id,))
