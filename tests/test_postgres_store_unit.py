from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import psycopg
import pytest
from psycopg import errors

from authkernel.logging import get_logger
from authkernel.service.errors import (
    CodeAlreadyUsedError,
    CodeExpiredError,
    InvalidCodeError,
    UserNotFoundError,
)
from authkernel.storage.errors import ConstraintViolation, StorageUnavailable
from authkernel.storage.models import Session, User, VerificationContext
from authkernel.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
CONFIRM = VerificationContext.EMAIL_CONFIRMATION


class FakeCursor:
    def __init__(self, rows=None, rowcount=None):
        self.rows = rows or []
        self.rowcount = len(self.rows) if rowcount is None else rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, responses):
        self.responses = list(responses)
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        response = self.responses.pop(0) if self.responses else FakeCursor()
        if isinstance(response, Exception):
            raise response
        return response


class FakePool:
    def __init__(self, responses=(), fail=False):
        self.conn = FakeConnection(responses)
        self.fail = fail

    @contextmanager
    def connection(self):
        if self.fail:
            raise psycopg.OperationalError("could not connect to server")
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://fake"
    store.logger = get_logger("test")
    return store


def _session_row(**overrides):
    row = {
        "id": "session-1",
        "refresh_secret_hash": "hash-b",
        "created_at": NOW,
        "expires_at": NOW + timedelta(hours=1),
        "ip": None,
        "user_agent": None,
        "is_revoked": False,
        "revoked_at": None,
        "rotated_at": NOW,
        "rotation_count": 1,
    }
    row.update(overrides)
    return row


def _code_row(**overrides):
    row = {
        "code": "123456",
        "context": "email_confirmation",
        "created_at": NOW,
        "expires_at": NOW + timedelta(minutes=10),
        "used": False,
        "used_at": None,
    }
    row.update(overrides)
    return row


def test_rotate_is_single_conditional_update():
    pool = FakePool([FakeCursor([_session_row()])])
    store = _store(pool)

    rotated = store.rotate_session("user-1", "session-1", "hash-a", "hash-b", now=NOW)

    assert rotated.session_id == "session-1"
    assert rotated.refresh_secret_hash == "hash-b"
    assert len(pool.conn.executed) == 1
    sql, params = pool.conn.executed[0]
    assert sql.startswith("UPDATE auth_session")
    assert "refresh_secret_hash = %s AND NOT is_revoked AND expires_at > %s" in sql
    assert params == ("hash-b", NOW, None, "user-1", "session-1", "hash-a", NOW)


def test_rotate_without_match_returns_none():
    store = _store(FakePool([FakeCursor([])]))

    assert store.rotate_session("user-1", "session-1", "stale", "new", now=NOW) is None


def test_revoke_all_reports_rowcount():
    store = _store(FakePool([FakeCursor(rowcount=3)]))

    assert store.revoke_all_sessions("user-1", now=NOW) == 3


def test_revoke_session_idempotent():
    store = _store(FakePool([FakeCursor([{"id": "session-1"}]), FakeCursor([])]))

    assert store.revoke_session("user-1", "session-1", now=NOW) is True
    assert store.revoke_session("user-1", "session-1", now=NOW) is False


def test_consume_success():
    store = _store(FakePool([FakeCursor([_code_row(used=True, used_at=NOW)])]))

    consumed = store.consume_verification("user-1", "123456", CONFIRM, now=NOW)

    assert consumed.used is True
    assert consumed.context is CONFIRM


@pytest.mark.parametrize(
    "rows, expected",
    [
        ([], InvalidCodeError),
        ([_code_row(expires_at=NOW)], CodeExpiredError),
        ([_code_row(used=True, used_at=NOW)], CodeAlreadyUsedError),
    ],
)
def test_consume_failure_classification(rows, expected):
    pool = FakePool([FakeCursor([]), FakeCursor([{"?column?": 1}]), FakeCursor(rows)])
    store = _store(pool)

    with pytest.raises(expected):
        store.consume_verification("user-1", "123456", CONFIRM, now=NOW)
    assert "NOT used AND expires_at > %s" in pool.conn.executed[0][0]


def test_consume_unknown_user():
    store = _store(FakePool([FakeCursor([]), FakeCursor([])]))

    with pytest.raises(UserNotFoundError):
        store.consume_verification("missing", "123456", CONFIRM, now=NOW)


def test_duplicate_email_maps_to_constraint_violation():
    store = _store(FakePool([errors.UniqueViolation("duplicate key")]))

    with pytest.raises(ConstraintViolation):
        store.create_user(User.new("dup@example.com", now=NOW))


def test_session_for_missing_user():
    store = _store(FakePool([errors.ForeignKeyViolation("fk")]))

    with pytest.raises(UserNotFoundError):
        store.create_session("missing", Session.new("hash", now=NOW, ttl_minutes=60))


def test_mark_verified_is_one_way():
    store = _store(
        FakePool([FakeCursor([{"id": "user-1"}]), FakeCursor([]), FakeCursor([{"?column?": 1}])])
    )

    assert store.mark_verified("user-1") is True
    assert store.mark_verified("user-1") is False


def test_claim_reset_deletes_slot():
    user_row = {
        "id": "user-1",
        "email": "pg@example.com",
        "password_hash": None,
        "display_name": None,
        "is_verified": True,
        "created_at": NOW,
    }
    pool = FakePool(
        [
            FakeCursor([{"user_id": "user-1"}]),
            FakeCursor([user_row]),
            FakeCursor([]),
            FakeCursor([]),
            FakeCursor([]),
        ]
    )
    store = _store(pool)

    claimed = store.claim_password_reset("token-hash", now=NOW)

    assert claimed.id == "user-1"
    assert claimed.password_reset is None
    assert pool.conn.executed[0][0].startswith("DELETE FROM password_reset")


def test_unreachable_database():
    store = _store(FakePool(fail=True))

    with pytest.raises(StorageUnavailable):
        store.find_session("user-1", "session-1")
