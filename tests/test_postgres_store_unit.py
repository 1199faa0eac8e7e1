from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from xmatches.logging import get_logger
from xmatches.storage.errors import ConstraintViolation
from xmatches.storage.postgres import PostgresStore

CREATED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _user_row(user_id=1, email="a@example.com", is_admin=False):
    return {
        "id": user_id,
        "email": email,
        "password_hash": "$argon2id$stub",
        "is_admin": is_admin,
        "created_at": CREATED,
    }


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Records statements and replays queued results or exceptions in order."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.executed = []
        self.transactions = 0

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        response = self.responses.pop(0) if self.responses else FakeResult()
        if isinstance(response, Exception):
            raise response
        return response

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.closed = False

    def connection(self):
        return self.conn

    def close(self):
        self.closed = True


def _store(conn) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://stub"
    store.pool = FakePool(conn)
    store.logger = get_logger("test")
    return store


def test_create_user_sets_first_admin_inside_locked_transaction():
    conn = FakeConnection([FakeResult(), FakeResult([_user_row(is_admin=True)])])
    store = _store(conn)

    user = store.create_user("a@example.com", "$argon2id$stub")

    assert user.id == 1 and user.is_admin is True
    assert conn.transactions == 1
    lock_sql, _ = conn.executed[0]
    insert_sql, params = conn.executed[1]
    assert lock_sql.startswith("LOCK TABLE users")
    assert "NOT EXISTS (SELECT 1 FROM users)" in insert_sql
    assert params == ("a@example.com", "$argon2id$stub")


def test_create_user_unique_violation_maps_to_constraint_violation():
    conn = FakeConnection([FakeResult(), errors.UniqueViolation("duplicate key")])
    store = _store(conn)

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("a@example.com", "h")
    assert excinfo.value.detail == {"field": "email"}


def test_delete_user_removes_sessions_then_user_in_one_transaction():
    conn = FakeConnection([FakeResult(rowcount=2), FakeResult(rowcount=1)])
    store = _store(conn)

    assert store.delete_user(7) is True
    assert conn.transactions == 1
    assert conn.executed[0] == ("DELETE FROM sessions WHERE user_id = %s", (7,))
    assert conn.executed[1] == ("DELETE FROM users WHERE id = %s", (7,))


def test_count_other_admins_excludes_given_id():
    conn = FakeConnection([FakeResult([{"n": 2}])])
    store = _store(conn)

    assert store.count_other_admins(3) == 2
    sql, params = conn.executed[0]
    assert "is_admin AND id <> %s" in sql
    assert params == (3,)


def test_clear_admin_locks_admin_rows_before_update():
    conn = FakeConnection(
        [FakeResult([{"id": 1, "is_admin": True}, {"id": 2, "is_admin": True}]), FakeResult(rowcount=1)]
    )
    store = _store(conn)

    assert store.clear_admin_unless_last(1) is True
    assert conn.transactions == 1
    select_sql, params = conn.executed[0]
    assert select_sql.endswith("WHERE is_admin OR id = %s FOR UPDATE")
    assert params == (1,)
    assert conn.executed[1] == ("UPDATE users SET is_admin = FALSE WHERE id = %s", (1,))


def test_clear_admin_refuses_last_admin():
    conn = FakeConnection([FakeResult([{"id": 1, "is_admin": True}])])
    store = _store(conn)

    assert store.clear_admin_unless_last(1) is False
    assert len(conn.executed) == 1


def test_clear_admin_unknown_user():
    conn = FakeConnection([FakeResult([{"id": 1, "is_admin": True}])])
    store = _store(conn)

    assert store.clear_admin_unless_last(9) is None
    assert len(conn.executed) == 1


def test_list_users_ordered_by_id():
    conn = FakeConnection(
        [FakeResult([_user_row(1, "a@example.com", True), _user_row(2, "b@example.com")])]
    )
    store = _store(conn)

    users = store.list_users()

    assert [u.id for u in users] == [1, 2]
    assert conn.executed[0][0].endswith("ORDER BY id")


def test_create_session_persists_expiry():
    conn = FakeConnection()
    store = _store(conn)

    sess = store.create_session(4, timedelta(hours=2))

    sql, params = conn.executed[0]
    assert sql.startswith("INSERT INTO sessions")
    assert params == (sess.token, 4, sess.expires_at, sess.created_at)
    assert sess.expires_at - sess.created_at == timedelta(hours=2)


def test_create_session_missing_user_maps_to_constraint_violation():
    conn = FakeConnection([errors.ForeignKeyViolation("no user")])
    store = _store(conn)

    with pytest.raises(ConstraintViolation):
        store.create_session(4, timedelta(hours=2))


def test_resolve_session_sweeps_then_filters_live_sessions():
    conn = FakeConnection([FakeResult(rowcount=3), FakeResult([_user_row(5)])])
    store = _store(conn)

    user = store.resolve_session("tok")

    assert user.id == 5
    sweep_sql, _ = conn.executed[0]
    lookup_sql, params = conn.executed[1]
    assert sweep_sql.startswith("DELETE FROM sessions WHERE expires_at <=")
    assert "s.token = %s AND s.expires_at > %s" in lookup_sql
    assert params[0] == "tok"


def test_resolve_session_survives_sweep_failure():
    conn = FakeConnection(
        [errors.OperationalError("lock timeout"), FakeResult([_user_row(5)])]
    )
    store = _store(conn)

    assert store.resolve_session("tok").id == 5


def test_resolve_session_unknown_token_returns_none():
    conn = FakeConnection([FakeResult(), FakeResult()])
    store = _store(conn)

    assert store.resolve_session("missing") is None


def test_close_closes_pool():
    conn = FakeConnection()
    store = _store(conn)

    store.close()

    assert store.pool.closed is True
