from __future__ import annotations

from datetime import timedelta
from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from xmatches.logging import get_logger
from xmatches.storage.errors import ConstraintViolation
from xmatches.storage.models import Session, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id BIGSERIAL PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        token TEXT PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES users (id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS sessions_user_id_idx ON sessions (user_id)",
    "CREATE INDEX IF NOT EXISTS sessions_expires_at_idx ON sessions (expires_at)",
)

_USER_COLUMNS = "id, email, password_hash, is_admin, created_at"


class PostgresStore:
    """Postgres-backed credential and session store.

    Nothing is cached in process; every call is a fresh query so logout and
    expiry take effect on the next request.
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

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``users`` and ``sessions`` tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=int(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            is_admin=bool(row.get("is_admin", False)),
            created_at=row["created_at"],
        )

    # users
    def create_user(self, email: str, password_hash: str) -> User:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    # Self-conflicting lock: one registration at a time sees the count
                    conn.execute("LOCK TABLE users IN SHARE ROW EXCLUSIVE MODE")
                    row = conn.execute(
                        f"""
                        INSERT INTO users (email, password_hash, is_admin)
                        VALUES (%s, %s, NOT EXISTS (SELECT 1 FROM users))
                        RETURNING {_USER_COLUMNS}
                        """,
                        (email, password_hash),
                    ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def list_users(self) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users ORDER BY id"
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def set_password_hash(self, user_id: int, password_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE users SET password_hash = %s WHERE id = %s",
                (password_hash, user_id),
            )
            return result.rowcount > 0

    def set_admin(self, user_id: int, is_admin: bool) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE users SET is_admin = %s WHERE id = %s", (is_admin, user_id)
            )
            return result.rowcount > 0

    def clear_admin_unless_last(self, user_id: int) -> Optional[bool]:
        """Clear the admin flag only while another flagged admin remains.

        Row locks on every admin plus the target serialize concurrent
        demotions, so two admins demoting each other cannot both succeed.
        """
        with self._connect() as conn:
            with conn.transaction():
                rows = conn.execute(
                    "SELECT id, is_admin FROM users WHERE is_admin OR id = %s FOR UPDATE",
                    (user_id,),
                ).fetchall()
                if not any(int(row["id"]) == user_id for row in rows):
                    return None
                if not any(row["is_admin"] and int(row["id"]) != user_id for row in rows):
                    return False
                conn.execute("UPDATE users SET is_admin = FALSE WHERE id = %s", (user_id,))
                return True

    def delete_user(self, user_id: int) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                conn.execute("DELETE FROM sessions WHERE user_id = %s", (user_id,))
                result = conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
                return result.rowcount > 0

    def count_other_admins(self, exclude_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM users WHERE is_admin AND id <> %s",
                (exclude_id,),
            ).fetchone()
        return int(row["n"]) if row else 0

    # sessions
    def create_session(self, user_id: int, ttl: timedelta) -> Session:
        sess = Session.new(user_id, ttl)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sessions (token, user_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (sess.token, sess.user_id, sess.expires_at, sess.created_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return sess

    def get_session(self, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT token, user_id, expires_at, created_at FROM sessions WHERE token = %s",
                (token,),
            ).fetchone()
        if not row:
            return None
        return Session(
            token=row["token"],
            user_id=int(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def delete_session(self, token: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM sessions WHERE token = %s", (token,))

    def sweep_expired_sessions(self) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM sessions WHERE expires_at <= %s", (utcnow(),)
            )
            return result.rowcount

    def resolve_session(self, token: str) -> Optional[User]:
        # Sweep on its own connection so a failure cannot abort the lookup
        try:
            self.sweep_expired_sessions()
        except Exception as exc:
            self.logger.warning("session_sweep_failed", error=str(exc))
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT u.id, u.email, u.password_hash, u.is_admin, u.created_at
                FROM sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token = %s AND s.expires_at > %s
                """,
                (token, utcnow()),
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)
