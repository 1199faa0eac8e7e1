from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from xmatches.logging import get_logger
from xmatches.storage.errors import ConstraintViolation
from xmatches.storage.models import Session, User, utcnow


class MemoryStore:
    """In-memory credential and session store with a JSON snapshot on disk.

    Every public method takes ``_data_lock`` so the first-admin check, the
    cascading user delete and the expiry sweep are atomic with respect to
    concurrent requests. A mutation whose snapshot write fails is rolled back
    before the error propagates.
    """

    def __init__(self, fs_root: str = "/tmp/xmatches") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.sessions: Dict[str, Session] = {}
        self._user_id_seq: int = 1
        # RLock so sweep can run inside resolve without deadlocking
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def verify_connection(self) -> None:
        self._state_path()

    def close(self) -> None:
        return None

    def _snapshot(self) -> tuple:
        # Records are replaced, never mutated, so shallow copies suffice
        return dict(self.users), dict(self.sessions), self._user_id_seq

    def _commit(self, snapshot: tuple) -> None:
        """Persist the current state, or put ``snapshot`` back if the write fails."""
        try:
            self._persist_state()
        except Exception:
            self.users, self.sessions, self._user_id_seq = snapshot
            raise

    # users
    def create_user(self, email: str, password_hash: str) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            snapshot = self._snapshot()
            user = User(
                id=self._user_id_seq,
                email=email,
                password_hash=password_hash,
                is_admin=not self.users,
            )
            self._user_id_seq += 1
            self.users[user.id] = user
            self._commit(snapshot)
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def list_users(self) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.id)

    def _update_user(self, user_id: int, **changes) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            snapshot = self._snapshot()
            self.users[user_id] = replace(user, **changes)
            self._commit(snapshot)
            return True

    def set_password_hash(self, user_id: int, password_hash: str) -> bool:
        return self._update_user(user_id, password_hash=password_hash)

    def set_admin(self, user_id: int, is_admin: bool) -> bool:
        return self._update_user(user_id, is_admin=is_admin)

    def clear_admin_unless_last(self, user_id: int) -> Optional[bool]:
        """Clear the admin flag only while another flagged admin remains.

        Returns ``None`` for an unknown user, ``False`` when the user is the
        last flagged admin, ``True`` once the flag is cleared.
        """
        with self._data_lock:
            if user_id not in self.users:
                return None
            if self.count_other_admins(user_id) == 0:
                return False
            return self._update_user(user_id, is_admin=False)

    def delete_user(self, user_id: int) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            snapshot = self._snapshot()
            self.sessions = {
                token: sess
                for token, sess in self.sessions.items()
                if sess.user_id != user_id
            }
            self.users.pop(user_id, None)
            self._commit(snapshot)
            return True

    def count_other_admins(self, exclude_id: int) -> int:
        with self._data_lock:
            return sum(
                1 for u in self.users.values() if u.is_admin and u.id != exclude_id
            )

    # sessions
    def create_session(self, user_id: int, ttl: timedelta) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            snapshot = self._snapshot()
            sess = Session.new(user_id, ttl)
            self.sessions[sess.token] = sess
            self._commit(snapshot)
            return sess

    def get_session(self, token: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(token)

    def delete_session(self, token: str) -> None:
        with self._data_lock:
            if token not in self.sessions:
                return
            snapshot = self._snapshot()
            self.sessions.pop(token)
            self._commit(snapshot)

    def sweep_expired_sessions(self) -> int:
        with self._data_lock:
            now = utcnow()
            stale = [t for t, s in self.sessions.items() if not s.is_live(now)]
            if not stale:
                return 0
            snapshot = self._snapshot()
            for token in stale:
                self.sessions.pop(token, None)
            self._commit(snapshot)
            return len(stale)

    def resolve_session(self, token: str) -> Optional[User]:
        with self._data_lock:
            try:
                self.sweep_expired_sessions()
            except Exception as exc:
                self.logger.warning("session_sweep_failed", error=str(exc))
            sess = self.sessions.get(token)
            if not sess or not sess.is_live():
                return None
            return self.users.get(sess.user_id)

    # snapshot
    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "is_admin": user.is_admin,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=int(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            is_admin=bool(data.get("is_admin", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, sess: Session) -> dict:
        return {
            "token": sess.token,
            "user_id": sess.user_id,
            "expires_at": self._serialize_datetime(sess.expires_at),
            "created_at": self._serialize_datetime(sess.created_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            token=data["token"],
            user_id=int(data["user_id"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _persist_state(self) -> None:
        state = {
            "user_id_seq": self._user_id_seq,
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            user.id: user
            for user in (self._deserialize_user(u) for u in data.get("users", []))
        }
        self.sessions = {
            s["token"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        max_user_id = max(self.users, default=0)
        self._user_id_seq = max(int(data.get("user_id_seq", 1)), max_user_id + 1)
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True
