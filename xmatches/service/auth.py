from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Iterable, List, Optional, Protocol, Tuple

from xmatches.logging import get_logger
from xmatches.service.errors import (
    AuthenticationError,
    ConflictError,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)
from xmatches.service.passwords import MIN_PASSWORD_LENGTH, PasswordHasher
from xmatches.storage.errors import ConstraintViolation
from xmatches.storage.models import Session, User

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(self, email: str, password_hash: str) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def list_users(self) -> List[User]: ...

    def set_password_hash(self, user_id: int, password_hash: str) -> bool: ...

    def set_admin(self, user_id: int, is_admin: bool) -> bool: ...

    def delete_user(self, user_id: int) -> bool: ...

    def count_other_admins(self, exclude_id: int) -> int: ...

    def clear_admin_unless_last(self, user_id: int) -> Optional[bool]: ...

    def create_session(self, user_id: int, ttl: timedelta) -> Session: ...

    def delete_session(self, token: str) -> None: ...

    def resolve_session(self, token: str) -> Optional[User]: ...


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def normalize_admin_emails(emails: Iterable[str]) -> frozenset[str]:
    return frozenset(normalize_email(e) for e in emails if normalize_email(e))


class AuthService:
    """Account registration, cookie sessions and admin account management.

    The admin allow-list is handed in at construction and never re-read, so
    admin checks do not depend on the process environment.
    """

    def __init__(
        self,
        store: AuthStore,
        hasher: PasswordHasher,
        *,
        session_ttl: timedelta,
        admin_emails: Iterable[str] = (),
    ) -> None:
        self.store: AuthStore = store
        self.hasher = hasher
        self.session_ttl = session_ttl
        self.admin_emails = normalize_admin_emails(admin_emails)
        self.logger = logger

    @staticmethod
    def _validate_email(email: Optional[str]) -> str:
        normalized = normalize_email(email)
        if not normalized or "@" not in normalized:
            raise ValidationError("invalid email", detail={"field": "email"})
        return normalized

    @staticmethod
    def _validate_password(password: Optional[str]) -> str:
        if password is None or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password too short (min {MIN_PASSWORD_LENGTH})",
                detail={"field": "password", "min_length": MIN_PASSWORD_LENGTH},
            )
        return password

    async def register(
        self,
        email: Optional[str],
        password: Optional[str],
        password_confirm: Optional[str] = None,
    ) -> User:
        normalized = self._validate_email(email)
        password = self._validate_password(password)
        if password_confirm is not None and password_confirm != password:
            raise ValidationError(
                "passwords do not match", detail={"field": "password_confirm"}
            )
        digest = await asyncio.to_thread(self.hasher.hash, password)
        try:
            user = self.store.create_user(normalized, digest)
        except ConstraintViolation as exc:
            raise ConflictError("email already in use", detail=exc.detail) from exc
        self.logger.info("user_registered", user_id=user.id, is_admin=user.is_admin)
        return user

    async def login(
        self, email: Optional[str], password: Optional[str]
    ) -> Tuple[User, Session]:
        """Check credentials and open a session.

        Unknown email and wrong password raise the same ``AuthenticationError``
        and both cost one argon2 verification.
        """
        normalized = normalize_email(email)
        if not normalized or not password:
            raise ValidationError("missing email or password")
        user = self.store.get_user_by_email(normalized)
        if not user:
            await asyncio.to_thread(self.hasher.burn, password)
            self.logger.info("login_failed", reason="unknown_account")
            raise AuthenticationError("invalid credentials")
        if not await asyncio.to_thread(self.hasher.verify, password, user.password_hash):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise AuthenticationError("invalid credentials")
        session = self.store.create_session(user.id, self.session_ttl)
        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            expires_at=session.expires_at.isoformat(),
        )
        return user, session

    def logout(self, token: Optional[str]) -> None:
        if not token:
            return
        self.store.delete_session(token)
        self.logger.info("session_revoked")

    def current_user(self, token: Optional[str]) -> Optional[User]:
        if not token:
            return None
        return self.store.resolve_session(token)

    def is_admin(self, user: User) -> bool:
        if user.is_admin:
            return True
        email = normalize_email(user.email)
        return bool(email) and email in self.admin_emails

    # admin operations
    def list_users(self) -> List[User]:
        return self.store.list_users()

    async def reset_password(self, user_id: int, password: Optional[str]) -> None:
        password = self._validate_password(password)
        digest = await asyncio.to_thread(self.hasher.hash, password)
        if not self.store.set_password_hash(user_id, digest):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.logger.info("password_reset", user_id=user_id)

    def set_admin(self, actor: User, user_id: int, is_admin: bool) -> None:
        if is_admin:
            changed: Optional[bool] = self.store.set_admin(user_id, True)
        else:
            # Check and write happen in one store step; allow-listed emails
            # are not "other admins"
            changed = self.store.clear_admin_unless_last(user_id)
            if changed is False:
                raise InvariantViolation(
                    "cannot remove the last admin", detail={"user_id": user_id}
                )
        if not changed:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.logger.info(
            "admin_flag_changed",
            actor_id=actor.id,
            user_id=user_id,
            is_admin=is_admin,
        )

    def delete_user(self, actor: User, user_id: int) -> None:
        if user_id == actor.id:
            raise InvariantViolation(
                "cannot delete your own account", detail={"user_id": user_id}
            )
        if not self.store.delete_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.logger.info("user_deleted", actor_id=actor.id, user_id=user_id)
