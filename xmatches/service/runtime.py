from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from xmatches.config import get_settings, reset_settings_cache
from xmatches.logging import get_logger
from xmatches.service.auth import AuthService
from xmatches.service.passwords import PasswordHasher
from xmatches.storage.memory import MemoryStore
from xmatches.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging.

    Example: postgresql://app:secret@db:5432/xmatches -> postgresql://app:***@db:5432/xmatches
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (
            parsed.scheme,
            netloc,
            parsed.path,
            parsed.params,
            parsed.query,
            parsed.fragment,
        )
    )


class Runtime:
    """Holds the store and services shared by every request."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.hasher = PasswordHasher()
        self.auth = AuthService(
            self.store,
            self.hasher,
            session_ttl=self.settings.session_ttl,
            admin_emails=self.settings.admin_emails,
        )
        logger.info(
            "runtime_ready",
            session_ttl_seconds=int(self.settings.session_ttl.total_seconds()),
            cookie_secure=self.settings.cookie_secure,
            admin_allowlist_size=len(self.settings.admin_emails),
        )

    def close(self) -> None:
        self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton with double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh read of the environment."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except Exception as exc:
                logger.warning("runtime_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
