from __future__ import annotations

import os
import re
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from xmatches.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SESSION_TTL = timedelta(days=30)

_COOKIE_SECURE_TRUTHY = frozenset({"1", "true", "yes"})

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,  # micro sign
    "μs": 1e-6,  # greek mu
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = r"(?:\d+(?:\.\d*)?|\.\d+)(?:ns|us|µs|μs|ms|s|m|h)"
_DURATION_RE = re.compile(rf"[+-]?(?:{_DURATION_PART})+")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")
# Signed 64-bit nanoseconds, roughly 2562047h
MAX_DURATION = timedelta(microseconds=2**63 // 1000)


def parse_duration(raw: str) -> timedelta:
    """Parse a duration string such as ``"90s"``, ``"720h"`` or ``"1h30m"``.

    The grammar is a sequence of decimal numbers each followed by a unit
    (``ns``, ``us``, ``ms``, ``s``, ``m``, ``h``), with an optional leading
    sign. A bare ``"0"`` is accepted.

    Raises:
        ValueError: if ``raw`` does not follow the grammar or its magnitude
            exceeds ``MAX_DURATION``.
    """
    text = raw.strip()
    if text in {"0", "+0", "-0"}:
        return timedelta(0)
    if not _DURATION_RE.fullmatch(text):
        raise ValueError(f"invalid duration {raw!r}")
    sign = -1 if text.startswith("-") else 1
    seconds = sum(
        float(number) * _DURATION_UNITS[unit]
        for number, unit in _DURATION_PART_RE.findall(text)
    )
    if seconds > MAX_DURATION.total_seconds():
        raise ValueError(f"duration {raw!r} out of range")
    return timedelta(seconds=sign * seconds)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings read from the environment and ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/xmatches", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/xmatches", "SHARED_FS_ROOT")
    session_ttl: timedelta = env_field(
        DEFAULT_SESSION_TTL,
        "SESSION_TTL",
        description="Session lifetime as a duration string, e.g. 720h or 90m",
    )
    cookie_secure: bool = env_field(
        True,
        "COOKIE_SECURE",
        description="Secure flag on the session cookie; disable only for local http",
    )
    admin_emails: frozenset[str] = env_field(
        frozenset(),
        "ADMIN_EMAILS",
        description="Comma separated emails that are admins regardless of the stored flag",
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests",
    )
    build_sha: str | None = env_field(None, "BUILD_SHA")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("session_ttl", mode="before")
    @classmethod
    def _parse_session_ttl(cls, value: Any) -> timedelta:
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_SESSION_TTL
        if isinstance(value, timedelta):
            ttl = value
        else:
            try:
                ttl = parse_duration(str(value))
            except ValueError:
                logger.warning("session_ttl_invalid", value=str(value))
                return DEFAULT_SESSION_TTL
        if ttl <= timedelta(0):
            logger.warning("session_ttl_not_positive", value=str(value))
            return DEFAULT_SESSION_TTL
        return ttl

    @field_validator("cookie_secure", mode="before")
    @classmethod
    def _parse_cookie_secure(cls, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        if value is None:
            return True
        text = str(value).lower()
        if not text:
            return True
        return text in _COOKIE_SECURE_TRUTHY

    @field_validator("admin_emails", mode="before")
    @classmethod
    def _parse_admin_emails(cls, value: Any) -> frozenset[str]:
        if value is None:
            return frozenset()
        items = value.split(",") if isinstance(value, str) else list(value)
        return frozenset(
            item.strip().lower() for item in items if item and item.strip()
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
