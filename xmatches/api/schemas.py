from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from xmatches.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "invariant_violation",
    "conflict",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


# Credential fields default to "" so a missing field reaches the service checks
# and gets the same message as an empty one.
class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str = ""
    password: str = ""
    password_confirm: Optional[str] = None


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str = ""
    password: str = ""


class ResetPasswordRequest(BaseModel):
    password: str = ""


class SetAdminRequest(BaseModel):
    is_admin: bool = Field(..., strict=True)


class RegisterResponse(BaseModel):
    id: int
    email: str


class OkResponse(BaseModel):
    ok: bool = True


class MeResponse(BaseModel):
    id: int
    email: str
    is_admin: bool


class AdminUserResponse(BaseModel):
    """Admin listing row; the password hash is never part of it."""

    id: int
    email: str
    is_admin: bool
    created_at: datetime
