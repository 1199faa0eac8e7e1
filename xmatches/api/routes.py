from __future__ import annotations

import math
from typing import List, Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Response

from xmatches.api.schemas import (
    AdminUserResponse,
    LoginRequest,
    MeResponse,
    OkResponse,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    SetAdminRequest,
)
from xmatches.service.errors import AuthenticationError, ForbiddenError
from xmatches.service.runtime import get_runtime
from xmatches.storage.models import Session, User, utcnow

SESSION_COOKIE = "session_token"

router = APIRouter(prefix="/api")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _parse_user_id(raw: str) -> int:
    try:
        user_id = int(raw)
    except (TypeError, ValueError):
        raise _http_error("validation_error", "invalid id", status_code=400)
    if user_id <= 0:
        raise _http_error("validation_error", "invalid id", status_code=400)
    return user_id


def _apply_session_cookie(response: Response, session: Session, *, secure: bool) -> None:
    max_age = max(math.ceil((session.expires_at - utcnow()).total_seconds()), 0)
    response.set_cookie(
        SESSION_COOKIE,
        session.token,
        max_age=max_age,
        path="/",
        secure=secure,
        httponly=True,
        samesite="lax",
    )


def _clear_session_cookie(response: Response, *, secure: bool) -> None:
    response.delete_cookie(
        SESSION_COOKIE,
        path="/",
        secure=secure,
        httponly=True,
        samesite="lax",
    )


async def require_authenticated(
    session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
) -> User:
    """Resolve the session cookie to a user or answer 401."""
    user = get_runtime().auth.current_user(session_token)
    if not user:
        raise AuthenticationError("unauthorized")
    return user


async def require_admin(user: User = Depends(require_authenticated)) -> User:
    """401 without a session, 403 unless the user is flagged or allow-listed."""
    if not get_runtime().auth.is_admin(user):
        raise ForbiddenError("forbidden")
    return user


@router.post(
    "/auth/register", response_model=RegisterResponse, status_code=201, tags=["auth"]
)
async def register(body: RegisterRequest):
    """Create an account. The very first account becomes an admin.

    Raises:
        400: invalid email, short password or mismatched confirmation
        409: email already registered
    """
    user = await get_runtime().auth.register(
        body.email, body.password, body.password_confirm
    )
    return RegisterResponse(id=user.id, email=user.email)


@router.post("/auth/login", response_model=OkResponse, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Check credentials and set the session cookie.

    Raises:
        400: email or password missing
        401: unknown email or wrong password, indistinguishably
    """
    runtime = get_runtime()
    _, session = await runtime.auth.login(body.email, body.password)
    _apply_session_cookie(response, session, secure=runtime.settings.cookie_secure)
    return OkResponse()


@router.post("/auth/logout", response_model=OkResponse, tags=["auth"])
async def logout(
    response: Response,
    session_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
):
    runtime = get_runtime()
    runtime.auth.logout(session_token)
    _clear_session_cookie(response, secure=runtime.settings.cookie_secure)
    return OkResponse()


@router.get("/auth/me", response_model=MeResponse, tags=["auth"])
async def me(user: User = Depends(require_authenticated)):
    return MeResponse(
        id=user.id, email=user.email, is_admin=get_runtime().auth.is_admin(user)
    )


@router.get("/admin/users", response_model=List[AdminUserResponse], tags=["admin"])
async def admin_list_users(principal: User = Depends(require_admin)):
    users = get_runtime().auth.list_users()
    return [
        AdminUserResponse(
            id=u.id, email=u.email, is_admin=u.is_admin, created_at=u.created_at
        )
        for u in users
    ]


@router.post(
    "/admin/users/{user_id}/reset_password", response_model=OkResponse, tags=["admin"]
)
async def admin_reset_password(
    user_id: str,
    body: ResetPasswordRequest,
    principal: User = Depends(require_admin),
):
    target_id = _parse_user_id(user_id)
    await get_runtime().auth.reset_password(target_id, body.password)
    return OkResponse()


@router.patch("/admin/users/{user_id}/admin", response_model=OkResponse, tags=["admin"])
async def admin_set_admin(
    user_id: str,
    body: SetAdminRequest,
    principal: User = Depends(require_admin),
):
    """Set or clear the stored admin flag.

    Clearing it is refused with 400 when no other user carries the flag.
    """
    target_id = _parse_user_id(user_id)
    get_runtime().auth.set_admin(principal, target_id, body.is_admin)
    return OkResponse()


@router.delete("/admin/users/{user_id}", status_code=204, tags=["admin"])
async def admin_delete_user(user_id: str, principal: User = Depends(require_admin)):
    """Delete an account and its sessions. Admins cannot delete themselves."""
    target_id = _parse_user_id(user_id)
    get_runtime().auth.delete_user(principal, target_id)
    return Response(status_code=204)
