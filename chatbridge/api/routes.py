from __future__ import annotations

from datetime import timezone
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Path, Query, Request, Response
from fastapi.responses import JSONResponse

from chatbridge.api.middleware import current_user, extract_bearer, require_admin, require_auth
from chatbridge.api.schemas import (
    LoginRequest,
    RegisterRequest,
    SuspensionRequest,
    VerifyTwoFactorRequest,
)
from chatbridge.logging import get_logger
from chatbridge.service.auth import STEP_UP_FAILED, IssuedSession, StepUpChallenge
from chatbridge.service.errors import (
    AuthenticationError,
    ForbiddenError,
    InvalidCredentialsError,
    ServerError,
    ServiceError,
    ValidationError,
)
from chatbridge.service.runtime import get_runtime
from chatbridge.storage.models import SessionRecord

logger = get_logger(__name__)

REFRESH_COOKIE = "refreshToken"

router = APIRouter(prefix="/auth", tags=["auth"])
protected = APIRouter(dependencies=[Depends(require_auth)])
admin = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


def _set_refresh_cookie(response: Response, session: SessionRecord, refresh_token: str) -> None:
    expires_at = session.expiration
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    response.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        httponly=True,
        secure=get_runtime().settings.is_production,
        samesite="strict",
        expires=expires_at,
        path="/",
    )


def _clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(
        REFRESH_COOKIE,
        path="/",
        httponly=True,
        secure=get_runtime().settings.is_production,
        samesite="strict",
    )


def _session_body(response: Response, issued: IssuedSession) -> dict:
    _set_refresh_cookie(response, issued.session, issued.refresh_token)
    return {"token": issued.token, "user": issued.user.to_public()}


@router.post("/login")
async def login(response: Response, body: Optional[LoginRequest] = None):
    """Password login; answers with a step-up challenge when 2FA is on."""
    if not body or not body.email or not body.password:
        raise ValidationError("Email and password are required")
    runtime = get_runtime()
    try:
        result = await runtime.auth.login(body.email, body.password)
    except ServiceError:
        raise
    except Exception as exc:
        logger.error("login_unexpected_error", error=str(exc))
        raise InvalidCredentialsError() from exc

    if isinstance(result, StepUpChallenge):
        return {
            "twoFAPending": True,
            "tempToken": result.temp_token,
            "user": {"id": result.user.id, "email": result.user.email},
        }
    return _session_body(response, result)


@router.post("/register")
async def register(body: Optional[RegisterRequest] = None):
    """Create an account in the secondary store and mirror it to the primary.

    Gated twice: by ``ALLOW_REGISTRATION`` here and by the primary
    platform's multi-user mode inside the service.
    """
    runtime = get_runtime()
    if not runtime.settings.allow_registration:
        raise ForbiddenError("Registration is not allowed.")
    if not body or not body.email or not body.password:
        raise ValidationError("Email and password are required")
    await runtime.auth.register(
        body.email,
        body.password,
        name=body.name,
        username=body.username,
    )
    return {"message": "User registered successfully"}


@router.post("/refresh-token")
async def refresh_token(
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    try:
        token, user = await runtime.auth.refresh(refresh_cookie)
    except ServiceError:
        raise
    except Exception as exc:
        logger.error("refresh_unexpected_error", error=str(exc))
        raise AuthenticationError("Invalid refresh token") from exc
    return {"token": token, "user": user.to_public()}


@router.post("/verify-2fa")
async def verify_two_factor(response: Response, body: Optional[VerifyTwoFactorRequest] = None):
    if not body or not body.token or body.code is None or str(body.code) == "":
        raise ValidationError("Token and code are required")
    runtime = get_runtime()
    try:
        issued = await runtime.auth.verify_step_up(body.token, str(body.code))
    except ServiceError:
        raise
    except Exception as exc:
        logger.error("step_up_unexpected_error", error=str(exc))
        raise AuthenticationError(STEP_UP_FAILED) from exc
    return _session_body(response, issued)


@protected.post("/logout")
async def logout(
    request: Request,
    response: Response,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    user = current_user(request)
    runtime = get_runtime()
    try:
        await runtime.auth.logout(user.id if user else None, refresh_cookie)
    except Exception as exc:
        logger.error("logout_failed", error=str(exc))
        raise ServerError("Something went wrong") from exc
    _clear_refresh_cookie(response)
    return {"message": "Logout successful"}


@protected.get("/verify-token")
async def verify_token(request: Request):
    token = extract_bearer(request.headers.get("Authorization"))
    user = get_runtime().auth.verify_token(token) if token else None
    if not user:
        return JSONResponse(status_code=401, content={"valid": False})
    return {"valid": True, "user": user.to_dict()}


@protected.get("/me")
async def me(request: Request):
    user = current_user(request)
    return user.to_dict() if user else None


@admin.get("/users")
async def list_users(limit: int = Query(100, ge=1, le=1000)):
    return {"users": get_runtime().auth.list_users(limit=limit)}


@admin.post("/users/{user_id}/mirror")
async def mirror_user(user_id: str = Path(..., max_length=128)):
    """Run mirror reconciliation for one user on demand."""
    status = await get_runtime().auth.mirror_user(user_id)
    return {
        "mirrored": status.mirrored,
        "created": status.created,
        "user": status.user.to_public(),
        "primaryUser": status.primary_user.to_public() if status.primary_user else None,
    }


@admin.put("/users/{user_id}/suspension")
async def set_suspension(body: SuspensionRequest, user_id: str = Path(..., max_length=128)):
    updated = get_runtime().auth.set_suspended(user_id, body.suspended)
    return {"primaryUser": updated.to_public()}


# Child routers copy routes at include time, so these come last.
protected.include_router(admin)
router.include_router(protected)
