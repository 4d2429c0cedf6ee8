"""Request gates for the auth surface.

Each gate is a FastAPI dependency. Gates record their outcome on
``request.state`` (``multi_user_mode``, ``user``) so handlers and nested
gates can read it without re-verifying.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Request

from chatbridge.logging import get_logger
from chatbridge.service.errors import ForbiddenError, GateRejection
from chatbridge.service.runtime import get_runtime
from chatbridge.storage.models import UnifiedUser

logger = get_logger(__name__)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    parts = header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    token = parts[1].strip()
    return token or None


def current_user(request: Request) -> Optional[UnifiedUser]:
    return getattr(request.state, "user", None)


def _record_multi_user_mode(request: Request, runtime) -> None:
    try:
        request.state.multi_user_mode = runtime.primary_store.is_multi_user_mode()
    except Exception as exc:
        logger.error("multi_user_mode_lookup_failed", error=str(exc))
        request.state.multi_user_mode = False


async def require_auth(request: Request) -> Optional[UnifiedUser]:
    runtime = get_runtime()
    _record_multi_user_mode(request, runtime)
    request.state.user = None
    token = extract_bearer(request.headers.get("Authorization"))

    if runtime.dev_bypass:
        logger.warning("auth_dev_bypass", path=request.url.path)
        if token:
            request.state.user = runtime.auth.verify_token(token)
        return request.state.user

    if not token:
        raise GateRejection("No auth token found.")
    try:
        user = runtime.auth.verify_token(token)
    except Exception as exc:
        logger.error("auth_gate_failed", path=request.url.path, error=str(exc))
        raise GateRejection("Authentication failed") from exc
    if not user:
        raise GateRejection("Invalid auth token.")
    if user.suspended:
        logger.info("auth_gate_suspended", user_id=user.id)
        raise GateRejection("User is suspended from system")

    request.state.user = user
    return user


async def require_admin(request: Request) -> UnifiedUser:
    user = current_user(request)
    if not user or user.role != "admin":
        raise ForbiddenError("Forbidden")
    return user


async def optional_auth(request: Request) -> Optional[UnifiedUser]:
    request.state.user = None
    token = extract_bearer(request.headers.get("Authorization"))
    if not token:
        return None
    try:
        request.state.user = get_runtime().auth.verify_token(token)
    except Exception as exc:
        logger.warning("optional_auth_failed", error=str(exc))
        request.state.user = None
    return request.state.user


async def require_api_key(request: Request) -> None:
    """Accept only keys from the primary store's key table.

    Secondary-store keys are not consulted, so they are always rejected.
    """
    runtime = get_runtime()
    _record_multi_user_mode(request, runtime)
    api_key = extract_bearer(request.headers.get("Authorization"))
    if not api_key:
        raise GateRejection("No valid API key found.", status_code=403, error_code="forbidden")
    try:
        record = runtime.primary_store.get_api_key(api_key)
    except Exception as exc:
        logger.error("api_key_validation_failed", error=str(exc))
        raise GateRejection(
            "API key validation failed", status_code=403, error_code="forbidden"
        ) from exc
    if not record:
        raise GateRejection("No valid API key found.", status_code=403, error_code="forbidden")
    request.state.api_key = record
