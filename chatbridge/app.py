from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatbridge.api.error_handling import register_exception_handlers
from chatbridge.api.routes import router
from chatbridge.config import Settings
from chatbridge.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    from chatbridge.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("startup_complete", dev_bypass=runtime.dev_bypass)
    yield
    try:
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    application = FastAPI(title="chatbridge", version=__version__, lifespan=lifespan)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        # The refresh cookie only travels on credentialed requests
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @application.middleware("http")
    async def add_correlation_id(request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @application.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/auth/"):
            response.headers.setdefault("Cache-Control", "no-store")
        if request.url.scheme == "https" and settings.is_production:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    register_exception_handlers(application)
    application.include_router(router)

    @application.get("/healthz")
    async def health() -> Dict[str, Any]:
        """Report reachability of both user stores."""
        from chatbridge.service.runtime import get_runtime

        runtime = get_runtime()
        checks: Dict[str, Dict[str, Any]] = {}

        async def _probe(label: str, store) -> bool:
            verify = getattr(store, "verify_connection", None)
            if verify is None:
                checks[label] = {"status": "healthy", "type": "memory"}
                return True
            try:
                await asyncio.wait_for(asyncio.to_thread(verify), HEALTH_CHECK_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.error("health_check_timeout", component=label)
                checks[label] = {"status": "unhealthy"}
                return False
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
                checks[label] = {"status": "unhealthy"}
                return False
            checks[label] = {"status": "healthy"}
            return True

        primary_ok = await _probe("primary_store", runtime.primary_store)
        secondary_ok = await _probe("secondary_store", runtime.secondary_store)
        return {
            "status": "healthy" if primary_ok and secondary_ok else "unhealthy",
            "checks": checks,
            "version": __version__,
            "dev_bypass": runtime.dev_bypass,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return application


app = create_app()
