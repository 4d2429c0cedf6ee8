from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from chatbridge.logging import get_logger
from chatbridge.service.errors import ServiceError
from chatbridge.storage.errors import ConstraintViolation

logger = get_logger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain, storage and framework errors onto flat JSON bodies."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return JSONResponse(status_code=409, content={"message": exc.message})

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        # Only location and reason; the rejected input may be a credential
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(
            part for part in first.get("loc", ()) if isinstance(part, str) and part != "body"
        )
        reason = first.get("msg", "invalid value")
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[".".join(str(part) for part in err.get("loc", ())) for err in errors],
        )
        message = f"Invalid request: {field} {reason}" if field else f"Invalid request: {reason}"
        return JSONResponse(status_code=400, content={"message": message})

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": message},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return JSONResponse(status_code=500, content={"message": "internal server error"})
