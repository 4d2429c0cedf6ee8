"""Error bodies produced by the registered exception handlers."""

from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from chatbridge.api.error_handling import register_exception_handlers
from chatbridge.service.errors import (
    AuthenticationError,
    ConflictError,
    GateRejection,
    InvalidCredentialsError,
    ServerError,
)
from chatbridge.storage.errors import ConstraintViolation


def _app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/auth-error")
    async def auth_error():
        raise AuthenticationError("Refresh token not provided")

    @app.get("/gate")
    async def gate():
        raise GateRejection("No auth token found.")

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("User with this email already exists")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/server")
    async def server():
        raise ServerError("Something went wrong")

    @app.get("/http")
    async def http():
        raise HTTPException(status_code=418, detail="teapot")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("unexpected")

    return app


def test_service_errors_use_message_key():
    client = TestClient(_app())

    response = client.get("/auth-error")
    assert response.status_code == 401
    assert response.json() == {"message": "Refresh token not provided"}

    response = client.get("/conflict")
    assert response.status_code == 409
    assert response.json() == {"message": "User with this email already exists"}

    response = client.get("/server")
    assert response.status_code == 500
    assert response.json() == {"message": "Something went wrong"}


def test_gate_rejections_use_error_key():
    client = TestClient(_app())
    response = client.get("/gate")

    assert response.status_code == 401
    assert response.json() == {"error": "No auth token found."}


def test_constraint_violation_maps_to_conflict():
    response = TestClient(_app()).get("/constraint")
    assert response.status_code == 409
    assert response.json() == {"message": "email already exists"}


def test_http_exception_flattened():
    response = TestClient(_app()).get("/http")
    assert response.status_code == 418
    assert response.json() == {"message": "teapot"}


def test_unhandled_exception_hidden():
    client = TestClient(_app(), raise_server_exceptions=False)
    response = client.get("/boom")

    assert response.status_code == 500
    assert response.json() == {"message": "internal server error"}


def test_error_classes():
    err = InvalidCredentialsError()
    assert err.message == "Invalid credentials"
    assert err.status_code == 401
    assert err.to_body() == {"message": "Invalid credentials"}

    custom = GateRejection("No valid API key found.", status_code=403, error_code="forbidden")
    assert custom.status_code == 403
    assert custom.error_code == "forbidden"
    assert custom.to_body() == {"error": "No valid API key found."}
    assert GateRejection("x").status_code == 401
