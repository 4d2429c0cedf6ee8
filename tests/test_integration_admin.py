"""Integration tests for admin user management endpoints."""

import pytest
from fastapi.testclient import TestClient

from chatbridge import app as app_module
from chatbridge.service.runtime import get_runtime

ADMIN_EMAIL = "admin@example.com"
MEMBER_EMAIL = "member@example.com"
PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _register_and_login(client, email):
    assert client.post("/auth/register", json={"email": email, "password": PASSWORD}).status_code == 200
    response = client.post("/auth/login", json={"email": email, "password": PASSWORD})
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def admin_headers(client):
    session = _register_and_login(client, ADMIN_EMAIL)
    assert session["user"]["role"] == "admin"
    return {"Authorization": f"Bearer {session['token']}"}


@pytest.fixture
def member(client, admin_headers):
    session = _register_and_login(client, MEMBER_EMAIL)
    return session


class TestAdminAccess:
    def test_requires_token(self, client):
        response = client.get("/auth/admin/users")
        assert response.status_code == 401
        assert response.json() == {"error": "No auth token found."}

    def test_member_forbidden(self, client, member):
        response = client.get(
            "/auth/admin/users", headers={"Authorization": f"Bearer {member['token']}"}
        )
        assert response.status_code == 403
        assert response.json() == {"message": "Forbidden"}


class TestUserListing:
    def test_lists_users_with_mirror_state(self, client, admin_headers, member):
        orphan = get_runtime().secondary_store.create_user("orphan@example.com")

        response = client.get("/auth/admin/users", headers=admin_headers)

        assert response.status_code == 200
        users = {entry["email"]: entry for entry in response.json()["users"]}
        assert set(users) == {ADMIN_EMAIL, MEMBER_EMAIL, orphan.email}
        assert users[ADMIN_EMAIL]["mirrored"] is True
        assert users[orphan.email]["mirrored"] is False

    def test_limit_validated(self, client, admin_headers):
        response = client.get("/auth/admin/users?limit=0", headers=admin_headers)
        assert response.status_code == 400
        assert response.json()["message"].startswith("Invalid request: query.limit")


class TestMirror:
    def test_mirror_creates_missing_record(self, client, admin_headers):
        orphan = get_runtime().secondary_store.create_user("orphan@example.com")

        response = client.post(f"/auth/admin/users/{orphan.id}/mirror", headers=admin_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["mirrored"] is True
        assert body["created"] is True
        assert body["primaryUser"]["email"] == orphan.email

        again = client.post(f"/auth/admin/users/{orphan.id}/mirror", headers=admin_headers)
        assert again.json()["created"] is False

    def test_mirror_unknown_user(self, client, admin_headers):
        response = client.post("/auth/admin/users/missing/mirror", headers=admin_headers)

        assert response.status_code == 404
        assert response.json() == {"message": "User not found"}


class TestSuspension:
    def test_suspend_and_restore(self, client, admin_headers, member):
        user_id = member["user"]["id"]
        member_headers = {"Authorization": f"Bearer {member['token']}"}

        response = client.put(
            f"/auth/admin/users/{user_id}/suspension",
            json={"suspended": True},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["primaryUser"]["suspended"] is True
        assert client.get("/auth/me", headers=member_headers).status_code == 401

        client.put(
            f"/auth/admin/users/{user_id}/suspension",
            json={"suspended": False},
            headers=admin_headers,
        )
        assert client.get("/auth/me", headers=member_headers).status_code == 200

    def test_suspension_body_required(self, client, admin_headers, member):
        response = client.put(
            f"/auth/admin/users/{member['user']['id']}/suspension",
            json={},
            headers=admin_headers,
        )
        assert response.status_code == 400
        assert response.json()["message"].startswith("Invalid request: suspended")
