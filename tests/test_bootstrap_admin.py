"""Tests for the admin bootstrap script."""

import importlib.util
from pathlib import Path

import pytest

from chatbridge.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture(scope="module")
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest.mark.parametrize(
    "password,valid",
    [
        ("short1!A", False),
        ("alllowercaseletters", False),
        ("lowercase-and-digits-123", True),
        ("SecurePassword123!", True),
    ],
)
def test_validate_password(bootstrap, password, valid):
    assert bootstrap.validate_password(password) is valid


async def test_creates_admin_in_both_stores(bootstrap):
    result = await bootstrap.bootstrap_admin("root@example.com", "SecurePassword123!")

    assert result["status"] == "created"
    assert result["role"] == "admin"
    runtime = get_runtime()
    assert runtime.primary_store.get_user(email="root@example.com").role == "admin"


async def test_enables_multi_user_mode(bootstrap):
    runtime = get_runtime()
    runtime.primary_store.set_multi_user_mode(False)

    result = await bootstrap.bootstrap_admin("root@example.com", "SecurePassword123!")

    assert result["status"] == "created"
    assert runtime.primary_store.is_multi_user_mode() is True


async def test_existing_user_left_alone(bootstrap):
    await bootstrap.bootstrap_admin("root@example.com", "SecurePassword123!")
    result = await bootstrap.bootstrap_admin("root@example.com", "AnotherPassword456!")

    assert result["status"] == "exists"
    assert get_runtime().secondary_store.count_users() == 1


async def test_dry_run_writes_nothing(bootstrap):
    result = await bootstrap.bootstrap_admin(
        "root@example.com", "SecurePassword123!", dry_run=True
    )

    assert result["status"] == "dry_run"
    assert get_runtime().secondary_store.count_users() == 0


async def test_enrolls_two_factor(bootstrap):
    result = await bootstrap.bootstrap_admin(
        "root@example.com", "SecurePassword123!", enable_2fa=True
    )

    runtime = get_runtime()
    stored = runtime.secondary_store.get_user_by_id(result["user_id"], include_totp_secret=True)
    assert stored.two_factor_enabled is True
    assert stored.totp_secret == result["totp_secret"]
    assert result["provisioning_uri"].startswith("otpauth://totp/chatbridge")

    challenge = await runtime.auth.login("root@example.com", "SecurePassword123!")
    assert getattr(challenge, "temp_token", None)
