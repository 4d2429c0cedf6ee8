from __future__ import annotations

import secrets
import threading
from datetime import timedelta
from typing import Optional

from chatbridge.config import Settings, get_settings, reset_settings_cache
from chatbridge.logging import get_logger
from chatbridge.service.auth import AuthService
from chatbridge.service.crypto import EncryptionUtility
from chatbridge.service.tokens import HmacTokenSigner, TokenMinter
from chatbridge.service.totp import TotpVerifier
from chatbridge.storage.memory import MemoryPrimaryStore, MemorySecondaryStore
from chatbridge.storage.postgres import PostgresPrimaryStore, PostgresSecondaryStore

logger = get_logger(__name__)


def _resolve_signing_secret(settings: Settings) -> str:
    if settings.jwt_secret:
        return settings.jwt_secret
    if settings.dev_bypass_active:
        logger.warning(
            "jwt_secret_missing_ephemeral",
            message="JWT_SECRET unset; using a per-process secret because AUTH_DEV_BYPASS is on",
        )
        return secrets.token_urlsafe(64)
    raise RuntimeError("JWT_SECRET must be set unless AUTH_DEV_BYPASS is enabled outside production")


class Runtime:
    """Capability set for the bridge, resolved once at startup."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        signing_secret = _resolve_signing_secret(self.settings)
        self.encryption = EncryptionUtility(self.settings.encryption_key or signing_secret)
        self.signer = HmacTokenSigner(signing_secret)
        self.minter = TokenMinter(
            self.signer,
            self.encryption,
            signing_secret,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            step_up_ttl=timedelta(minutes=self.settings.step_up_token_ttl_minutes),
        )
        self.totp = TotpVerifier()

        if self.settings.use_memory_store:
            self.secondary_store = MemorySecondaryStore(
                cipher=self.encryption,
                session_ttl_minutes=self.settings.session_ttl_minutes,
            )
            self.primary_store = MemoryPrimaryStore(
                multi_user_mode=self.settings.multi_user_mode
            )
        else:
            self.secondary_store = PostgresSecondaryStore(
                self.settings.secondary_database_url,
                cipher=self.encryption,
                session_ttl_minutes=self.settings.session_ttl_minutes,
            )
            self.primary_store = PostgresPrimaryStore(self.settings.primary_database_url)

        self.auth = AuthService(
            secondary_users=self.secondary_store,
            sessions=self.secondary_store,
            primary_users=self.primary_store,
            signer=self.signer,
            minter=self.minter,
            totp=self.totp,
            email_verification_required=self.settings.email_verification_required,
        )

        self.dev_bypass = self.settings.dev_bypass_active
        if self.dev_bypass:
            logger.warning(
                "auth_dev_bypass_enabled",
                environment=self.settings.environment.value,
                message="Protected routes will not verify tokens",
            )
        logger.info("runtime_init_complete")

    def close(self) -> None:
        for store in (self.secondary_store, self.primary_store):
            close = getattr(store, "close", None)
            if close is not None:
                close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None:
            runtime.close()
        runtime = Runtime(settings)
        return runtime
