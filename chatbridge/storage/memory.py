from __future__ import annotations

import secrets
import threading
import uuid
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from chatbridge.logging import get_logger
from chatbridge.service.crypto import DecryptionError, EncryptionUtility
from chatbridge.storage.errors import ConstraintViolation
from chatbridge.storage.models import (
    ApiKey,
    PrimaryUser,
    SecondaryUser,
    SessionRecord,
    hash_refresh_token,
)


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class MemorySecondaryStore:
    """In-memory stand-in for the chat platform's user and session tables."""

    def __init__(
        self,
        *,
        cipher: Optional[EncryptionUtility] = None,
        session_ttl_minutes: int = 7 * 24 * 60,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, SecondaryUser] = {}
        self.sessions: Dict[str, SessionRecord] = {}
        # refresh-token digest -> session id
        self._session_index: Dict[str, str] = {}
        self.session_ttl_minutes = session_ttl_minutes
        self._cipher = cipher
        # RLock so helpers can re-enter while a caller already holds it
        self._data_lock = threading.RLock()

    def _encrypt_totp_secret(self, secret: str) -> str:
        if not secret or not self._cipher:
            return secret
        return self._cipher.encrypt(secret)

    def _decrypt_totp_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret or not self._cipher:
            return secret
        try:
            return self._cipher.decrypt(secret)
        except DecryptionError:
            self.logger.warning("totp_secret_decrypt_failed")
            return None

    def _project(
        self, user: SecondaryUser, *, include_password: bool, include_totp_secret: bool
    ) -> SecondaryUser:
        return replace(
            user,
            password=user.password if include_password else None,
            totp_secret=(
                self._decrypt_totp_secret(user.totp_secret) if include_totp_secret else None
            ),
        )

    def create_user(
        self,
        email: str,
        *,
        password: Optional[str] = None,
        username: Optional[str] = None,
        name: Optional[str] = None,
        role: str = "user",
        provider: str = "local",
        email_verified: bool = False,
    ) -> SecondaryUser:
        with self._data_lock:
            normalized = _normalize_email(email)
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = SecondaryUser(
                id=uuid.uuid4().hex,
                email=normalized,
                username=username,
                name=name,
                role=role,
                provider=provider,
                email_verified=email_verified,
                password=password,
            )
            self.users[user.id] = user
            return self._project(user, include_password=False, include_totp_secret=False)

    def find_user_by_email(
        self,
        email: str,
        *,
        include_password: bool = False,
        include_totp_secret: bool = False,
    ) -> Optional[SecondaryUser]:
        with self._data_lock:
            normalized = _normalize_email(email)
            user = next((u for u in self.users.values() if u.email == normalized), None)
            if not user:
                return None
            return self._project(
                user,
                include_password=include_password,
                include_totp_secret=include_totp_secret,
            )

    def get_user_by_id(
        self,
        user_id: str,
        *,
        include_password: bool = False,
        include_totp_secret: bool = False,
    ) -> Optional[SecondaryUser]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            return self._project(
                user,
                include_password=include_password,
                include_totp_secret=include_totp_secret,
            )

    def count_users(self) -> int:
        with self._data_lock:
            return len(self.users)

    def list_users(self, limit: int = 100) -> List[SecondaryUser]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at)
            return [
                self._project(u, include_password=False, include_totp_secret=False)
                for u in ordered[:limit]
            ]

    def enable_two_factor(self, user_id: str, secret: str) -> SecondaryUser:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found for 2fa", {"user_id": user_id})
            user.totp_secret = self._encrypt_totp_secret(secret)
            user.two_factor_enabled = True
            return self._project(user, include_password=False, include_totp_secret=False)

    def create_session(self, user_id: str) -> Tuple[SessionRecord, str]:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            self._purge_expired_sessions()
            refresh_token = secrets.token_hex(64)
            record = SessionRecord.new(
                user_id, refresh_token, ttl_minutes=self.session_ttl_minutes
            )
            self.sessions[record.id] = record
            self._session_index[record.refresh_token_hash] = record.id
            return record, refresh_token

    def _purge_expired_sessions(self) -> int:
        expired = [s.id for s in self.sessions.values() if s.is_expired()]
        for session_id in expired:
            self._drop_session(session_id)
        if expired:
            self.logger.debug("expired_sessions_purged", count=len(expired))
        return len(expired)

    def _drop_session(self, session_id: str) -> Optional[SessionRecord]:
        record = self.sessions.pop(session_id, None)
        if record is not None:
            self._session_index.pop(record.refresh_token_hash, None)
        return record

    def find_session(
        self, *, refresh_token: str, user_id: Optional[str] = None
    ) -> Optional[SessionRecord]:
        digest = hash_refresh_token(refresh_token)
        with self._data_lock:
            session_id = self._session_index.get(digest)
            record = self.sessions.get(session_id) if session_id else None
            if record is None:
                return None
            if user_id is not None and record.user_id != user_id:
                return None
            return record

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self._drop_session(session_id) is not None

    def list_user_sessions(self, user_id: str) -> List[SessionRecord]:
        with self._data_lock:
            return [s for s in self.sessions.values() if s.user_id == user_id]


class MemoryPrimaryStore:
    """In-memory stand-in for the workspace platform's users, keys and settings."""

    def __init__(self, *, multi_user_mode: bool = False) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, PrimaryUser] = {}
        self.api_keys: Dict[str, ApiKey] = {}
        self.multi_user_mode = multi_user_mode
        self._data_lock = threading.RLock()

    def is_multi_user_mode(self) -> bool:
        with self._data_lock:
            return self.multi_user_mode

    def set_multi_user_mode(self, enabled: bool) -> None:
        with self._data_lock:
            self.multi_user_mode = enabled

    def get_user(self, *, email: str) -> Optional[PrimaryUser]:
        with self._data_lock:
            normalized = _normalize_email(email)
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def create_user(
        self,
        email: str,
        *,
        username: Optional[str] = None,
        name: Optional[str] = None,
        role: str = "user",
        password: Optional[str] = None,
    ) -> PrimaryUser:
        with self._data_lock:
            normalized = _normalize_email(email)
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = PrimaryUser(
                id=str(len(self.users) + 1),
                email=normalized,
                username=username,
                name=name,
                role=role,
                password=password,
            )
            self.users[user.id] = user
            return replace(user)

    def set_suspended(self, email: str, suspended: bool) -> Optional[PrimaryUser]:
        with self._data_lock:
            normalized = _normalize_email(email)
            user = next((u for u in self.users.values() if u.email == normalized), None)
            if not user:
                return None
            user.suspended = suspended
            return replace(user)

    def create_api_key(self, created_by: Optional[str] = None) -> ApiKey:
        with self._data_lock:
            key = ApiKey(
                id=str(len(self.api_keys) + 1),
                secret=secrets.token_urlsafe(32),
                created_by=created_by,
            )
            self.api_keys[key.secret] = key
            return replace(key)

    def get_api_key(self, secret: str) -> Optional[ApiKey]:
        with self._data_lock:
            key = self.api_keys.get(secret)
            return replace(key) if key else None
