from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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


class _PooledStore:
    """Shared pool handling for both Postgres-backed stores."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )

    def _connect(self):
        return self.pool.connection()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()


class PostgresSecondaryStore(_PooledStore):
    """Chat platform users and refresh-bound sessions in Postgres."""

    def __init__(
        self,
        dsn: str,
        *,
        cipher: Optional[EncryptionUtility] = None,
        session_ttl_minutes: int = 7 * 24 * 60,
    ) -> None:
        super().__init__(dsn)
        self._cipher = cipher
        self.session_ttl_minutes = session_ttl_minutes
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        """Create the ``chat_user`` and ``chat_session`` tables if missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chat_user (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    username TEXT,
                    name TEXT,
                    role TEXT NOT NULL DEFAULT 'user',
                    provider TEXT NOT NULL DEFAULT 'local',
                    password TEXT,
                    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
                    totp_secret TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chat_session (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL REFERENCES chat_user(id) ON DELETE CASCADE,
                    refresh_token_hash TEXT NOT NULL,
                    expiration TIMESTAMPTZ NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS chat_session_refresh_idx ON chat_session (refresh_token_hash)"
            )

    def _decrypt_totp_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret or not self._cipher:
            return secret
        try:
            return self._cipher.decrypt(secret)
        except DecryptionError:
            self.logger.warning("totp_secret_decrypt_failed")
            return None

    def _user_from_row(
        self,
        row: Dict[str, Any],
        *,
        include_password: bool = False,
        include_totp_secret: bool = False,
    ) -> SecondaryUser:
        return SecondaryUser(
            id=str(row["id"]),
            email=row["email"],
            username=row.get("username"),
            name=row.get("name"),
            role=row.get("role") or "user",
            provider=row.get("provider") or "local",
            email_verified=bool(row.get("email_verified")),
            two_factor_enabled=bool(row.get("two_factor_enabled")),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            password=row.get("password") if include_password else None,
            totp_secret=(
                self._decrypt_totp_secret(row.get("totp_secret"))
                if include_totp_secret
                else None
            ),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> SessionRecord:
        return SessionRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            expiration=row["expiration"],
            created_at=row.get("created_at") or datetime.now(timezone.utc),
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
        user_id = uuid.uuid4().hex
        normalized = _normalize_email(email)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO chat_user (id, email, username, name, role, provider, password, email_verified)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, normalized, username, name, role, provider, password, email_verified),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def find_user_by_email(
        self,
        email: str,
        *,
        include_password: bool = False,
        include_totp_secret: bool = False,
    ) -> Optional[SecondaryUser]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM chat_user WHERE email = %s", (_normalize_email(email),)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(
            row, include_password=include_password, include_totp_secret=include_totp_secret
        )

    def get_user_by_id(
        self,
        user_id: str,
        *,
        include_password: bool = False,
        include_totp_secret: bool = False,
    ) -> Optional[SecondaryUser]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM chat_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(
            row, include_password=include_password, include_totp_secret=include_totp_secret
        )

    def count_users(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM chat_user").fetchone()
        return int(row["total"]) if row else 0

    def list_users(self, limit: int = 100) -> List[SecondaryUser]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM chat_user ORDER BY created_at ASC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def enable_two_factor(self, user_id: str, secret: str) -> SecondaryUser:
        stored = self._cipher.encrypt(secret) if self._cipher else secret
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE chat_user SET totp_secret = %s, two_factor_enabled = TRUE
                WHERE id = %s RETURNING *
                """,
                (stored, user_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user not found for 2fa", {"user_id": user_id})
        return self._user_from_row(row)

    def create_session(self, user_id: str) -> Tuple[SessionRecord, str]:
        refresh_token = secrets.token_hex(64)
        record = SessionRecord.new(
            user_id, refresh_token, ttl_minutes=self.session_ttl_minutes
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO chat_session (id, user_id, refresh_token_hash, expiration, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.refresh_token_hash,
                        record.expiration,
                        record.created_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return record, refresh_token

    def find_session(
        self, *, refresh_token: str, user_id: Optional[str] = None
    ) -> Optional[SessionRecord]:
        digest = hash_refresh_token(refresh_token)
        with self._connect() as conn:
            if user_id is not None:
                row = conn.execute(
                    "SELECT * FROM chat_session WHERE refresh_token_hash = %s AND user_id = %s",
                    (digest, user_id),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM chat_session WHERE refresh_token_hash = %s",
                    (digest,),
                ).fetchone()
        if not row:
            return None
        return self._session_from_row(row)

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM chat_session WHERE id = %s", (session_id,))
            return bool(cur.rowcount)

    def list_user_sessions(self, user_id: str) -> List[SessionRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM chat_session WHERE user_id = %s ORDER BY created_at ASC",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]


class PostgresPrimaryStore(_PooledStore):
    """Workspace platform users, API keys and the multi-user flag in Postgres."""

    def __init__(self, dsn: str) -> None:
        super().__init__(dsn)
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workspace_user (
                    id SERIAL PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    username TEXT,
                    name TEXT,
                    role TEXT NOT NULL DEFAULT 'user',
                    password TEXT,
                    suspended BOOLEAN NOT NULL DEFAULT FALSE,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workspace_api_key (
                    id SERIAL PRIMARY KEY,
                    secret TEXT NOT NULL UNIQUE,
                    created_by TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS system_settings (
                    label TEXT PRIMARY KEY,
                    value TEXT,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> PrimaryUser:
        return PrimaryUser(
            id=str(row["id"]),
            email=row["email"],
            username=row.get("username"),
            name=row.get("name"),
            role=row.get("role") or "user",
            password=row.get("password"),
            suspended=bool(row.get("suspended")),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    @staticmethod
    def _key_from_row(row: Dict[str, Any]) -> ApiKey:
        return ApiKey(
            id=str(row["id"]),
            secret=row["secret"],
            created_by=row.get("created_by"),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    def is_multi_user_mode(self) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM system_settings WHERE label = 'multi_user_mode'"
            ).fetchone()
        if not row:
            return False
        return str(row.get("value")).lower() == "true"

    def set_multi_user_mode(self, enabled: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO system_settings (label, value, updated_at)
                VALUES ('multi_user_mode', %s, now())
                ON CONFLICT (label) DO UPDATE SET value = EXCLUDED.value, updated_at = now()
                """,
                ("true" if enabled else "false",),
            )

    def get_user(self, *, email: str) -> Optional[PrimaryUser]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workspace_user WHERE email = %s", (_normalize_email(email),)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def create_user(
        self,
        email: str,
        *,
        username: Optional[str] = None,
        name: Optional[str] = None,
        role: str = "user",
        password: Optional[str] = None,
    ) -> PrimaryUser:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO workspace_user (email, username, name, role, password)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (_normalize_email(email), username, name, role, password),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def set_suspended(self, email: str, suspended: bool) -> Optional[PrimaryUser]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE workspace_user SET suspended = %s WHERE email = %s RETURNING *",
                (suspended, _normalize_email(email)),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def create_api_key(self, created_by: Optional[str] = None) -> ApiKey:
        with self._connect() as conn:
            row = conn.execute(
                "INSERT INTO workspace_api_key (secret, created_by) VALUES (%s, %s) RETURNING *",
                (secrets.token_urlsafe(32), created_by),
            ).fetchone()
        return self._key_from_row(row)

    def get_api_key(self, secret: str) -> Optional[ApiKey]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workspace_api_key WHERE secret = %s", (secret,)
            ).fetchone()
        if not row:
            return None
        return self._key_from_row(row)
