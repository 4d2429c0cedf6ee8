from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_refresh_token(refresh_token: str) -> str:
    """Digest under which a refresh token is stored and looked up."""
    return hashlib.sha256(refresh_token.encode()).hexdigest()


@dataclass
class SecondaryUser:
    """Canonical identity record owned by the secondary (chat) platform.

    ``password`` and ``totp_secret`` are only populated when a lookup asks
    for them explicitly.
    """

    id: str
    email: str
    username: Optional[str] = None
    name: Optional[str] = None
    role: str = "user"
    provider: str = "local"
    email_verified: bool = False
    two_factor_enabled: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    password: Optional[str] = None
    totp_secret: Optional[str] = None

    @property
    def display_username(self) -> str:
        return self.username or self.email

    @property
    def display_name(self) -> str:
        return self.name or self.username or self.email

    def to_public(self) -> Dict[str, Any]:
        """Wire representation with credential fields stripped."""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.display_username,
            "name": self.display_name,
            "role": self.role,
            "provider": self.provider or "local",
            "emailVerified": self.email_verified,
            "twoFactorEnabled": self.two_factor_enabled,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class SessionRecord:
    id: str
    user_id: str
    refresh_token_hash: str
    expiration: datetime
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls, user_id: str, refresh_token: str, ttl_minutes: int = 7 * 24 * 60
    ) -> "SessionRecord":
        now = _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token_hash=hash_refresh_token(refresh_token),
            expiration=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        current = now or _utcnow()
        expiration = self.expiration
        if expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)
        return expiration < current


@dataclass
class PrimaryUser:
    """Mirrored profile in the primary (workspace) platform, keyed by email."""

    id: str
    email: str
    username: Optional[str] = None
    name: Optional[str] = None
    role: str = "user"
    password: Optional[str] = None
    suspended: bool = False
    created_at: datetime = field(default_factory=_utcnow)

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "name": self.name,
            "role": self.role,
            "suspended": self.suspended,
        }


@dataclass
class ApiKey:
    id: str
    secret: str
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class UnifiedUser:
    """Per-request view of a user across both stores; never persisted."""

    id: str
    email: str
    name: str
    username: str
    role: str
    provider: str
    email_verified: bool
    two_factor_enabled: bool
    secondary_user: SecondaryUser
    primary_user: Optional[PrimaryUser] = None

    @classmethod
    def from_records(
        cls, secondary: SecondaryUser, primary: Optional[PrimaryUser]
    ) -> "UnifiedUser":
        return cls(
            id=secondary.id,
            email=secondary.email,
            name=secondary.display_name,
            username=secondary.display_username,
            role=secondary.role,
            provider=secondary.provider or "local",
            email_verified=bool(secondary.email_verified),
            two_factor_enabled=bool(secondary.two_factor_enabled),
            secondary_user=secondary,
            primary_user=primary,
        )

    @property
    def suspended(self) -> bool:
        return bool(self.primary_user and self.primary_user.suspended)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "username": self.username,
            "role": self.role,
            "provider": self.provider,
            "emailVerified": self.email_verified,
            "twoFactorEnabled": self.two_factor_enabled,
            "primaryUser": self.primary_user.to_public() if self.primary_user else None,
        }
