from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from chatbridge.logging import get_logger
from chatbridge.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
)
from chatbridge.service.tokens import TokenMinter, TokenSigner
from chatbridge.service.totp import TOTPVerifier
from chatbridge.storage.errors import ConstraintViolation
from chatbridge.storage.models import (
    PrimaryUser,
    SecondaryUser,
    SessionRecord,
    UnifiedUser,
)

logger = get_logger(__name__)

STEP_UP_FAILED = "Invalid token or code"


class SecondaryUserStore(Protocol):
    def find_user_by_email(
        self,
        email: str,
        *,
        include_password: bool = False,
        include_totp_secret: bool = False,
    ) -> Optional[SecondaryUser]: ...

    def get_user_by_id(
        self,
        user_id: str,
        *,
        include_password: bool = False,
        include_totp_secret: bool = False,
    ) -> Optional[SecondaryUser]: ...

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
    ) -> SecondaryUser: ...

    def count_users(self) -> int: ...

    def list_users(self, limit: int = 100) -> List[SecondaryUser]: ...


class SecondarySessionStore(Protocol):
    def create_session(self, user_id: str) -> Tuple[SessionRecord, str]: ...

    def find_session(
        self, *, refresh_token: str, user_id: Optional[str] = None
    ) -> Optional[SessionRecord]: ...

    def delete_session(self, session_id: str) -> bool: ...


class PrimaryUserStore(Protocol):
    def get_user(self, *, email: str) -> Optional[PrimaryUser]: ...

    def create_user(
        self,
        email: str,
        *,
        username: Optional[str] = None,
        name: Optional[str] = None,
        role: str = "user",
        password: Optional[str] = None,
    ) -> PrimaryUser: ...

    def is_multi_user_mode(self) -> bool: ...

    def set_suspended(self, email: str, suspended: bool) -> Optional[PrimaryUser]: ...


@dataclass
class IssuedSession:
    """Access token plus the refresh-bound session backing it."""

    token: str
    user: SecondaryUser
    session: SessionRecord
    refresh_token: str


@dataclass
class StepUpChallenge:
    temp_token: str
    user: SecondaryUser


@dataclass
class MirrorStatus:
    user: SecondaryUser
    primary_user: Optional[PrimaryUser]
    created: bool = False

    @property
    def mirrored(self) -> bool:
        return self.primary_user is not None


class AuthService:
    """Login, registration, step-up and refresh across both user stores.

    The secondary store is canonical for identity, passwords and sessions;
    the primary store is a best-effort mirror reconciled by
    :meth:`ensure_mirrored`.
    """

    def __init__(
        self,
        *,
        secondary_users: SecondaryUserStore,
        sessions: SecondarySessionStore,
        primary_users: PrimaryUserStore,
        signer: TokenSigner,
        minter: TokenMinter,
        totp: TOTPVerifier,
        password_hasher: Optional[PasswordHasher] = None,
        email_verification_required: bool = False,
    ) -> None:
        self.secondary_users = secondary_users
        self.sessions = sessions
        self.primary_users = primary_users
        self.signer = signer
        self.minter = minter
        self.totp = totp
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        self.email_verification_required = email_verification_required
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _password_matches(self, user: SecondaryUser, password: str) -> bool:
        if not user.password:
            self.logger.warning("password_record_missing", user_id=user.id)
            return False
        try:
            return self._pwd_hasher.verify(user.password, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unusable", user_id=user.id)
            return False

    async def ensure_mirrored(self, user: SecondaryUser) -> MirrorStatus:
        """Make sure the primary store holds a record for ``user``.

        Never raises: a failed lookup or create is logged and reported as
        unmirrored so the next call can try again.
        """
        try:
            existing = self.primary_users.get_user(email=user.email)
        except Exception as exc:
            self.logger.warning(
                "mirror_lookup_failed", user_id=user.id, error=str(exc)
            )
            return MirrorStatus(user=user, primary_user=None)
        if existing:
            return MirrorStatus(user=user, primary_user=existing)

        password = user.password
        if password is None:
            try:
                with_password = self.secondary_users.get_user_by_id(
                    user.id, include_password=True
                )
            except Exception as exc:
                self.logger.warning(
                    "mirror_password_lookup_failed", user_id=user.id, error=str(exc)
                )
                return MirrorStatus(user=user, primary_user=None)
            password = with_password.password if with_password else None
        try:
            created = self.primary_users.create_user(
                user.email,
                username=user.display_username,
                name=user.display_name,
                role=user.role,
                password=password,
            )
        except ConstraintViolation:
            # Another request mirrored the same email first
            try:
                existing = self.primary_users.get_user(email=user.email)
            except Exception as exc:
                self.logger.warning(
                    "mirror_lookup_failed", user_id=user.id, error=str(exc)
                )
                return MirrorStatus(user=user, primary_user=None)
            return MirrorStatus(user=user, primary_user=existing)
        except Exception as exc:
            self.logger.warning(
                "mirror_create_failed", user_id=user.id, error=str(exc)
            )
            return MirrorStatus(user=user, primary_user=None)
        self.logger.info("mirror_created", user_id=user.id, primary_user_id=created.id)
        return MirrorStatus(user=user, primary_user=created, created=True)

    async def _open_session(self, user: SecondaryUser) -> IssuedSession:
        record, refresh_token = self.sessions.create_session(user.id)
        await self.ensure_mirrored(user)
        token = self.minter.mint(user)
        self.logger.info("session_created", user_id=user.id, session_id=record.id)
        public = self.secondary_users.get_user_by_id(user.id) or user
        return IssuedSession(
            token=token, user=public, session=record, refresh_token=refresh_token
        )

    async def login(self, email: str, password: str) -> IssuedSession | StepUpChallenge:
        user = self.secondary_users.find_user_by_email(email, include_password=True)
        if not user:
            self.logger.info("login_failed", reason="unknown_user")
            raise InvalidCredentialsError()
        if not self._password_matches(user, password):
            self.logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            raise InvalidCredentialsError()

        if user.two_factor_enabled:
            self.logger.info("login_step_up_required", user_id=user.id)
            return StepUpChallenge(temp_token=self.minter.mint_step_up(user.id), user=user)
        return await self._open_session(user)

    async def register(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        username: Optional[str] = None,
    ) -> SecondaryUser:
        if self.secondary_users.find_user_by_email(email):
            raise ConflictError("User with this email already exists")
        if not self.primary_users.is_multi_user_mode():
            raise ForbiddenError("Registration is not allowed in single-user mode")

        is_first_user = self.secondary_users.count_users() == 0
        role = "admin" if is_first_user else "user"
        resolved_username = username or email
        try:
            user = self.secondary_users.create_user(
                email,
                password=self.hash_password(password),
                username=resolved_username,
                name=name or resolved_username,
                role=role,
                provider="local",
                email_verified=not self.email_verification_required,
            )
        except ConstraintViolation:
            # Lost a race with a concurrent registration for the same email
            raise ConflictError("User with this email already exists")
        self.logger.info("user_registered", user_id=user.id, role=role)

        status = await self.ensure_mirrored(user)
        if not status.mirrored:
            self.logger.warning("registration_mirror_pending", user_id=user.id)
        return user

    async def verify_step_up(self, temp_token: str, code: str) -> IssuedSession:
        """Exchange a step-up token and TOTP code for a session.

        Every failure raises the same error so callers cannot tell a bad
        token from an unknown user or a wrong code.
        """
        claims = self.signer.verify(temp_token)
        if not claims or not claims.get("id") or claims.get("temp") is not True:
            self.logger.info("step_up_failed", reason="invalid_token")
            raise AuthenticationError(STEP_UP_FAILED)
        user = self.secondary_users.get_user_by_id(
            str(claims["id"]), include_totp_secret=True
        )
        if not user:
            self.logger.info("step_up_failed", reason="unknown_user")
            raise AuthenticationError(STEP_UP_FAILED)
        if not user.totp_secret or not self.totp.verify(user.totp_secret, code):
            self.logger.info("step_up_failed", reason="code_mismatch", user_id=user.id)
            raise AuthenticationError(STEP_UP_FAILED)
        return await self._open_session(user)

    async def refresh(self, refresh_token: Optional[str]) -> Tuple[str, SecondaryUser]:
        if not refresh_token:
            raise AuthenticationError("Refresh token not provided")
        if not isinstance(refresh_token, str) or len(refresh_token) > 512:
            raise AuthenticationError("Invalid refresh token")

        record = self.sessions.find_session(refresh_token=refresh_token)
        if not record or record.is_expired(self._now()):
            raise AuthenticationError("Refresh token expired or not found")
        user = self.secondary_users.get_user_by_id(record.user_id)
        if not user:
            raise AuthenticationError("User not found")

        await self.ensure_mirrored(user)
        self.logger.info("access_token_refreshed", user_id=user.id, session_id=record.id)
        return self.minter.mint(user), user

    async def logout(self, user_id: Optional[str], refresh_token: Optional[str]) -> bool:
        """Delete the session matching ``user_id`` and ``refresh_token``.

        Returns whether a session was removed; a missing match is not an error.
        """
        if not user_id or not refresh_token:
            return False
        record = self.sessions.find_session(refresh_token=refresh_token, user_id=user_id)
        if not record:
            return False
        removed = self.sessions.delete_session(record.id)
        self.logger.info("session_deleted", user_id=user_id, session_id=record.id)
        return removed

    def verify_token(self, token: Optional[str]) -> Optional[UnifiedUser]:
        claims = self.signer.verify(token) if token else None
        if not claims:
            return None
        # Step-up tokens only unlock the 2FA endpoint
        if claims.get("temp"):
            return None
        if not claims.get("id") or not self.minter.passphrase_matches(claims):
            return None
        user = self.secondary_users.get_user_by_id(str(claims["id"]))
        if not user:
            return None
        primary = self.primary_users.get_user(email=user.email)
        return UnifiedUser.from_records(user, primary)

    async def mirror_user(self, user_id: str) -> MirrorStatus:
        user = self.secondary_users.get_user_by_id(user_id)
        if not user:
            raise NotFoundError("User not found")
        return await self.ensure_mirrored(user)

    def set_suspended(self, user_id: str, suspended: bool) -> PrimaryUser:
        user = self.secondary_users.get_user_by_id(user_id)
        if not user:
            raise NotFoundError("User not found")
        updated = self.primary_users.set_suspended(user.email, suspended)
        if not updated:
            raise NotFoundError("User is not mirrored")
        self.logger.info("user_suspension_changed", user_id=user_id, suspended=suspended)
        return updated

    def list_users(self, limit: int = 100) -> List[dict[str, Any]]:
        entries: List[dict[str, Any]] = []
        for user in self.secondary_users.list_users(limit=limit):
            primary = self.primary_users.get_user(email=user.email)
            entries.append(
                {
                    **user.to_public(),
                    "mirrored": primary is not None,
                    "suspended": bool(primary and primary.suspended),
                }
            )
        return entries
