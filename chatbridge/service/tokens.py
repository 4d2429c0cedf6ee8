from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from datetime import timedelta
from typing import Any, Optional, Protocol

from chatbridge.logging import get_logger
from chatbridge.service.crypto import DecryptionError, EncryptionUtility

logger = get_logger(__name__)


class TokenSigner(Protocol):
    def sign(self, payload: dict[str, Any], expires_in: timedelta) -> str: ...

    def verify(self, token: str) -> Optional[dict[str, Any]]: ...


class TokenSigningError(Exception):
    """Raised when a token cannot be produced."""


class HmacTokenSigner:
    """HS256 JWTs signed with a single shared secret.

    ``verify`` returns the claims or ``None``; it never raises for bad input.
    """

    def __init__(self, secret: str, *, leeway_seconds: int = 0) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self._secret = secret.encode()
        self._leeway = leeway_seconds

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def sign(self, payload: dict[str, Any], expires_in: timedelta) -> str:
        now = int(time.time())
        claims = {**payload, "iat": now, "exp": now + int(expires_in.total_seconds())}
        header = {"alg": "HS256", "typ": "JWT"}
        try:
            header_enc = self._encode_segment(
                json.dumps(header, separators=(",", ":")).encode()
            )
            payload_enc = self._encode_segment(
                json.dumps(claims, separators=(",", ":")).encode()
            )
        except (TypeError, ValueError) as exc:
            raise TokenSigningError("token claims are not serialisable") from exc
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: str) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        # Compact JWTs are base64url only
        if not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._leeway:
            return None
        return payload


class TokenMinter:
    """Builds the one access token both platforms accept.

    The ``p`` claim carries the encrypted secret pair the primary platform
    checks; the signature alone is what the secondary platform checks.
    """

    def __init__(
        self,
        signer: TokenSigner,
        encryption: EncryptionUtility,
        shared_secret: str,
        *,
        access_ttl: timedelta = timedelta(hours=24),
        step_up_ttl: timedelta = timedelta(minutes=5),
    ) -> None:
        self.signer = signer
        self.encryption = encryption
        self._passphrase = f"{shared_secret}:{shared_secret}"
        self.access_ttl = access_ttl
        self.step_up_ttl = step_up_ttl

    def mint(self, user: Any) -> str:
        payload = {
            "id": user.id,
            "email": user.email,
            "role": user.role,
            "p": self.encryption.encrypt(self._passphrase),
        }
        return self.signer.sign(payload, self.access_ttl)

    def mint_step_up(self, user_id: str) -> str:
        return self.signer.sign({"id": user_id, "temp": True}, self.step_up_ttl)

    def passphrase_matches(self, claims: dict[str, Any]) -> bool:
        encrypted = claims.get("p")
        if not isinstance(encrypted, str):
            return False
        try:
            decrypted = self.encryption.decrypt(encrypted)
        except DecryptionError:
            return False
        return hmac.compare_digest(decrypted, self._passphrase)
