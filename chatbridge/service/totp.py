from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import time
from typing import Optional, Protocol
from urllib.parse import quote, urlencode

from chatbridge.logging import get_logger

logger = get_logger(__name__)


class TOTPVerifier(Protocol):
    def verify(self, secret: str, token: str) -> bool: ...


class TotpVerifier:
    """RFC 6238 time-based one-time passwords over base32 secrets.

    Defaults (SHA-1, 6 digits, 30 s) match what authenticator apps expect.
    """

    def __init__(
        self,
        *,
        interval: int = 30,
        digits: int = 6,
        window: int = 1,
        digest=hashlib.sha1,
    ) -> None:
        self.interval = interval
        self.digits = digits
        self.window = window
        self.digest = digest

    @staticmethod
    def generate_secret(length: int = 20) -> str:
        return base64.b32encode(secrets.token_bytes(length)).decode().rstrip("=")

    def provisioning_uri(self, secret: str, account: str, issuer: str) -> str:
        label = quote(f"{issuer}:{account}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": issuer,
                "digits": self.digits,
                "period": self.interval,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    def generate(self, secret: str, timestamp: Optional[float] = None) -> str:
        cleaned = secret.replace(" ", "").upper()
        padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (ValueError, TypeError):
            logger.warning("totp_secret_invalid")
            return ""
        moment = time.time() if timestamp is None else timestamp
        counter = int(moment // self.interval).to_bytes(8, "big")
        mac = hmac.new(key, counter, self.digest).digest()
        offset = mac[-1] & 0x0F
        code_int = (int.from_bytes(mac[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def verify(self, secret: str, token: str) -> bool:
        if not secret or not token:
            return False
        candidate = str(token).strip()
        if len(candidate) != self.digits or not candidate.isdigit():
            return False
        now = time.time()
        # One adjacent step either side absorbs small clock drift
        for offset in range(-self.window, self.window + 1):
            generated = self.generate(secret, now + offset * self.interval)
            if generated and hmac.compare_digest(generated, candidate):
                return True
        return False
