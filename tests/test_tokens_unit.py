"""Unit tests for the HS256 signer and the shared access-token minter."""

import base64
import json
import time
from datetime import timedelta
from types import SimpleNamespace

import pytest

from chatbridge.service.crypto import DecryptionError, EncryptionUtility
from chatbridge.service.tokens import HmacTokenSigner, TokenMinter

SECRET = "unit-test-signing-secret"


@pytest.fixture
def signer():
    return HmacTokenSigner(SECRET)


@pytest.fixture
def encryption():
    return EncryptionUtility("unit-test-encryption-key")


@pytest.fixture
def minter(signer, encryption):
    return TokenMinter(signer, encryption, SECRET)


@pytest.fixture
def user():
    return SimpleNamespace(id="user-1", email="user@example.com", role="user")


def _decode_unverified(token: str) -> dict:
    payload = token.split(".")[1]
    padding = "=" * ((4 - len(payload) % 4) % 4)
    return json.loads(base64.urlsafe_b64decode(payload + padding))


class TestHmacTokenSigner:
    def test_sign_then_verify_returns_claims(self, signer):
        token = signer.sign({"id": "abc"}, timedelta(minutes=5))
        claims = signer.verify(token)

        assert claims["id"] == "abc"
        assert claims["exp"] - claims["iat"] == 300

    def test_verify_rejects_tampered_payload(self, signer):
        token = signer.sign({"id": "abc", "role": "user"}, timedelta(minutes=5))
        header, _, signature = token.split(".")
        forged = base64.urlsafe_b64encode(
            json.dumps({"id": "abc", "role": "admin", "exp": time.time() + 60}).encode()
        ).decode().rstrip("=")

        assert signer.verify(f"{header}.{forged}.{signature}") is None

    def test_verify_rejects_other_secret(self, signer):
        token = HmacTokenSigner("another-secret").sign({"id": "abc"}, timedelta(minutes=5))
        assert signer.verify(token) is None

    def test_verify_rejects_expired_token(self, signer):
        token = signer.sign({"id": "abc"}, timedelta(seconds=-1))
        assert signer.verify(token) is None

    def test_verify_rejects_none_algorithm(self, signer):
        token = signer.sign({"id": "abc"}, timedelta(minutes=5))
        _, payload, signature = token.split(".")
        header = base64.urlsafe_b64encode(
            json.dumps({"alg": "none", "typ": "JWT"}).encode()
        ).decode().rstrip("=")

        assert signer.verify(f"{header}.{payload}.{signature}") is None

    def test_verify_non_ascii_signature_returns_none(self, signer):
        token = signer.sign({"id": "abc"}, timedelta(minutes=5))
        header, payload, _ = token.split(".")

        assert signer.verify(f"{header}.{payload}.\u00e9\u00e9") is None
        assert signer.verify(f"\u00e9{token}") is None

    @pytest.mark.parametrize("garbage", ["", "not-a-token", "a.b", "a.b.c.d"])
    def test_verify_garbage_returns_none(self, signer, garbage):
        assert signer.verify(garbage) is None

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            HmacTokenSigner("")


class TestTokenMinter:
    def test_access_token_carries_identity_and_passphrase(self, minter, signer, user):
        token = minter.mint(user)
        claims = signer.verify(token)

        assert claims["id"] == user.id
        assert claims["email"] == user.email
        assert claims["role"] == user.role
        assert isinstance(claims["p"], str)
        assert "temp" not in claims

    def test_access_token_lives_for_a_day(self, minter, user):
        claims = _decode_unverified(minter.mint(user))
        assert claims["exp"] - claims["iat"] == 24 * 60 * 60

    def test_passphrase_claim_decrypts_to_secret_pair(self, minter, encryption, signer, user):
        claims = signer.verify(minter.mint(user))

        assert encryption.decrypt(claims["p"]) == f"{SECRET}:{SECRET}"
        assert minter.passphrase_matches(claims) is True

    def test_passphrase_mismatch_detected(self, minter, encryption):
        forged = {"p": encryption.encrypt("wrong:pair")}
        assert minter.passphrase_matches(forged) is False
        assert minter.passphrase_matches({"p": "not-ciphertext"}) is False
        assert minter.passphrase_matches({}) is False

    def test_step_up_token_is_temporary_and_short_lived(self, minter, signer):
        token = minter.mint_step_up("user-1")
        claims = signer.verify(token)

        assert claims["id"] == "user-1"
        assert claims["temp"] is True
        assert claims["exp"] - claims["iat"] == 5 * 60
        assert "p" not in claims


class TestEncryptionUtility:
    def test_ciphertext_differs_per_call(self, encryption):
        assert encryption.encrypt("value") != encryption.encrypt("value")

    def test_decrypt_with_other_key_fails(self, encryption):
        ciphertext = EncryptionUtility("different-key").encrypt("value")
        with pytest.raises(DecryptionError):
            encryption.decrypt(ciphertext)
