"""TOTP verification against RFC 6238 reference values."""

import base64
import hashlib
import time

from chatbridge.service.totp import TotpVerifier

# RFC 6238 Appendix B SHA-1 seed "12345678901234567890"
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode()


def test_generate_matches_rfc_reference_vectors():
    verifier = TotpVerifier(digits=8)

    assert verifier.generate(RFC_SECRET, 59) == "94287082"
    assert verifier.generate(RFC_SECRET, 1111111109) == "07081804"
    assert verifier.generate(RFC_SECRET, 1234567890) == "89005924"


def test_verify_accepts_current_code():
    verifier = TotpVerifier()
    secret = verifier.generate_secret()

    assert verifier.verify(secret, verifier.generate(secret)) is True


def test_verify_accepts_one_step_of_drift():
    verifier = TotpVerifier()
    secret = verifier.generate_secret()
    previous = verifier.generate(secret, time.time() - 30)

    assert verifier.verify(secret, previous) is True


def test_verify_rejects_stale_code():
    verifier = TotpVerifier()
    secret = verifier.generate_secret()
    stale = verifier.generate(secret, time.time() - 300)
    current_window = {
        verifier.generate(secret, time.time() + offset * 30) for offset in (-1, 0, 1)
    }

    if stale not in current_window:
        assert verifier.verify(secret, stale) is False


def test_verify_rejects_malformed_codes():
    verifier = TotpVerifier()
    secret = verifier.generate_secret()

    assert verifier.verify(secret, "") is False
    assert verifier.verify(secret, "12345") is False
    assert verifier.verify(secret, "abcdef") is False
    assert verifier.verify("", "123456") is False


def test_invalid_secret_never_verifies():
    verifier = TotpVerifier()
    assert verifier.generate("not base32 !!") == ""
    assert verifier.verify("not base32 !!", "123456") is False


def test_digest_is_configurable():
    sha256 = TotpVerifier(digest=hashlib.sha256)
    secret = TotpVerifier.generate_secret()

    assert len(sha256.generate(secret, 59)) == 6


def test_provisioning_uri_contains_secret_and_issuer():
    verifier = TotpVerifier()
    uri = verifier.provisioning_uri("ABCDEFGH", "admin@example.com", "chatbridge")

    assert uri.startswith("otpauth://totp/chatbridge%3Aadmin%40example.com?")
    assert "secret=ABCDEFGH" in uri
    assert "issuer=chatbridge" in uri
