"""
tests/test_tokens.py -- Unit tests for auth/tokens.py.

Covers:
  - bcrypt hashing: salted, verifies, rejects wrong and malformed input
  - 72-byte truncation agrees between hash and verify
  - JWT claims, jti uniqueness, undifferentiated decode failure
  - signature-only decode (verify_exp=False) for logout
  - HMAC token hashing and Bearer header parsing
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from jose import jwt

from auth.tokens import (
    create_access_token,
    decode_access_token,
    equalize_timing,
    extract_bearer,
    hash_password,
    hash_token,
    token_hashes_match,
    verify_password,
)
from core.config import get_settings


def _in_one_hour() -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=1)


def _expired_token(**overrides) -> str:
    past = datetime.now(timezone.utc) - timedelta(hours=2)
    claims = {
        "sub": "alice",
        "user_id": 1,
        "username": "alice",
        "role": "developer",
        "jti": "abc123",
        "iat": past,
        "exp": past + timedelta(hours=1),
    }
    claims.update(overrides)
    return jwt.encode(claims, get_settings().secret_key, algorithm="HS256")


class TestPasswordHashing:
    def test_hash_verifies_and_is_salted(self):
        first = hash_password("Password123")
        second = hash_password("Password123")
        assert first != second
        assert first.startswith("$2")
        assert verify_password("Password123", first)
        assert verify_password("Password123", second)

    def test_wrong_password_rejected(self):
        assert not verify_password("password123", hash_password("Password123"))

    def test_malformed_stored_hash_is_a_mismatch(self):
        """A corrupt hash returns False; it never raises."""
        assert verify_password("Password123", "not-a-bcrypt-hash") is False
        assert verify_password("Password123", "") is False

    def test_passwords_longer_than_72_bytes_hash_and_verify(self):
        long_pw = "Aa1" + "x" * 100
        hashed = hash_password(long_pw)
        assert verify_password(long_pw, hashed)

    def test_equalize_timing_never_raises(self):
        equalize_timing("anything")
        equalize_timing("")


class TestAccessTokens:
    def test_claims_round_trip(self):
        issued = create_access_token(7, "alice", "admin")
        claims = decode_access_token(issued.token)
        assert claims is not None
        assert claims["user_id"] == 7
        assert claims["username"] == "alice"
        assert claims["sub"] == "alice"
        assert claims["role"] == "admin"
        assert claims["jti"] == issued.jti

    def test_default_lifetime_is_one_hour(self):
        issued = create_access_token(1, "alice", "developer")
        assert (issued.expires_at - issued.issued_at).total_seconds() == get_settings().token_expire_seconds

    def test_two_tokens_in_the_same_second_differ(self):
        a = create_access_token(1, "alice", "developer")
        b = create_access_token(1, "alice", "developer")
        assert a.jti != b.jti
        assert a.token != b.token

    def test_expired_and_tampered_tokens_are_indistinguishable(self):
        """Both failures produce None -- the caller cannot tell which check failed."""
        valid = create_access_token(1, "alice", "developer").token
        head, sig = valid.rsplit(".", 1)
        tampered = f"{head}.{'B' if sig[0] == 'A' else 'A'}{sig[1:]}"
        assert decode_access_token(_expired_token()) is None
        assert decode_access_token(tampered) is None
        assert decode_access_token("garbage") is None

    def test_wrong_key_rejected(self):
        forged = jwt.encode(
            {"user_id": 1, "username": "a", "role": "admin", "jti": "x", "exp": _in_one_hour()},
            "not-the-server-key-" * 4,
            algorithm="HS256",
        )
        assert decode_access_token(forged) is None

    def test_missing_claim_rejected(self):
        token = jwt.encode(
            {"user_id": 1, "username": "a", "exp": _in_one_hour()},
            get_settings().secret_key,
            algorithm="HS256",
        )
        assert decode_access_token(token) is None

    def test_non_integer_user_id_rejected(self):
        token = jwt.encode(
            {"user_id": "1", "username": "a", "role": "admin", "jti": "x", "exp": _in_one_hour()},
            get_settings().secret_key,
            algorithm="HS256",
        )
        assert decode_access_token(token) is None

    def test_signature_only_decode_accepts_expired_token(self):
        claims = decode_access_token(_expired_token(), verify_exp=False)
        assert claims is not None
        assert claims["user_id"] == 1


class TestTokenHashing:
    def test_hash_is_deterministic_and_keyed(self):
        assert hash_token("abc") == hash_token("abc")
        assert hash_token("abc") != hash_token("abd")
        assert len(hash_token("abc")) == 64

    def test_constant_time_match(self):
        h = hash_token("abc")
        assert token_hashes_match(h, hash_token("abc"))
        assert not token_hashes_match(h, hash_token("xyz"))


class TestExtractBearer:
    def test_valid_header(self):
        assert extract_bearer("Bearer abc.def") == "abc.def"
        assert extract_bearer("bearer abc") == "abc"

    def test_missing_or_wrong_scheme(self):
        assert extract_bearer(None) is None
        assert extract_bearer("") is None
        assert extract_bearer("Basic dXNlcjpwYXNz") is None
        assert extract_bearer("Bearer ") is None
        assert extract_bearer("Bearer") is None
