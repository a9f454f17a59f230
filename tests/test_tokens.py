"""Unit tests for auth/tokens.py -- password hashing and JWT handling.

Covers:
- hash_password() / verify_password() round trip and mismatch
- verify_password() treats a malformed stored hash as a mismatch
- decode_token() enforces the type claim in both directions
- decode_token() rejects tampered, expired, and foreign-key tokens
- two tokens minted for one user in the same second differ (jti)
- authenticate_user(): success, wrong password, unknown email, inactive user
"""

from datetime import datetime, timedelta, timezone

from jose import jwt

from auth.models import User
from auth.tokens import (
    ACCESS,
    REFRESH,
    authenticate_user,
    create_access_token,
    create_refresh_token,
    decode_access_token,
    decode_token,
    hash_password,
    issue_token_pair,
    verify_password,
)
from core.config import get_settings


class TestPasswordHashing:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("secret1")
        assert hashed != "secret1"
        assert verify_password("secret1", hashed) is True

    def test_wrong_password_rejected(self) -> None:
        hashed = hash_password("secret1")
        assert verify_password("secret2", hashed) is False

    def test_hashes_are_salted(self) -> None:
        assert hash_password("secret1") != hash_password("secret1")

    def test_malformed_hash_is_mismatch(self) -> None:
        assert verify_password("secret1", "not-a-bcrypt-hash") is False


class TestJwt:
    def test_access_token_round_trip(self) -> None:
        token = create_access_token(7, "ana@x.com")
        payload = decode_access_token(token)
        assert payload is not None
        assert payload["user_id"] == 7
        assert payload["sub"] == "7"
        assert payload["email"] == "ana@x.com"
        assert payload["type"] == ACCESS

    def test_refresh_token_is_not_an_access_token(self) -> None:
        token, _ = create_refresh_token(7, "ana@x.com")
        assert decode_access_token(token) is None
        assert decode_token(token, REFRESH)["user_id"] == 7

    def test_access_token_is_not_a_refresh_token(self) -> None:
        token = create_access_token(7, "ana@x.com")
        assert decode_token(token, REFRESH) is None

    def test_tampered_token_rejected(self) -> None:
        token = create_access_token(7, "ana@x.com")
        header, payload, signature = token.split(".")
        flipped = ("A" if signature[0] != "A" else "B") + signature[1:]
        assert decode_access_token(f"{header}.{payload}.{flipped}") is None

    def test_garbage_rejected(self) -> None:
        assert decode_access_token("not.a.jwt") is None
        assert decode_access_token("") is None

    def test_expired_token_rejected(self) -> None:
        past = datetime.now(timezone.utc) - timedelta(minutes=5)
        token = jwt.encode(
            {"sub": "7", "email": "ana@x.com", "type": ACCESS, "exp": int(past.timestamp())},
            get_settings().secret_key,
            algorithm="HS256",
        )
        assert decode_access_token(token) is None

    def test_foreign_secret_rejected(self) -> None:
        future = datetime.now(timezone.utc) + timedelta(minutes=5)
        token = jwt.encode(
            {"sub": "7", "email": "ana@x.com", "type": ACCESS, "exp": int(future.timestamp())},
            "x" * 64,
            algorithm="HS256",
        )
        assert decode_access_token(token) is None

    def test_non_numeric_subject_rejected(self) -> None:
        future = datetime.now(timezone.utc) + timedelta(minutes=5)
        token = jwt.encode(
            {"sub": "ana", "email": "ana@x.com", "type": ACCESS, "exp": int(future.timestamp())},
            get_settings().secret_key,
            algorithm="HS256",
        )
        assert decode_access_token(token) is None

    def test_same_second_tokens_are_distinct(self) -> None:
        first, _ = create_refresh_token(7, "ana@x.com")
        second, _ = create_refresh_token(7, "ana@x.com")
        assert first != second

    def test_refresh_expiry_matches_settings(self) -> None:
        _, expires = create_refresh_token(7, "ana@x.com")
        expected = datetime.now(timezone.utc) + timedelta(days=get_settings().refresh_token_expire_days)
        assert abs((expires - expected).total_seconds()) < 5

    def test_issue_token_pair_record_matches_pair(self) -> None:
        user = User(id=3, email="ana@x.com", name="Ana", hashed_password="x")
        pair, record = issue_token_pair(user)
        assert record.token == pair.refresh_token
        assert record.user_id == 3
        assert record.expires_at == pair.refresh_expires_at
        assert record.is_revoked is False
        assert pair.token_type == "bearer"
        assert pair.expires_in == get_settings().access_token_expire_minutes * 60


class TestAuthenticateUser:
    def _add_user(self, store, email="ana@x.com", password="secret1", is_active=True) -> int:
        return store.create_user(
            User(email=email, name="Ana", hashed_password=hash_password(password), is_active=is_active)
        )

    def test_success(self, store) -> None:
        uid = self._add_user(store)
        user = authenticate_user(store, "ana@x.com", "secret1")
        assert user is not None
        assert user.id == uid

    def test_email_lookup_is_case_insensitive(self, store) -> None:
        self._add_user(store)
        assert authenticate_user(store, "  ANA@X.com ", "secret1") is not None

    def test_wrong_password(self, store) -> None:
        self._add_user(store)
        assert authenticate_user(store, "ana@x.com", "wrong") is None

    def test_unknown_email(self, store) -> None:
        assert authenticate_user(store, "ghost@x.com", "secret1") is None

    def test_inactive_user(self, store) -> None:
        self._add_user(store, is_active=False)
        assert authenticate_user(store, "ana@x.com", "secret1") is None
