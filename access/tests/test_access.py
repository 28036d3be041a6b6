"""
Unit Tests for Access Control

Tests cover:
1. Compact and legacy status tokens
2. Login failure throttling
3. Password hashing
4. Admin login
"""

import threading
import uuid

import pytest

from access.admin import AdminAuthService
from access.passwords import hash_password, verify_password
from access.rate_limit import LoginRateLimiter
from access.tokens import (
    CompactTokenCodec,
    LegacyTextTokenCodec,
    StatusTokenService,
    TokenClaims,
    b64url_decode,
    hash_token,
)
from conftest import TOKEN_SECRET
from ledger.errors import ConflictError, InvalidInputError, RateLimitedError, UnauthorizedError

USER_ID = "550e8400-e29b-41d4-a716-446655440000"


class _CountingLock:
    def __init__(self):
        self._inner = threading.Lock()
        self.entered = 0

    def __enter__(self):
        self.entered += 1
        return self._inner.__enter__()

    def __exit__(self, *exc_info):
        return self._inner.__exit__(*exc_info)


class TestStatusTokens:
    """Tests for the status token codecs."""

    def test_compact_layout(self):
        token = StatusTokenService(TOKEN_SECRET).issue(USER_ID, 7)
        payload_part, signature_part = token.split(".")
        payload = b64url_decode(payload_part)

        assert "=" not in token
        assert len(payload) == 21
        assert payload[0] == 0x01
        assert payload[1:17] == uuid.UUID(USER_ID).bytes
        assert int.from_bytes(payload[17:21], "big") == 7
        assert len(b64url_decode(signature_part)) == 16

    def test_decode_round_trip(self):
        service = StatusTokenService(TOKEN_SECRET)

        claims = service.decode(service.issue(USER_ID, 3))

        assert claims == TokenClaims(USER_ID, 3)

    def test_legacy_token_verifies(self):
        service = StatusTokenService(TOKEN_SECRET)
        legacy = LegacyTextTokenCodec().encode(TOKEN_SECRET.encode("utf-8"), TokenClaims(USER_ID, 2))

        assert service.decode(legacy) == TokenClaims(USER_ID, 2)
        assert service.verify(legacy, user_id=USER_ID, token_version=2, stored_hash=hash_token(legacy))

    def test_other_secret_rejected(self):
        token = StatusTokenService(TOKEN_SECRET).issue(USER_ID, 0)

        assert StatusTokenService("another-secret-that-is-long-enough-0000").decode(token) is None

    def test_verify_checks_version_and_hash(self):
        service = StatusTokenService(TOKEN_SECRET)
        token = service.issue(USER_ID, 1)

        assert service.verify(token, user_id=USER_ID, token_version=1, stored_hash=hash_token(token))
        assert not service.verify(token, user_id=USER_ID, token_version=2, stored_hash=hash_token(token))
        assert not service.verify(token, user_id=USER_ID, token_version=1, stored_hash=hash_token("other"))

    def test_short_secret_rejected(self):
        with pytest.raises(ValueError):
            StatusTokenService("too-short")

    def test_issue_uses_first_codec_only(self):
        service = StatusTokenService(TOKEN_SECRET, codecs=[LegacyTextTokenCodec(), CompactTokenCodec()])

        token = service.issue(USER_ID, 0)

        assert b64url_decode(token.split(".")[0]) == f"{USER_ID}:0".encode("utf-8")


class TestLoginRateLimiter:
    """Tests for the login failure limiter."""

    def test_lockout_after_max_failures(self):
        limiter = LoginRateLimiter()
        for i in range(4):
            assert limiter.record_failure("1.2.3.4", 1000 + i).blocked is False

        locked = limiter.record_failure("1.2.3.4", 1004)

        assert locked.blocked is True
        assert locked.retry_after == 600
        status = limiter.check("1.2.3.4", 1100)
        assert status.blocked is True
        assert status.retry_after == 504
        assert limiter.check("5.6.7.8", 1100).blocked is False

    def test_block_expires(self):
        limiter = LoginRateLimiter(max_failures=1, block_seconds=60)
        limiter.record_failure("k", 0)

        assert limiter.check("k", 59).blocked is True
        assert limiter.check("k", 60).blocked is False

    def test_clear_resets_counter(self):
        """A successful login wipes earlier failures."""
        limiter = LoginRateLimiter()
        for i in range(4):
            limiter.record_failure("k", i)

        limiter.clear("k")

        assert limiter.failures("k") == 0
        assert limiter.record_failure("k", 10).blocked is False

    def test_window_expiry_resets_count(self):
        limiter = LoginRateLimiter()
        for i in range(4):
            limiter.record_failure("k", i)

        assert limiter.record_failure("k", 3 + 601).blocked is False
        assert limiter.failures("k") == 1

    def test_stale_entries_are_collected(self):
        limiter = LoginRateLimiter(stale_seconds=100, cleanup_every=2)
        limiter.record_failure("old", 0)
        assert len(limiter) == 1

        limiter.check("new", 500)

        assert len(limiter) == 0

    def test_reads_take_the_lock(self):
        limiter = LoginRateLimiter()
        limiter.record_failure("k", 0)
        lock = _CountingLock()
        limiter._lock = lock

        assert limiter.failures("k") == 1
        assert len(limiter) == 1
        assert lock.entered == 2


class TestPasswords:
    def test_hash_format(self):
        encoded = hash_password("s3cret-pass", iterations=1000)

        parts = encoded.split("$")
        assert parts[:3] == ["pbkdf2", "sha256", "1000"]
        assert verify_password("s3cret-pass", encoded)
        assert not verify_password("wrong", encoded)

    @pytest.mark.parametrize("encoded", [
        "",
        "plain",
        "bcrypt$sha256$1000$AAAA$AAAA",
        "pbkdf2$sha256$abc$AAAA$AAAA",
        "pbkdf2$sha256$0$AAAA$AAAA",
        "pbkdf2$sha256$1000$!!!!$AAAA",
    ])
    def test_malformed_hashes_never_verify(self, encoded):
        assert verify_password("anything", encoded) is False


class TestAdminLogin:
    """Tests for admin credential checks."""

    @pytest.fixture
    def auth(self, storage, clock):
        auth = AdminAuthService(storage, LoginRateLimiter(max_failures=3), clock=clock)
        auth.create_admin("ops", "correct horse battery")
        return auth

    def test_login_success_clears_failures(self, auth):
        with pytest.raises(UnauthorizedError):
            auth.login("ops", "wrong password", "10.0.0.1")
        assert auth.limiter.failures("10.0.0.1") == 1

        identity = auth.login("ops", "correct horse battery", "10.0.0.1")

        assert identity.username == "ops"
        assert auth.limiter.failures("10.0.0.1") == 0

    def test_lockout_blocks_even_correct_password(self, auth):
        for _ in range(2):
            with pytest.raises(UnauthorizedError):
                auth.login("ops", "wrong password", "10.0.0.1")
        with pytest.raises(RateLimitedError) as exc:
            auth.login("ops", "wrong password", "10.0.0.1")
        assert exc.value.retry_after == 600

        with pytest.raises(RateLimitedError):
            auth.login("ops", "correct horse battery", "10.0.0.1")

    def test_unknown_admin_counts_as_failure(self, auth):
        with pytest.raises(UnauthorizedError):
            auth.login("nobody", "whatever123", "10.0.0.2")

        assert auth.limiter.failures("10.0.0.2") == 1

    def test_create_admin_validation(self, auth):
        with pytest.raises(ConflictError):
            auth.create_admin("ops", "another password")
        with pytest.raises(InvalidInputError):
            auth.create_admin("new-admin", "short")
