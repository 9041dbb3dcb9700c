"""Unit tests for TokenCodec signing and verification."""

import base64
import json
from datetime import timedelta

import pytest

from authcore.service.errors import (
    BadSignatureError,
    ExpiredTokenError,
    MalformedTokenError,
)
from authcore.service.tokens import ROTATION_TYPE, TokenCodec
from authcore.storage.models import Account, AccountRole

SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _b64(obj) -> str:
    raw = json.dumps(obj, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec(clock):
    return TokenCodec(SECRET, clock=clock)


@pytest.fixture
def account():
    return Account(
        id="acc-1",
        email="alice@example.com",
        password_hash="$argon2id$unused",
        name="Alice",
        role=AccountRole.USER,
    )


class TestMintVerify:
    def test_three_unpadded_segments(self, codec):
        token = codec.mint({"sub": "acc-1"}, 60)

        parts = token.split(".")
        assert len(parts) == 3
        assert all("=" not in part for part in parts)

    def test_header_envelope(self, codec):
        token = codec.mint({"sub": "acc-1"}, 60)
        header_b64 = token.split(".")[0]
        header = json.loads(base64.urlsafe_b64decode(header_b64 + "=" * (-len(header_b64) % 4)))

        assert header == {"alg": "HS256", "typ": "JWT"}

    def test_verify_returns_claims(self, codec, clock):
        token = codec.mint({"sub": "acc-1", "email": "alice@example.com"}, 60)

        claims = codec.verify(token)

        assert claims["sub"] == "acc-1"
        assert claims["email"] == "alice@example.com"
        assert claims["iat"] == int(clock.now)
        assert claims["exp"] == int(clock.now) + 60

    def test_valid_until_expiry_instant(self, codec, clock):
        token = codec.mint({"sub": "acc-1"}, 60)

        clock.now += 59
        assert codec.verify(token)["sub"] == "acc-1"

        clock.now += 1
        with pytest.raises(ExpiredTokenError):
            codec.verify(token)

    def test_mint_rejects_non_positive_validity(self, codec):
        with pytest.raises(ValueError):
            codec.mint({"sub": "acc-1"}, 0)

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            TokenCodec("")


class TestVerifyFailures:
    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "..", None, 42])
    def test_malformed_structure(self, codec, token):
        with pytest.raises(MalformedTokenError):
            codec.verify(token)

    def test_payload_not_json(self, codec):
        with pytest.raises(MalformedTokenError):
            codec.verify(f"{_b64({'alg': 'HS256'})}.bm90LWpzb24.sig")

    def test_payload_without_exp(self, codec):
        token = f"{_b64({'alg': 'HS256', 'typ': 'JWT'})}.{_b64({'sub': 'acc-1'})}.sig"
        with pytest.raises(MalformedTokenError):
            codec.verify(token)

    def test_tampered_payload_bad_signature(self, codec):
        header, _, signature = codec.mint({"sub": "acc-1", "role": "user"}, 60).split(".")
        forged_payload = _b64({"sub": "acc-1", "role": "admin", "exp": 1_800_000_000})

        with pytest.raises(BadSignatureError):
            codec.verify(f"{header}.{forged_payload}.{signature}")

    def test_other_key_bad_signature(self, clock):
        token = TokenCodec("another-secret-of-sufficient-length!!", clock=clock).mint(
            {"sub": "acc-1"}, 60
        )
        with pytest.raises(BadSignatureError):
            TokenCodec(SECRET, clock=clock).verify(token)

    def test_expired_wins_over_bad_signature(self, codec, clock):
        """Expiry is decided before the signature is looked at."""
        header, payload, _ = codec.mint({"sub": "acc-1"}, 60).split(".")
        clock.now += 120

        with pytest.raises(ExpiredTokenError):
            codec.verify(f"{header}.{payload}.not-a-signature")

    def test_none_algorithm_rejected(self, codec, clock):
        payload = _b64({"sub": "acc-1", "exp": int(clock.now) + 60})
        token = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}."

        with pytest.raises(MalformedTokenError):
            codec.verify(token)

    def test_non_ascii_signature_is_bad_signature(self, codec):
        header, payload, _ = codec.mint({"sub": "acc-1"}, 60).split(".")
        with pytest.raises(BadSignatureError):
            codec.verify(f"{header}.{payload}.sïgnature")


class TestDecodeUnsafe:
    def test_reads_payload_without_verifying(self, codec, clock):
        token = codec.mint({"sub": "acc-1"}, 60)
        header, payload, _ = token.split(".")
        clock.now += 3600

        assert codec.decode_unsafe(f"{header}.{payload}.forged")["sub"] == "acc-1"

    @pytest.mark.parametrize("token", ["garbage", "a.%%%.c", "a.b", None])
    def test_returns_none_on_garbage(self, codec, token):
        assert codec.decode_unsafe(token) is None


class TestExpiresWithin:
    def test_threshold(self, codec, clock):
        token = codec.mint({"sub": "acc-1"}, 600)

        assert codec.expires_within(token, 300) is False
        clock.now += 301
        assert codec.expires_within(token, 300) is True

    def test_unreadable_token_counts_as_expiring(self, codec):
        assert codec.expires_within("garbage", 300) is True


class TestMintPair:
    def test_claims_and_discriminant(self, codec, account, clock):
        pair = codec.mint_pair(account)

        access = codec.verify(pair.access_token)
        rotation = codec.verify(pair.refresh_token)

        assert access["sub"] == rotation["sub"] == "acc-1"
        assert access["email"] == "alice@example.com"
        assert access["role"] == "user"
        assert access["name"] == "Alice"
        assert "type" not in access
        assert rotation["type"] == ROTATION_TYPE
        assert set(rotation) == {"sub", "iat", "exp", "jti", "type"}
        assert access["jti"] != rotation["jti"]

    def test_validity_windows_from_configuration(self, clock, account):
        codec = TokenCodec(
            SECRET,
            access_ttl=timedelta(minutes=5),
            refresh_ttl=timedelta(days=1),
            clock=clock,
        )
        pair = codec.mint_pair(account)

        assert pair.expires_in == 300
        assert codec.verify(pair.refresh_token)["exp"] == int(clock.now) + 86400
        assert pair.refresh_expires_at.timestamp() == int(clock.now) + 86400

    def test_fresh_identifiers_each_time(self, codec, account):
        first = codec.mint_pair(account)
        second = codec.mint_pair(account)

        assert first.refresh_token != second.refresh_token
