from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from authcore.logging import get_logger
from authcore.service.errors import (
    BadSignatureError,
    ExpiredTokenError,
    MalformedTokenError,
)
from authcore.storage.models import Account

logger = get_logger(__name__)

ALGORITHM = "HS256"
ROTATION_TYPE = "refresh"
# Upper bound for any presented credential; minted tokens stay well below it
MAX_TOKEN_LENGTH = 4096

_HEADER = {"alg": ALGORITHM, "typ": "JWT"}


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_at: datetime


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _decode_json_segment(segment: str) -> Any:
    try:
        return json.loads(_decode_segment(segment))
    except ValueError as exc:
        raise MalformedTokenError("segment is not base64url-encoded JSON") from exc


class TokenCodec:
    """Stateless HS256 signing and verification of compact three-segment tokens.

    The signing key is fixed for the life of the instance. Bearer tokens carry
    identity claims; rotation tokens carry only ``sub``, ``jti`` and
    ``type="refresh"``. Telling the two apart is left to callers.
    """

    def __init__(
        self,
        secret: str,
        *,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("signing key must not be empty")
        self._key = secret.encode("utf-8")
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    @classmethod
    def from_settings(cls, settings) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            access_ttl=settings.access_token_ttl,
            refresh_ttl=settings.refresh_token_ttl,
        )

    def _now(self) -> int:
        return int(self._clock())

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode("ascii"), hashlib.sha256).digest()
        return _encode_segment(digest)

    def mint(self, claims: dict[str, Any], validity_seconds: int) -> str:
        """Sign ``claims`` with fresh ``iat``/``exp`` values."""
        if validity_seconds <= 0:
            raise ValueError("validity must be positive")
        now = self._now()
        payload = {**claims, "iat": now, "exp": now + int(validity_seconds)}
        header_enc = _encode_segment(
            json.dumps(_HEADER, separators=(",", ":")).encode()
        )
        payload_enc = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> dict[str, Any]:
        """Return the payload of an authentic, unexpired token.

        Raises MalformedTokenError, ExpiredTokenError or BadSignatureError.
        Expiry is checked before the signature so that stale tokens are
        rejected without spending a MAC computation.
        """
        if not isinstance(token, str):
            raise MalformedTokenError("token must be a string")
        parts = token.split(".")
        if len(parts) != 3:
            raise MalformedTokenError("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts

        payload = _decode_json_segment(payload_b64)
        if not isinstance(payload, dict):
            raise MalformedTokenError("payload must be an object")
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise MalformedTokenError("payload has no numeric exp")
        if exp <= self._now():
            raise ExpiredTokenError("token expired")

        header = _decode_json_segment(header_b64)
        # Reject anything but our own algorithm (no "none", no RS/HS confusion)
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            logger.warning(
                "token_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise MalformedTokenError("unsupported token algorithm")

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode("ascii"), sig_b64.encode("utf-8")):
            raise BadSignatureError("token signature mismatch")
        return payload

    def decode_unsafe(self, token: str) -> Optional[dict[str, Any]]:
        """Read a payload without any verification. Never use for authorization."""
        try:
            parts = token.split(".")
            if len(parts) != 3:
                return None
            payload = _decode_json_segment(parts[1])
        except (AttributeError, MalformedTokenError):
            return None
        return payload if isinstance(payload, dict) else None

    def expires_within(self, token: str, seconds: int) -> bool:
        """True when the token has no readable expiry or expires within ``seconds``."""
        payload = self.decode_unsafe(token)
        exp = payload.get("exp") if payload else None
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return True
        return exp - self._now() < seconds

    def mint_pair(self, account: Account) -> TokenPair:
        access_seconds = int(self.access_ttl.total_seconds())
        refresh_seconds = int(self.refresh_ttl.total_seconds())
        access_token = self.mint(
            {
                "sub": account.id,
                "jti": str(uuid.uuid4()),
                "email": account.email,
                "role": account.role.value,
                "name": account.name,
            },
            access_seconds,
        )
        refresh_token = self.mint(
            {
                "sub": account.id,
                "jti": str(uuid.uuid4()),
                "type": ROTATION_TYPE,
            },
            refresh_seconds,
        )
        refresh_exp = self.decode_unsafe(refresh_token)["exp"]
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=access_seconds,
            refresh_expires_at=datetime.fromtimestamp(refresh_exp, tz=timezone.utc),
        )
