from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from authcore.logging import get_logger
from authcore.service.errors import TokenError
from authcore.service.tokens import ROTATION_TYPE, TokenCodec
from authcore.storage.models import AccountRole

logger = get_logger(__name__)

_BEARER_PATTERN = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)


@dataclass(frozen=True)
class Identity:
    """Claims of a verified bearer credential, attached to the request."""

    subject: str
    email: Optional[str]
    role: str
    name: Optional[str] = None

    def has_role(self, *roles: str) -> bool:
        if self.role == AccountRole.ADMIN.value:
            return True
        return self.role in roles


class RequestAuthenticator:
    """Per-request bearer check. Never touches the store."""

    def __init__(self, codec: TokenCodec) -> None:
        self.codec = codec

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        match = _BEARER_PATTERN.match(header.strip())
        if not match:
            return None
        return match.group(1).strip() or None

    def authenticate(self, header: Optional[str]) -> Optional[Identity]:
        token = self.extract_bearer(header)
        if token is None:
            return None
        try:
            claims = self.codec.verify(token)
        except TokenError as exc:
            logger.debug("bearer_rejected", reason=type(exc).__name__)
            return None
        subject = claims.get("sub")
        # Rotation credentials are not accepted as bearer credentials
        if claims.get("type") == ROTATION_TYPE or not isinstance(subject, str):
            logger.debug("bearer_rejected", reason="not_bearer_credential")
            return None
        return Identity(
            subject=subject,
            email=claims.get("email"),
            role=claims.get("role") or AccountRole.USER.value,
            name=claims.get("name"),
        )
