from __future__ import annotations

from typing import Optional

import httpx

from authcore.logging import get_logger

logger = get_logger(__name__)

DEFAULT_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"


class BotGate:
    """Yes/no bot verification against a Turnstile-style ``siteverify`` endpoint.

    With no site secret configured the gate is disabled and every token passes.
    Any transport or decoding failure counts as a failed verification.
    """

    def __init__(
        self,
        secret: Optional[str],
        *,
        verify_url: str = DEFAULT_VERIFY_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.secret = secret
        self.verify_url = verify_url
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings) -> "BotGate":
        return cls(
            settings.turnstile_secret_key,
            verify_url=settings.turnstile_verify_url,
            timeout=settings.turnstile_timeout_seconds,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.secret)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=False,
                transport=self._transport,
            )
        return self._client

    async def verify(self, token: Optional[str], *, remote_ip: Optional[str] = None) -> bool:
        if not self.enabled:
            return True
        if not token:
            return False
        payload = {"secret": self.secret, "response": token}
        if remote_ip:
            payload["remoteip"] = remote_ip
        try:
            client = await self._get_client()
            response = await client.post(self.verify_url, data=payload)
            response.raise_for_status()
            result = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "bot_check_http_error", status_code=exc.response.status_code
            )
            return False
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("bot_check_failed", error=str(exc))
            return False
        success = isinstance(result, dict) and result.get("success") is True
        if not success:
            logger.info(
                "bot_check_rejected",
                error_codes=result.get("error-codes") if isinstance(result, dict) else None,
            )
        return success

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
