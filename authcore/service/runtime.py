from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authcore.config import get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.auth import AuthService
from authcore.service.authenticator import RequestAuthenticator
from authcore.service.bot_check import BotGate
from authcore.service.passwords import CredentialHasher
from authcore.service.sessions import SessionStore
from authcore.service.tokens import MAX_TOKEN_LENGTH, TokenCodec
from authcore.storage.memory import MemoryStore
from authcore.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with ``***``."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.hasher = CredentialHasher.from_settings(self.settings)
        self.codec = TokenCodec.from_settings(self.settings)
        # Rotation credentials are far longer than any password
        self.fingerprint_hasher = CredentialHasher.from_settings(
            self.settings, max_length=MAX_TOKEN_LENGTH
        )
        self.sessions = SessionStore(self.store, self.fingerprint_hasher)
        self.bot_gate = BotGate.from_settings(self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            hasher=self.hasher,
            codec=self.codec,
            sessions=self.sessions,
            bot_gate=self.bot_gate,
        )
        self.authenticator = RequestAuthenticator(self.codec)
        logger.info(
            "runtime_init_completed",
            store_type=store_type,
            bot_gate_enabled=self.bot_gate.enabled,
            access_ttl_seconds=int(self.settings.access_token_ttl.total_seconds()),
            refresh_ttl_seconds=int(self.settings.refresh_token_ttl.total_seconds()),
        )

    async def close(self) -> None:
        await self.bot_gate.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once built.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild settings and the runtime singleton from the current environment."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        runtime = Runtime()
        return runtime
