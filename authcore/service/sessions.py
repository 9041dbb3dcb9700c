from __future__ import annotations

import asyncio
from datetime import datetime
from typing import List, Optional

from authcore.logging import get_logger
from authcore.service.passwords import CredentialHasher
from authcore.storage.models import Session, utcnow

logger = get_logger(__name__)


class SessionStore:
    """Persisted rotation-credential fingerprints, one row per live credential.

    Raw credentials never reach the backing store: ``create`` hashes them and
    ``match`` finds a session by verifying the presented credential against each
    of the account's unexpired digests in turn. Salted digests cannot be indexed,
    so lookup is linear in the number of live sessions per account.
    """

    def __init__(self, store, hasher: CredentialHasher) -> None:
        self.store = store
        self.hasher = hasher

    def create(
        self,
        account_id: str,
        credential: str,
        expires_at: datetime,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        session = Session.new(
            account_id,
            self.hasher.hash(credential),
            expires_at,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )
        return self.store.insert_session(session)

    def find_candidates(
        self, account_id: str, *, now: Optional[datetime] = None
    ) -> List[Session]:
        return self.store.list_sessions(account_id, active_at=now or utcnow())

    async def match(self, account_id: str, credential: str) -> Optional[Session]:
        """Return the unexpired session whose digest verifies ``credential``."""
        candidates = await asyncio.to_thread(self.find_candidates, account_id)
        for candidate in candidates:
            if await asyncio.to_thread(
                self.hasher.verify, credential, candidate.token_hash
            ):
                return candidate
        return None

    def delete(self, session_id: str) -> bool:
        """Idempotent; True only for the caller that actually removed the row."""
        return self.store.delete_session(session_id)

    def delete_all_for_account(self, account_id: str) -> int:
        removed = self.store.delete_account_sessions(account_id)
        logger.info("sessions_revoked_for_account", account_id=account_id, count=removed)
        return removed

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        removed = self.store.delete_expired_sessions(now or utcnow())
        if removed:
            logger.info("expired_sessions_swept", count=removed)
        return removed
