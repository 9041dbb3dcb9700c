from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    Account,
    AccountRole,
    AccountStatus,
    Session,
    normalize_email,
    utcnow,
)


class MemoryStore:
    """In-memory account and session store with a JSON snapshot on disk."""

    def __init__(self, fs_root: str = "/tmp/authcore") -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can be called while already holding the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def verify_connection(self) -> None:
        self._state_path()

    # -- accounts ---------------------------------------------------------

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        role: AccountRole = AccountRole.USER,
        status: AccountStatus = AccountStatus.ACTIVE,
    ) -> Account:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                name=name,
                role=AccountRole(role),
                status=AccountStatus(status),
            )
            self.accounts[account.id] = account
            self._persist_state()
            return account

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next(
                (a for a in self.accounts.values() if a.email == normalized), None
            )

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def update_account_status(
        self, account_id: str, status: AccountStatus
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.status = AccountStatus(status)
            account.updated_at = utcnow()
            self._persist_state()
            return account

    def update_account_role(
        self, account_id: str, role: AccountRole
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.role = AccountRole(role)
            account.updated_at = utcnow()
            self._persist_state()
            return account

    # -- sessions ---------------------------------------------------------

    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"account_id": session.account_id}
                )
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def list_sessions(
        self, account_id: str, *, active_at: Optional[datetime] = None
    ) -> List[Session]:
        """Sessions for an account, oldest first; expired ones skipped when ``active_at`` is given."""
        with self._data_lock:
            found = [
                s
                for s in self.sessions.values()
                if s.account_id == account_id
                and (active_at is None or s.expires_at > active_at)
            ]
        return sorted(found, key=lambda s: s.created_at)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def delete_session(self, session_id: str) -> bool:
        """Remove a session; returns False if it was already gone."""
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed is None:
                return False
            self._persist_state()
            return True

    def delete_account_sessions(self, account_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.account_id == account_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.expires_at <= now]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- persistence ------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            sessions=len(self.sessions),
        )
        return True

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "password_hash": account.password_hash,
            "name": account.name,
            "role": account.role.value,
            "status": account.status.value,
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            name=data.get("name"),
            role=AccountRole(data.get("role", "user")),
            status=AccountStatus(data.get("status", "active")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "account_id": session.account_id,
            "token_hash": session.token_hash,
            "expires_at": self._serialize_datetime(session.expires_at),
            "created_at": self._serialize_datetime(session.created_at),
            "ip_addr": session.ip_addr,
            "user_agent": session.user_agent,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            account_id=data["account_id"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
        )
