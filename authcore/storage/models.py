from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    """Lookup form of an email address: trimmed and lowercased."""
    return (email or "").strip().lower()


class AccountRole(str, Enum):
    USER = "user"
    ADMIN = "admin"
    MODERATOR = "moderator"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    DELETED = "deleted"


@dataclass
class AccountView:
    """Account as exposed to callers; never carries the password hash."""

    id: str
    email: str
    name: Optional[str]
    role: AccountRole
    status: AccountStatus
    created_at: datetime
    updated_at: datetime


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    name: Optional[str] = None
    role: AccountRole = AccountRole.USER
    status: AccountStatus = AccountStatus.ACTIVE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    def view(self) -> AccountView:
        return AccountView(
            id=self.id,
            email=self.email,
            name=self.name,
            role=self.role,
            status=self.status,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


@dataclass
class Session:
    """One persisted rotation credential, stored only as a salted digest."""

    id: str
    account_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        ip_addr: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            token_hash=token_hash,
            expires_at=expires_at,
            created_at=utcnow(),
            ip_addr=ip_addr,
            user_agent=user_agent,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())
