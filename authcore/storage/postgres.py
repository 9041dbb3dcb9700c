from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_account (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        name TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        status TEXT NOT NULL DEFAULT 'active',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES auth_account(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        ip_addr TEXT,
        user_agent TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS auth_session_account_expiry_idx
        ON auth_session (account_id, expires_at)
    """,
)


class PostgresStore:
    """Postgres-backed account and session persistence."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_account(row: dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            name=row.get("name"),
            role=AccountRole(row.get("role") or "user"),
            status=AccountStatus(row.get("status") or "active"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_session(row: dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
        )

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
        account = Account(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            password_hash=password_hash,
            name=name,
            role=AccountRole(role),
            status=AccountStatus(status),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_account (id, email, password_hash, name, role, status, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.email,
                        account.password_hash,
                        account.name,
                        account.role.value,
                        account.status.value,
                        account.created_at,
                        account.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return account

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_account WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def update_account_status(
        self, account_id: str, status: AccountStatus
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_account SET status = %s, updated_at = now()
                WHERE id = %s RETURNING *
                """,
                (AccountStatus(status).value, account_id),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def update_account_role(
        self, account_id: str, role: AccountRole
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_account SET role = %s, updated_at = now()
                WHERE id = %s RETURNING *
                """,
                (AccountRole(role).value, account_id),
            ).fetchone()
        return self._row_to_account(row) if row else None

    # -- sessions ---------------------------------------------------------

    def insert_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, account_id, token_hash, expires_at, created_at, ip_addr, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.account_id,
                        session.token_hash,
                        session.expires_at,
                        session.created_at,
                        session.ip_addr,
                        session.user_agent,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "session account missing", {"account_id": session.account_id}
            )
        return session

    def list_sessions(
        self, account_id: str, *, active_at: Optional[datetime] = None
    ) -> List[Session]:
        with self._connect() as conn:
            if active_at is None:
                rows = conn.execute(
                    "SELECT * FROM auth_session WHERE account_id = %s ORDER BY created_at",
                    (account_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM auth_session
                    WHERE account_id = %s AND expires_at > %s
                    ORDER BY created_at
                    """,
                    (account_id, active_at),
                ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def delete_session(self, session_id: str) -> bool:
        # Row-level lock on DELETE: of two concurrent callers only one gets the row back.
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM auth_session WHERE id = %s RETURNING id", (session_id,)
            ).fetchone()
        return row is not None

    def delete_account_sessions(self, account_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE account_id = %s", (account_id,)
            )
            return cur.rowcount or 0

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (now,)
            )
            return cur.rowcount or 0
