from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.bot_check import BotGate
from authcore.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    ServerError,
    TokenError,
    ValidationError,
)
from authcore.service.passwords import CredentialHasher
from authcore.service.sessions import SessionStore
from authcore.service.tokens import ROTATION_TYPE, TokenCodec, TokenPair
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    Account,
    AccountRole,
    AccountStatus,
    AccountView,
    Session,
    normalize_email,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "invalid credentials"
INVALID_SESSION = "session is no longer valid"
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 50


@dataclass
class AuthResult:
    account: AccountView
    tokens: TokenPair
    session: Session


@dataclass
class RefreshResult:
    account_id: str
    tokens: TokenPair
    session: Session


@dataclass(frozen=True)
class LogoutResult:
    """Logout always succeeds; ``revoked`` only says whether a session was removed."""

    revoked: bool
    success: bool = True


class AuthService:
    """Registration, login, rotation, logout and identity re-checks.

    Store calls are synchronous; argon2 work runs in a worker thread so the
    event loop keeps serving other requests while a digest is computed.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        hasher: CredentialHasher,
        codec: TokenCodec,
        sessions: SessionStore,
        bot_gate: Optional[BotGate] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher
        self.codec = codec
        self.sessions = sessions
        self.bot_gate = bot_gate
        self.logger = logger

    async def _check_bot(self, bot_token: Optional[str], ip_addr: Optional[str]) -> None:
        if bot_token is None or self.bot_gate is None:
            return
        if not await self.bot_gate.verify(bot_token, remote_ip=ip_addr):
            raise ValidationError(
                "bot verification failed",
                detail=[{"field": "bot_token", "message": "verification failed"}],
            )

    def _registration_issues(
        self, email: str, password: str, name: Optional[str]
    ) -> list[dict[str, str]]:
        issues: list[dict[str, str]] = []
        if "@" not in email or email.startswith("@") or email.endswith("@"):
            issues.append({"field": "email", "message": "invalid email format"})
        if len(password or "") > self.hasher.max_length:
            issues.append(
                {
                    "field": "password",
                    "message": f"must be at most {self.hasher.max_length} characters",
                }
            )
        else:
            strength = self.hasher.strength(password)
            if not strength.valid:
                issues.append(
                    {
                        "field": "password",
                        "message": "must contain " + ", ".join(strength.unmet),
                    }
                )
        if name is not None and not (NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH):
            issues.append(
                {
                    "field": "name",
                    "message": f"must be {NAME_MIN_LENGTH}-{NAME_MAX_LENGTH} characters",
                }
            )
        return issues

    async def _issue(
        self,
        account: Account,
        *,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> tuple[TokenPair, Session]:
        try:
            tokens = self.codec.mint_pair(account)
            session = await asyncio.to_thread(
                self.sessions.create,
                account.id,
                tokens.refresh_token,
                tokens.refresh_expires_at,
                ip_addr=ip_addr,
                user_agent=user_agent,
            )
        except Exception as exc:
            self.logger.error(
                "session_issue_failed",
                account_id=account.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError("unable to create session", clear_credential=True) from exc
        return tokens, session

    async def register(
        self,
        email: str,
        password: str,
        name: Optional[str] = None,
        *,
        role: AccountRole = AccountRole.USER,
        bot_token: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        if not self.settings.allow_signup and role == AccountRole.USER:
            raise ForbiddenError("signup is disabled")
        email = normalize_email(email)
        name = (name or "").strip() or None
        issues = self._registration_issues(email, password, name)
        if issues:
            raise ValidationError("invalid registration", detail=issues)
        await self._check_bot(bot_token, ip_addr)

        # Same generic conflict for a pre-check hit and a lost insert race
        conflict = ConflictError("an account cannot be created with these details")
        if self.store.get_account_by_email(email) is not None:
            self.logger.info("register_conflict")
            raise conflict
        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        try:
            account = self.store.create_account(
                email,
                password_hash,
                name=name,
                role=role,
                status=AccountStatus.ACTIVE,
            )
        except ConstraintViolation as exc:
            self.logger.info("register_conflict", reason="constraint")
            raise conflict from exc

        # If issuing fails the account is kept; logging in recovers the session
        tokens, session = await self._issue(account, ip_addr=ip_addr, user_agent=user_agent)
        self.logger.info(
            "account_registered",
            account_id=account.id,
            role=account.role.value,
            session_id=session.id,
        )
        return AuthResult(account=account.view(), tokens=tokens, session=session)

    async def login(
        self,
        email: str,
        password: str,
        *,
        bot_token: Optional[str] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        await self._check_bot(bot_token, ip_addr)
        account = self.store.get_account_by_email(normalize_email(email))
        # Unknown accounts still pay for one verification so timing matches
        if account is None:
            verified = await asyncio.to_thread(self.hasher.burn, password)
        else:
            verified = await asyncio.to_thread(
                self.hasher.verify, password, account.password_hash
            )
        if (
            account is None
            or not verified
            or account.status == AccountStatus.DELETED
        ):
            self.logger.info("login_failed")
            raise AuthenticationError(INVALID_CREDENTIALS, clear_credential=True)
        if account.status == AccountStatus.SUSPENDED:
            self.logger.info("login_rejected_suspended", account_id=account.id)
            raise ForbiddenError("account suspended", clear_credential=True)
        if account.status != AccountStatus.ACTIVE:
            self.logger.info(
                "login_rejected_status", account_id=account.id, status=account.status.value
            )
            raise ForbiddenError("account is not active", clear_credential=True)

        tokens, session = await self._issue(account, ip_addr=ip_addr, user_agent=user_agent)
        self.logger.info("login_succeeded", account_id=account.id, session_id=session.id)
        return AuthResult(account=account.view(), tokens=tokens, session=session)

    async def refresh(
        self,
        credential: Optional[str],
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RefreshResult:
        """Exchange a rotation credential for a new pair, consuming it.

        The matched session is deleted before the replacement is minted. If
        minting or persisting then fails, the old credential stays dead and the
        client has to log in again.
        """
        if not credential:
            raise AuthenticationError("missing refresh credential", clear_credential=True)
        try:
            claims = self.codec.verify(credential)
        except TokenError as exc:
            self.logger.info("refresh_rejected", reason=type(exc).__name__)
            raise AuthenticationError(INVALID_SESSION, clear_credential=True) from exc
        account_id = claims.get("sub")
        if claims.get("type") != ROTATION_TYPE or not isinstance(account_id, str):
            self.logger.info("refresh_rejected", reason="not_rotation_credential")
            raise AuthenticationError(INVALID_SESSION, clear_credential=True)

        session = await self.sessions.match(account_id, credential)
        if session is None:
            self.logger.warning("refresh_no_matching_session", account_id=account_id)
            raise AuthenticationError(INVALID_SESSION, clear_credential=True)

        account = self.store.get_account(account_id)
        if account is None or account.status == AccountStatus.DELETED:
            self.sessions.delete(session.id)
            self.logger.info("refresh_rejected", reason="account_missing", account_id=account_id)
            raise AuthenticationError(INVALID_SESSION, clear_credential=True)
        if not account.is_active:
            self.sessions.delete(session.id)
            self.logger.info(
                "refresh_rejected",
                reason="account_status",
                account_id=account_id,
                status=account.status.value,
            )
            raise ForbiddenError(f"account {account.status.value}", clear_credential=True)

        # Only the caller that actually removes the row may mint a replacement
        if not self.sessions.delete(session.id):
            self.logger.warning(
                "refresh_replay_rejected", account_id=account_id, session_id=session.id
            )
            raise AuthenticationError(INVALID_SESSION, clear_credential=True)

        tokens, new_session = await self._issue(account, ip_addr=ip_addr, user_agent=user_agent)
        self.logger.info(
            "session_rotated",
            account_id=account_id,
            consumed_session_id=session.id,
            session_id=new_session.id,
        )
        return RefreshResult(account_id=account_id, tokens=tokens, session=new_session)

    async def logout(self, credential: Optional[str]) -> LogoutResult:
        if not credential:
            return LogoutResult(revoked=False)
        try:
            claims = self.codec.decode_unsafe(credential)
            account_id = claims.get("sub") if claims else None
            if not isinstance(account_id, str):
                return LogoutResult(revoked=False)
            session = await self.sessions.match(account_id, credential)
            if session is None:
                return LogoutResult(revoked=False)
            revoked = self.sessions.delete(session.id)
        except Exception as exc:
            self.logger.warning("logout_cleanup_failed", error=str(exc))
            return LogoutResult(revoked=False)
        if revoked:
            self.logger.info("logout_succeeded", account_id=account_id, session_id=session.id)
        return LogoutResult(revoked=revoked)

    def resolve_current_identity(self, claims: dict[str, Any] | str) -> AccountView:
        """Re-read the account behind verified claims; claims alone may be stale."""
        account_id = claims if isinstance(claims, str) else claims.get("sub")
        account = self.store.get_account(account_id) if account_id else None
        if account is None or account.status == AccountStatus.DELETED:
            raise AuthenticationError("account not found")
        if not account.is_active:
            raise ForbiddenError(f"account {account.status.value}")
        return account.view()

    def revoke_all_sessions(self, account_id: str) -> int:
        return self.sessions.delete_all_for_account(account_id)
