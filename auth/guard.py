"""
auth/guard.py -- Login guard: password login with brute-force lockout.

State per account (stored on the users row):
  Unlocked(attempts)   locked_until is NULL or in the past
  Locked(until)        locked_until > now

Transitions on login(handle, password):
  Locked and now < until  -> reject with the remaining seconds (rounded up,
                             at least 1). The vault is not consulted and no
                             counter changes.
  bad password            -> attempts + 1. Reaching max_attempts flips to
                             Locked(now + lock_minutes) and resets attempts to
                             0, so every lock cycle restarts from the same
                             fixed threshold (no escalating back-off).
  good password           -> attempts = 0, lock cleared, last login stamped,
                             token pair issued. One transaction.

The scrypt verification runs BEFORE the write transaction opens so the
database write lock is never held across the expensive derivation. The
account row is then re-read inside the transaction, and the counter update
is computed from that fresh row: two concurrent failures for the same
account serialize on BEGIN IMMEDIATE and both increments land.

Audit entries are written after the transaction commits (the sink is
fire-and-forget and must not share the guarded transaction).

Security:
  [C1] Unknown handles burn one dummy verification so response time does
       not reveal which handles exist. Unknown handle and wrong password
       return the same bad_credentials failure.
  [M3] Password change revokes every token of the account in the same
       transaction that stores the new hash. No new tokens are issued; the
       client logs in again.
  [M3] A login whose verified hash is no longer the stored one when its
       transaction opens is refused, so it neither issues tokens nor writes
       back a hash of the superseded password.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from audit.models import STATUS_FAILED, STATUS_SUCCESS, AuditEvent
from audit.store import AuditSink
from auth.models import (
    HANDLE_PATTERN,
    MIN_PASSWORD_LENGTH,
    ROLES,
    Account,
    LoginFailure,
    LoginResult,
    RequestContext,
    TokenPair,
    normalize_handle,
)
from auth.passwords import burn_verification, hash_password, needs_rehash, verify_password
from auth.store import AccountStore
from auth.tokens import TokenLedger
from core.database import Database
from core.errors import ErrorKind, ServiceError, invalid_input
from core.timeutil import Clock, to_iso, utcnow

logger = logging.getLogger("scriptoria.auth.guard")

_HANDLE_RE = re.compile(HANDLE_PATTERN)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_LOCK_MINUTES = 5


def retry_after_seconds(locked_until: datetime, now: datetime) -> int:
    """Whole seconds until the lock lifts, rounded up, never below 1."""
    return max(1, math.ceil((locked_until - now).total_seconds()))


def validate_credentials(handle: str, password: str) -> str:
    """Return the normalized handle or raise InvalidInput."""
    normalized = normalize_handle(handle or "")
    if not _HANDLE_RE.match(normalized):
        raise invalid_input(
            "Username must be 3-32 characters: lowercase letters, digits, '.', '_' or '-'.",
            code="invalid_username",
        )
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise invalid_input(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters.",
            code="weak_password",
        )
    return normalized


class LoginGuard:
    """Password authentication, registration, and password rotation."""

    def __init__(
        self,
        db: Database,
        accounts: AccountStore,
        ledger: TokenLedger,
        audit: AuditSink,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        lock_minutes: int = DEFAULT_LOCK_MINUTES,
        clock: Clock = utcnow,
    ) -> None:
        self.db = db
        self.accounts = accounts
        self.ledger = ledger
        self.audit = audit
        self.max_attempts = max_attempts
        self.lock_minutes = lock_minutes
        self._clock = clock

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, handle: str, password: str, context: RequestContext) -> LoginResult:
        username = normalize_handle(handle or "")
        account = self.accounts.get_by_username(username)

        if account is None:
            burn_verification(password)  # [C1]
            self._audit_login(None, STATUS_FAILED, context, {"reason": "user_not_found", "username": username})
            return LoginResult(failure=LoginFailure.BAD_CREDENTIALS)

        if not account.is_active:
            self._audit_login(account.id, STATUS_FAILED, context, {"reason": "inactive_user"})
            return LoginResult(failure=LoginFailure.ACCOUNT_INACTIVE)

        now = self._clock()
        if account.is_locked(now):
            retry_after = retry_after_seconds(account.locked_until, now)
            self._audit_login(account.id, STATUS_FAILED, context, {"reason": "locked", "retryAfter": retry_after})
            return LoginResult(failure=LoginFailure.LOCKED, retry_after=retry_after)

        verified_hash = account.password_hash
        if not verify_password(password, verified_hash):
            return self._register_failure(account.id, context)

        # Upgrade legacy hashes with the plaintext we just proved correct.
        upgraded_hash = hash_password(password) if needs_rehash(verified_hash) else None

        with self.db.transaction() as conn:
            current = self.accounts.get_by_id(account.id, conn)
            now = self._clock()
            if current is None or not current.is_active:
                return LoginResult(failure=LoginFailure.BAD_CREDENTIALS)
            if current.is_locked(now):
                # A concurrent failure locked the account after our read.
                retry_after = retry_after_seconds(current.locked_until, now)
                return LoginResult(failure=LoginFailure.LOCKED, retry_after=retry_after)
            if current.password_hash != verified_hash:
                # The password changed after our verify. Issue nothing and
                # never write a hash derived from the superseded password.
                logger.warning("Login for user_id=%s raced a password change; refused", current.id)
                return LoginResult(failure=LoginFailure.BAD_CREDENTIALS)
            self.accounts.record_successful_login(current.id, now, conn)
            if upgraded_hash is not None:
                self.accounts.update_password_hash(current.id, upgraded_hash, conn)
            tokens = self.ledger.issue(current, context, conn)

        if upgraded_hash is not None:
            logger.info("Upgraded legacy password hash for user_id=%s", current.id)
        self._audit_login(current.id, STATUS_SUCCESS, context, {})
        current.failed_attempts = 0
        current.locked_until = None
        current.last_login_at = now
        return LoginResult(account=current, tokens=tokens)

    def _register_failure(self, account_id: int, context: RequestContext) -> LoginResult:
        with self.db.transaction() as conn:
            current = self.accounts.get_by_id(account_id, conn)
            now = self._clock()
            if current is None:
                return LoginResult(failure=LoginFailure.BAD_CREDENTIALS)
            if current.is_locked(now):
                retry_after = retry_after_seconds(current.locked_until, now)
                return LoginResult(failure=LoginFailure.LOCKED, retry_after=retry_after)
            attempted = current.failed_attempts + 1
            attempts = attempted
            locked_until = None
            if attempted >= self.max_attempts:
                locked_until = now + timedelta(minutes=self.lock_minutes)
                attempts = 0
            self.accounts.record_failed_attempt(current.id, attempts, locked_until, conn)

        self._audit_login(
            account_id,
            STATUS_FAILED,
            context,
            {
                "reason": "invalid_password",
                "failedAttempts": attempted,
                "lockUntil": to_iso(locked_until) if locked_until else None,
            },
        )
        if locked_until is not None:
            logger.warning("Account user_id=%s locked until %s", account_id, to_iso(locked_until))
            return LoginResult(failure=LoginFailure.LOCKED, retry_after=self.lock_minutes * 60)
        return LoginResult(failure=LoginFailure.BAD_CREDENTIALS)

    def _audit_login(self, user_id: int | None, status: str, context: RequestContext, detail: dict) -> None:
        self.audit.record(
            AuditEvent(
                action="auth.login",
                resource="users",
                resource_id=str(user_id) if user_id is not None else None,
                status=status,
                user_id=user_id,
                detail=detail,
                ip=context.ip,
                user_agent=context.user_agent,
            )
        )

    # ------------------------------------------------------------------
    # Account provisioning
    # ------------------------------------------------------------------

    def provision(self, handle: str, password: str, role: str = "staff") -> Account:
        """Create an account without issuing tokens (admin create, bootstrap seed)."""
        account, _ = self._create(handle, password, role, context=None)
        return account

    def register(
        self, handle: str, password: str, context: RequestContext, role: str = "staff"
    ) -> tuple[Account, TokenPair]:
        """Self-registration: create the account and sign it in atomically."""
        account, tokens = self._create(handle, password, role, context=context)
        self.audit.record(
            AuditEvent(
                action="auth.register",
                resource="users",
                resource_id=str(account.id),
                user_id=account.id,
                detail={"username": account.username, "role": account.role},
                ip=context.ip,
                user_agent=context.user_agent,
            )
        )
        return account, tokens

    def _create(
        self, handle: str, password: str, role: str, context: RequestContext | None
    ) -> tuple[Account, TokenPair | None]:
        username = validate_credentials(handle, password)
        if role not in ROLES:
            raise invalid_input(f"Unknown role {role!r}.", code="invalid_role")
        password_hash = hash_password(password)
        tokens = None
        try:
            with self.db.transaction() as conn:
                account_id = self.accounts.create_account(
                    Account(username=username, password_hash=password_hash, role=role), conn
                )
                account = self.accounts.get_by_id(account_id, conn)
                if context is not None:
                    tokens = self.ledger.issue(account, context, conn)
        except IntegrityError as exc:
            raise ServiceError(ErrorKind.CONFLICT, "That username is already taken.", code="username_taken") from exc
        return account, tokens

    # ------------------------------------------------------------------
    # Password rotation
    # ------------------------------------------------------------------

    def change_password(self, account: Account, old_password: str, new_password: str, context: RequestContext) -> int:
        """Replace the password and revoke every token of the account [M3].

        Returns the number of tokens revoked. Raises InvalidInput when the
        old password is wrong or the new one is too short.
        """
        if len(new_password or "") < MIN_PASSWORD_LENGTH:
            raise invalid_input(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters.",
                code="weak_password",
            )
        checked_hash = account.password_hash
        if not verify_password(old_password, checked_hash):
            self._audit_password_change(account.id, STATUS_FAILED, context, {"reason": "invalid_old_password"})
            raise invalid_input("Current password is incorrect.", code="invalid_old_password")
        new_hash = hash_password(new_password)

        with self.db.transaction() as conn:
            current = self.accounts.get_by_id(account.id, conn)
            if current is None:
                raise ServiceError(ErrorKind.UNAUTHENTICATED, "Account no longer exists.")
            # Another change committed between our verify and this transaction:
            # the old password must still match the hash now in force.
            if current.password_hash != checked_hash and not verify_password(old_password, current.password_hash):
                raise invalid_input("Current password is incorrect.", code="invalid_old_password")
            self.accounts.update_password_hash(current.id, new_hash, conn)
            revoked = self.ledger.revoke_all_for_account(current.id, conn)

        self._audit_password_change(account.id, STATUS_SUCCESS, context, {"revokedCount": revoked})
        return revoked

    def _audit_password_change(self, user_id: int, status: str, context: RequestContext, detail: dict) -> None:
        self.audit.record(
            AuditEvent(
                action="auth.change_password",
                resource="users",
                resource_id=str(user_id),
                status=status,
                user_id=user_id,
                detail=detail,
                ip=context.ip,
                user_agent=context.user_agent,
            )
        )
