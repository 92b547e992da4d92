"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; these types only carry shape across layer boundaries.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

# Roles are a fixed small set. Anything else is rejected at the API boundary.
ROLES: tuple[str, ...] = ("admin", "manager", "staff", "viewer")

# Roles allowed to create and edit stories and documents.
WRITE_ROLES: frozenset[str] = frozenset({"admin", "manager", "staff"})

HANDLE_PATTERN = r"^[a-z0-9._-]{3,32}$"
MIN_PASSWORD_LENGTH = 8


def normalize_handle(raw: str) -> str:
    """Case-normalize a login handle. Uniqueness is enforced on this form."""
    return raw.strip().lower()


@dataclass
class Account:
    """A local identity.

    password_hash is the persisted composite string (see auth/passwords.py);
    it never leaves the auth package in API responses.

    failed_attempts and locked_until together encode the LoginGuard state:
    locked_until in the future means Locked(until); otherwise
    Unlocked(failed_attempts).
    """

    username: str
    password_hash: str
    role: str = "staff"
    id: int | None = None
    is_active: bool = True
    failed_attempts: int = 0
    locked_until: datetime | None = None
    last_login_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class RequestContext:
    """Issuance metadata recorded alongside tokens and audit entries."""

    ip: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class TokenPair:
    """Plaintext secrets, returned exactly once at issue time."""

    access_token: str
    refresh_token: str
    access_ttl: int
    refresh_ttl: int


@dataclass(frozen=True)
class Session:
    """Metadata of one live refresh token. Never carries the secret."""

    id: int
    created_at: datetime
    expires_at: datetime
    created_ip: str | None
    user_agent: str | None


class LoginFailure(str, Enum):
    BAD_CREDENTIALS = "bad_credentials"
    ACCOUNT_INACTIVE = "account_inactive"
    LOCKED = "account_locked"


@dataclass(frozen=True)
class LoginResult:
    """Outcome of LoginGuard.login(). Exactly one of tokens / failure is set."""

    account: Account | None = None
    tokens: TokenPair | None = None
    failure: LoginFailure | None = None
    retry_after: int | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None
