"""
core/errors.py -- Error taxonomy shared by every Scriptoria component.

Every rejection the service can produce maps to one ErrorKind. The kind fixes
the HTTP status; the `code` on ServiceError is the stable machine-readable
reason clients branch on (e.g. "risky_overwrite", "account_locked").

Propagation policy:
  - The credential vault and token ledger never raise for expected negative
    outcomes (bad password, unknown token). They return False / None.
  - LoginGuard returns a LoginResult value; the login route maps each
    LoginFailure to its status code.
  - DocumentEngine returns OverwriteConflict as a value and raises
    ServiceError for not-found / invalid-input.
  - Anything else that escapes is Internal. Open transactions are rolled back
    by Database.transaction() before the exception reaches the handler.

Layer rule: core/ is the kernel. No imports from other Scriptoria packages.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    LOCKED = "locked"
    NOT_FOUND = "not_found"
    UPSTREAM_FAILURE = "upstream_failure"
    INTERNAL = "internal"

    @property
    def status_code(self) -> int:
        return _STATUS_CODES[self]


_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.UNAUTHENTICATED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.CONFLICT: 409,
    ErrorKind.LOCKED: 423,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UPSTREAM_FAILURE: 502,
    ErrorKind.INTERNAL: 500,
}


class ServiceError(Exception):
    """A typed, user-visible failure.

    Args:
        kind:        Taxonomy bucket; decides the HTTP status.
        message:     Human-readable explanation, safe to show to the caller.
        code:        Stable reason string. Defaults to the kind's value.
        meta:        Optional structured context (e.g. word counts).
        retry_after: Seconds until a retry can succeed. Required for LOCKED.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        code: str | None = None,
        meta: dict[str, Any] | None = None,
        retry_after: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.code = code or kind.value
        self.meta = meta
        self.retry_after = retry_after

    @property
    def status_code(self) -> int:
        return self.kind.status_code

    def to_payload(self) -> dict[str, Any]:
        """Return the body of the {"error": ...} envelope."""
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.meta is not None:
            payload["meta"] = self.meta
        if self.retry_after is not None:
            payload["retry_after"] = self.retry_after
        return payload


def not_found(message: str) -> ServiceError:
    return ServiceError(ErrorKind.NOT_FOUND, message)


def invalid_input(message: str, *, code: str | None = None) -> ServiceError:
    return ServiceError(ErrorKind.INVALID_INPUT, message, code=code)
