"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Bearer tokens only: "Authorization: Bearer <access token>". The secret is
resolved through the TokenLedger held on app.state; a revoked, expired, or
unknown token and an inactive account all look the same to the caller.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_roles(...) builds a dependency that raises HTTP 403 for other roles.
require_admin / require_writer are the two instances the routes use.

Layer rule: auth/dependencies.py may import from fastapi (for Depends /
HTTPException / Request) because this module is part of the FastAPI
dependency injection system. Nothing else in auth/ does.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.models import WRITE_ROLES, Account, RequestContext
from auth.tokens import TokenLedger


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header[:7].lower() == "bearer ":
        return auth_header[7:].strip() or None
    return None


def request_context(request: Request) -> RequestContext:
    """Issuance metadata (client address, user agent) for tokens and audit rows."""
    return RequestContext(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )


def try_get_current_user(request: Request) -> Account | None:
    """Resolve the bearer token to an Account. Never raises."""
    ledger: TokenLedger = request.app.state.ledger
    return ledger.resolve(bearer_token(request))


def get_current_user(request: Request) -> Account:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: Account = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthenticated", "message": "Token is invalid or has expired."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_roles(*roles: str, message: str = "Your role does not allow this action.") -> Callable[[Request], Account]:
    allowed = frozenset(roles)

    def dependency(request: Request) -> Account:
        user = get_current_user(request)
        if user.role not in allowed:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": message},
            )
        return user

    return dependency


require_admin = require_roles("admin", message="Admin access required.")
require_writer = require_roles(*sorted(WRITE_ROLES), message="Your role does not allow editing stories.")
