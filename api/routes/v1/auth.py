"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST /api/v1/auth/register          -- self-registration; returns user + token pair
  POST /api/v1/auth/login             -- password login; returns user + token pair
  POST /api/v1/auth/refresh           -- single-use refresh token rotation
  POST /api/v1/auth/logout            -- revokes the refresh token and the bearer access token
  GET  /api/v1/auth/me                -- current user info (requires auth)
  POST /api/v1/auth/change-password   -- rotates the password, revokes every token (requires auth)
  GET  /api/v1/auth/sessions          -- live refresh sessions of the current user (requires auth)

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  [C1] LoginGuard provides timing equalization -- use it, never inline
       get_by_username() + verify_password().
  [M5] Cache-Control: no-store on every response that carries token secrets.
  Unknown handle and wrong password both return "bad_credentials".
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    AccountResponse,
    AuthResponse,
    ChangePasswordRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    SessionResponse,
    TokenResponse,
)
from audit.models import STATUS_FAILED, AuditEvent
from audit.store import AuditSink
from auth.dependencies import bearer_token, get_current_user, request_context
from auth.guard import LoginGuard
from auth.models import Account, LoginFailure, TokenKind, TokenPair
from auth.tokens import TokenLedger

# Auth policy:
# - POST /auth/register:         public -- disabled when SELF_REGISTRATION_ENABLED=false
# - POST /auth/login:            public, rate limited
# - POST /auth/refresh:          public -- the refresh token is the credential
# - POST /auth/logout:           public -- revoking a token needs no prior auth
# - GET  /auth/me:               requires auth (get_current_user)
# - POST /auth/change-password:  requires auth (get_current_user)
# - GET  /auth/sessions:         requires auth (get_current_user)
router = APIRouter()

_FAILURES = {
    LoginFailure.BAD_CREDENTIALS: (401, "Invalid username or password."),
    LoginFailure.ACCOUNT_INACTIVE: (403, "This account has been deactivated."),
    LoginFailure.LOCKED: (423, "Too many failed attempts. Try again later."),
}


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _auth_payload(account: Account, pair: TokenPair, status_code: int = 200) -> JSONResponse:
    body = AuthResponse(user=AccountResponse.from_account(account), tokens=TokenResponse.from_pair(pair))
    return _no_store(JSONResponse(status_code=status_code, content=body.model_dump(mode="json")))


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a staff account and sign it in.

    Handle and password rules are enforced by LoginGuard (400 invalid_input);
    a taken handle is 409 username_taken.
    """
    settings = request.app.state.settings
    if not settings.self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )
    guard: LoginGuard = request.app.state.guard
    account, pair = guard.register(body.username, body.password, request_context(request), role=settings.default_role)
    return _auth_payload(account, pair, status_code=201)


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; return a fresh token pair.

    Lockout responses carry retry_after in the body and a Retry-After header.
    """
    guard: LoginGuard = request.app.state.guard
    result = guard.login(body.username, body.password, request_context(request))
    if result.ok:
        return _auth_payload(result.account, result.tokens)

    status_code, message = _FAILURES[result.failure]
    error: dict = {"code": result.failure.value, "message": message}
    if result.retry_after is not None:
        error["retry_after"] = result.retry_after
    resp = JSONResponse(status_code=status_code, content={"error": error})
    if result.retry_after is not None:
        resp.headers["Retry-After"] = str(result.retry_after)
    return _no_store(resp)


@router.post("/auth/refresh", response_model=AuthResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is spent.

    A reused, expired or unknown refresh token is 401 -- never retry it.
    """
    ledger: TokenLedger = request.app.state.ledger
    audit: AuditSink = request.app.state.audit
    context = request_context(request)
    rotation = ledger.rotate_refresh(body.refresh_token, context)
    if rotation is None:
        audit.record(
            AuditEvent(
                action="auth.refresh",
                resource="refresh_tokens",
                status=STATUS_FAILED,
                detail={"reason": "invalid_refresh"},
                ip=context.ip,
                user_agent=context.user_agent,
            )
        )
        raise HTTPException(
            status_code=401,
            detail={"code": "invalid_refresh_token", "message": "Refresh token is invalid or has expired."},
        )
    audit.record(
        AuditEvent(
            action="auth.refresh",
            resource="refresh_tokens",
            resource_id=str(rotation.rotated_from),
            user_id=rotation.account.id,
            detail={"rotatedFrom": rotation.rotated_from},
            ip=context.ip,
            user_agent=context.user_agent,
        )
    )
    return _auth_payload(rotation.account, rotation.tokens)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: LogoutRequest | None = None) -> MessageResponse:
    """Revoke the supplied refresh token and the bearer access token, if any.

    Idempotent: logging out twice, or with tokens that are already dead, is
    still 200.
    """
    ledger: TokenLedger = request.app.state.ledger
    audit: AuditSink = request.app.state.audit
    context = request_context(request)
    owner = ledger.revoke(body.refresh_token if body else None, TokenKind.REFRESH)
    access_owner = ledger.revoke(bearer_token(request), TokenKind.ACCESS)
    user_id = owner if owner is not None else access_owner
    if user_id is not None:
        audit.record(
            AuditEvent(
                action="auth.logout",
                resource="users",
                resource_id=str(user_id),
                user_id=user_id,
                ip=context.ip,
                user_agent=context.user_agent,
            )
        )
    return MessageResponse(message="Logged out.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=AccountResponse)
def me(current_user: Account = Depends(get_current_user)) -> AccountResponse:
    """Return identity information for the currently authenticated user."""
    return AccountResponse.from_account(current_user)


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    current_user: Account = Depends(get_current_user),
) -> MessageResponse:
    """Rotate the password. Every session of the account ends, this one included [M3]."""
    guard: LoginGuard = request.app.state.guard
    guard.change_password(current_user, body.old_password, body.new_password, request_context(request))
    return MessageResponse(message="Password changed. Please sign in again.")


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, current_user: Account = Depends(get_current_user)) -> list[SessionResponse]:
    """Live refresh-token sessions of the current user (metadata only)."""
    ledger: TokenLedger = request.app.state.ledger
    return [SessionResponse.from_session(s) for s in ledger.list_sessions(current_user.id)]
