"""
api/routes/v1/admin.py -- User management and audit log (admin only).

Routes:
  GET    /api/v1/admin/users             -- list all accounts
  POST   /api/v1/admin/users             -- create an account with any role
  PATCH  /api/v1/admin/users/{id}        -- change role and/or active flag
  DELETE /api/v1/admin/users/{id}        -- delete an account (tokens cascade, audit rows kept)
  GET    /api/v1/admin/audit-logs        -- newest audit entries (?limit=1..200, default 50)

Security:
  [M4] An admin cannot deactivate, demote or delete themselves, and the last
       active admin cannot be deactivated, demoted or deleted.
  Deactivating an account revokes its tokens in the same transaction that
  clears the active flag; resolve() would reject them anyway, but
  revocation makes the cut-off visible in the token rows.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from api.models import AccountResponse, AdminUserCreate, AdminUserPatch, AuditEntryResponse
from audit.models import AuditEvent
from audit.store import DEFAULT_LIST_LIMIT, MAX_LIST_LIMIT, AuditSink
from auth.dependencies import request_context, require_admin
from auth.guard import LoginGuard
from auth.models import Account
from auth.store import AccountStore
from auth.tokens import TokenLedger
from core.database import Database

router = APIRouter()


def _get_target(store: AccountStore, user_id: int) -> Account:
    target = store.get_by_id(user_id)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return target


def _guard_last_admin(store: AccountStore, target: Account, current_user: Account) -> None:
    """[M4] Refuse changes that would lock every admin out."""
    if target.id == current_user.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_modification", "message": "You cannot demote, deactivate or delete yourself."},
        )
    if target.role == "admin" and target.is_active and store.count_active_admins() <= 1:
        raise HTTPException(
            status_code=400,
            detail={"code": "last_admin", "message": "Cannot remove the last active admin account."},
        )


@router.get("/admin/users", response_model=list[AccountResponse])
def list_users(request: Request, current_user: Account = Depends(require_admin)) -> list[AccountResponse]:
    store: AccountStore = request.app.state.accounts
    return [AccountResponse.from_account(a) for a in store.list_accounts()]


@router.post("/admin/users", response_model=AccountResponse, status_code=201)
def create_user(
    request: Request,
    body: AdminUserCreate,
    current_user: Account = Depends(require_admin),
) -> AccountResponse:
    """Create an account with an explicit role. Same handle/password rules as registration."""
    guard: LoginGuard = request.app.state.guard
    audit: AuditSink = request.app.state.audit
    account = guard.provision(body.username, body.password, role=body.role.value)
    context = request_context(request)
    audit.record(
        AuditEvent(
            action="admin.create_user",
            resource="users",
            resource_id=str(account.id),
            user_id=current_user.id,
            detail={"username": account.username, "role": account.role},
            ip=context.ip,
            user_agent=context.user_agent,
        )
    )
    return AccountResponse.from_account(account)


@router.patch("/admin/users/{user_id}", response_model=AccountResponse)
def update_user(
    request: Request,
    user_id: int,
    body: AdminUserPatch,
    current_user: Account = Depends(require_admin),
) -> AccountResponse:
    store: AccountStore = request.app.state.accounts
    ledger: TokenLedger = request.app.state.ledger
    audit: AuditSink = request.app.state.audit
    target = _get_target(store, user_id)

    updates: dict = {}
    if body.role is not None and body.role.value != target.role:
        updates["role"] = body.role.value
    if body.is_active is not None and body.is_active != target.is_active:
        updates["is_active"] = body.is_active
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    if updates.get("role", "admin") != "admin" or updates.get("is_active") is False:
        _guard_last_admin(store, target, current_user)

    db: Database = request.app.state.db
    with db.transaction() as conn:
        store.update_account(user_id, conn, **updates)
        if updates.get("is_active") is False:
            ledger.revoke_all_for_account(user_id, conn)

    context = request_context(request)
    audit.record(
        AuditEvent(
            action="admin.change_role" if "role" in updates else "admin.update_user",
            resource="users",
            resource_id=str(user_id),
            user_id=current_user.id,
            detail={"from": {"role": target.role, "is_active": target.is_active}, "to": updates},
            ip=context.ip,
            user_agent=context.user_agent,
        )
    )
    return AccountResponse.from_account(_get_target(store, user_id))


@router.delete("/admin/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: int,
    current_user: Account = Depends(require_admin),
) -> Response:
    store: AccountStore = request.app.state.accounts
    audit: AuditSink = request.app.state.audit
    target = _get_target(store, user_id)
    _guard_last_admin(store, target, current_user)
    store.delete_account(user_id)
    context = request_context(request)
    audit.record(
        AuditEvent(
            action="admin.delete_user",
            resource="users",
            resource_id=str(user_id),
            user_id=current_user.id,
            detail={"username": target.username},
            ip=context.ip,
            user_agent=context.user_agent,
        )
    )
    return Response(status_code=204)


@router.get("/admin/audit-logs", response_model=list[AuditEntryResponse])
def list_audit_logs(
    request: Request,
    limit: int = Query(default=DEFAULT_LIST_LIMIT, ge=1, le=MAX_LIST_LIMIT),
    current_user: Account = Depends(require_admin),
) -> list[AuditEntryResponse]:
    audit: AuditSink = request.app.state.audit
    return [AuditEntryResponse.from_entry(e) for e in audit.list_entries(limit)]
