"""
audit/store.py -- Audit sink: append-only log of security-relevant events.

Guarantees:
  - record() never raises. A failed audit write is logged with its traceback
    and dropped; it must not mask or roll back the operation it describes.
    Callers therefore record AFTER their own transaction has committed.
  - Detail that cannot be serialized to JSON is stored as "{}" rather than
    losing the entry.
  - Keys that look like credentials (password, token, secret) are stripped
    from the detail before serialization, at any nesting depth [M2].
  - Rows are never updated or deleted here. Deleting an account clears
    user_id (ON DELETE SET NULL) but keeps the row.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import select

from audit.models import AuditEntry, AuditEvent
from core.database import Database
from core.schema import audit_logs as _audit
from core.schema import users as _users
from core.timeutil import Clock, from_iso, to_iso, utcnow

logger = logging.getLogger("scriptoria.audit")

_SENSITIVE_KEY_PARTS = ("password", "token", "secret", "hash", "authorization")

MAX_LIST_LIMIT = 200
DEFAULT_LIST_LIMIT = 50


def redact(detail: Any) -> Any:
    """Return `detail` with credential-looking keys removed, recursively."""
    if isinstance(detail, dict):
        return {
            k: redact(v)
            for k, v in detail.items()
            if not any(part in str(k).lower() for part in _SENSITIVE_KEY_PARTS)
        }
    if isinstance(detail, (list, tuple)):
        return [redact(v) for v in detail]
    return detail


def serialize_detail(detail: Any) -> str:
    """JSON-encode a redacted detail blob, falling back to "{}"."""
    if not isinstance(detail, dict):
        return "{}"
    try:
        return json.dumps(redact(detail), ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError):
        logger.warning("Audit detail not serializable; storing empty object")
        return "{}"


class AuditSink:
    """Repository for the audit log."""

    def __init__(self, db: Database, clock: Clock = utcnow) -> None:
        self.db = db
        self._clock = clock

    def record(self, event: AuditEvent) -> None:
        """Append one entry. Fire-and-forget: errors are logged, never raised."""
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    _audit.insert().values(
                        user_id=event.user_id,
                        action=event.action,
                        resource=event.resource,
                        resource_id=event.resource_id,
                        status=event.status,
                        detail=serialize_detail(event.detail),
                        ip=event.ip,
                        user_agent=(event.user_agent or "")[:255] or None,
                        created_at=to_iso(self._clock()),
                    )
                )
        except Exception:  # noqa: BLE001 -- audit must never break the audited operation
            logger.exception("Audit write failed for action=%s", event.action)

    def list_entries(self, limit: int = DEFAULT_LIST_LIMIT) -> list[AuditEntry]:
        """Newest entries first. `limit` is clamped to 1..200."""
        limit = min(max(int(limit), 1), MAX_LIST_LIMIT)
        stmt = (
            select(_audit, _users.c.username)
            .join_from(_audit, _users, _audit.c.user_id == _users.c.id, isouter=True)
            .order_by(_audit.c.created_at.desc(), _audit.c.id.desc())
            .limit(limit)
        )
        with self.db.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_entry(r) for r in rows]


def _row_to_entry(row) -> AuditEntry:
    try:
        detail = json.loads(row.detail or "{}")
    except ValueError:
        detail = {}
    return AuditEntry(
        id=row.id,
        action=row.action,
        resource=row.resource,
        status=row.status,
        detail=detail if isinstance(detail, dict) else {},
        created_at=from_iso(row.created_at),
        user_id=row.user_id,
        username=row.username,
        resource_id=row.resource_id,
        ip=row.ip,
        user_agent=row.user_agent,
    )
