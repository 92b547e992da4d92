"""
audit/models.py -- Domain dataclasses for the append-only audit log.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


@dataclass
class AuditEvent:
    """One security-relevant event, as handed to AuditSink.record()."""

    action: str  # dotted verb, e.g. "auth.login", "story.document.update_blocked"
    resource: str  # table-ish noun, e.g. "users", "story_documents"
    status: str = STATUS_SUCCESS
    user_id: int | None = None
    resource_id: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)
    ip: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class AuditEntry:
    """A persisted audit row, joined with the acting handle when it still exists."""

    id: int
    action: str
    resource: str
    status: str
    detail: dict[str, Any]
    created_at: datetime
    user_id: int | None = None
    username: str | None = None
    resource_id: str | None = None
    ip: str | None = None
    user_agent: str | None = None
