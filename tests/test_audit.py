"""Unit tests for audit/store.py -- the audit sink.

Covers:
- record() persists entries and list_entries() returns them newest first
- credential-looking keys are redacted at any depth
- unserializable detail is stored as {} instead of dropping the entry
- a failing write is logged and swallowed, never raised
- list limits are clamped to 1..200
- deleting an account keeps its audit rows with a NULL user
"""

from __future__ import annotations

from datetime import datetime

import pytest

from audit.models import STATUS_FAILED, AuditEvent
from audit.store import AuditSink, redact, serialize_detail
from auth.models import Account
from auth.store import AccountStore


class TestRedact:
    def test_drops_sensitive_keys(self) -> None:
        detail = {"username": "ana", "password": "x", "newPassword": "y", "refresh_token": "z", "apiSecret": "s"}
        assert redact(detail) == {"username": "ana"}

    def test_nested(self) -> None:
        detail = {"to": {"role": "staff", "Authorization": "Bearer abc"}, "items": [{"token": 1, "id": 2}]}
        assert redact(detail) == {"to": {"role": "staff"}, "items": [{"id": 2}]}

    def test_drops_hash_keys(self) -> None:
        detail = {"username": "ana", "password_hash": "scrypt$a$b", "oldHash": "$2b$04$x"}
        assert redact(detail) == {"username": "ana"}

    def test_unserializable_detail_becomes_empty(self) -> None:
        assert serialize_detail({"when": datetime(2026, 1, 1)}) == "{}"
        assert serialize_detail({"ratio": float("nan")}) == "{}"

    def test_non_dict_detail_becomes_empty(self) -> None:
        assert serialize_detail(["a", "b"]) == "{}"


class TestAuditSink:
    def test_record_and_list(self, audit: AuditSink, clock) -> None:
        first_at = clock.now
        audit.record(AuditEvent(action="auth.login", resource="users", ip="10.0.0.1"))
        clock.advance(seconds=1)
        audit.record(AuditEvent(action="auth.logout", resource="users", status=STATUS_FAILED, detail={"n": 1}))
        entries = audit.list_entries()
        assert [e.action for e in entries] == ["auth.logout", "auth.login"]
        assert entries[0].status == "failed"
        assert entries[0].detail == {"n": 1}
        assert entries[1].ip == "10.0.0.1"
        assert entries[1].created_at == first_at

    def test_secrets_never_reach_storage(self, audit: AuditSink) -> None:
        audit.record(AuditEvent(action="auth.change_password", resource="users", detail={"password": "hunter22"}))
        assert audit.list_entries(1)[0].detail == {}

    def test_username_is_joined(self, audit: AuditSink, accounts: AccountStore) -> None:
        uid = accounts.create_account(Account(username="ana", password_hash="scrypt$x$00"))
        audit.record(AuditEvent(action="auth.login", resource="users", user_id=uid))
        assert audit.list_entries(1)[0].username == "ana"

    def test_deleted_account_keeps_rows(self, audit: AuditSink, accounts: AccountStore) -> None:
        uid = accounts.create_account(Account(username="ana", password_hash="scrypt$x$00"))
        audit.record(AuditEvent(action="auth.login", resource="users", user_id=uid))
        accounts.delete_account(uid)
        entry = audit.list_entries(1)[0]
        assert entry.user_id is None
        assert entry.username is None

    def test_write_failure_is_swallowed(self, audit: AuditSink, caplog) -> None:
        """An FK violation inside record() is logged, not raised."""
        with caplog.at_level("ERROR", logger="scriptoria.audit"):
            audit.record(AuditEvent(action="auth.login", resource="users", user_id=9999))
        assert "Audit write failed" in caplog.text
        assert audit.list_entries() == []

    @pytest.mark.parametrize("limit,expected", [(0, 1), (-5, 1), (3, 3), (500, 200)])
    def test_limit_is_clamped(self, audit: AuditSink, limit: int, expected: int) -> None:
        for i in range(205):
            audit.record(AuditEvent(action=f"test.{i}", resource="tests"))
        assert len(audit.list_entries(limit)) == expected
