"""Unit tests for auth/tokens.py -- the token ledger.

Covers:
- issue() returns plaintext once and persists only HMAC digests
- resolve() honours expiry (strict), revocation, and account deactivation
- rotate_refresh() is single-use; a replayed refresh token is refused
- revoke() is idempotent; revoke_all_for_account() kills every live token
- TTL floors and session listing
"""

from __future__ import annotations

import threading

import pytest
from sqlalchemy import select

from auth.models import Account, RequestContext, TokenKind
from auth.store import AccountStore
from auth.tokens import ACCESS_TTL_FLOOR, REFRESH_TTL_FLOOR, TokenLedger
from core.database import Database
from core.schema import access_tokens, refresh_tokens

CTX = RequestContext(ip="10.0.0.7", user_agent="pytest-agent")
KEY = "test-secret-key-with-at-least-32-characters"


@pytest.fixture
def account(accounts: AccountStore) -> Account:
    uid = accounts.create_account(Account(username="ana", password_hash="scrypt$x$00"))
    return accounts.get_by_id(uid)


class TestIssue:
    def test_pair_secrets_are_distinct_and_unpredictable(self, ledger: TokenLedger, account: Account) -> None:
        first = ledger.issue(account, CTX)
        second = ledger.issue(account, CTX)
        assert first.access_token != first.refresh_token
        assert first.access_token != second.access_token
        assert len(first.refresh_token) > len(first.access_token)

    def test_only_digests_are_stored(self, db: Database, ledger: TokenLedger, account: Account) -> None:
        pair = ledger.issue(account, CTX)
        with db.connect() as conn:
            stored = conn.execute(select(access_tokens.c.token_hash)).scalars().all()
            stored += conn.execute(select(refresh_tokens.c.token_hash)).scalars().all()
        assert pair.access_token not in stored
        assert pair.refresh_token not in stored
        assert ledger.digest(pair.access_token) in stored

    def test_digest_is_keyed(self, db: Database) -> None:
        """The same secret under two keys yields two digests."""
        other = TokenLedger(db, "another-secret-key-with-32-characters-plus")
        ledger = TokenLedger(db, KEY)
        assert ledger.digest("abc") != other.digest("abc")

    def test_issue_records_context(self, db: Database, ledger: TokenLedger, account: Account) -> None:
        ledger.issue(account, CTX)
        with db.connect() as conn:
            row = conn.execute(refresh_tokens.select()).fetchone()
        assert row.created_ip == "10.0.0.7"
        assert row.user_agent == "pytest-agent"

    def test_ttl_floors(self, db: Database) -> None:
        ledger = TokenLedger(db, KEY, access_ttl_seconds=1, refresh_ttl_seconds=1)
        assert ledger.access_ttl == ACCESS_TTL_FLOOR
        assert ledger.refresh_ttl == REFRESH_TTL_FLOOR


class TestResolve:
    def test_resolves_live_token(self, ledger: TokenLedger, account: Account) -> None:
        pair = ledger.issue(account, CTX)
        resolved = ledger.resolve(pair.access_token)
        assert resolved is not None
        assert resolved.id == account.id
        assert resolved.username == "ana"

    @pytest.mark.parametrize("secret", [None, "", "not-a-real-token"])
    def test_unknown_or_missing_is_none(self, ledger: TokenLedger, secret) -> None:
        assert ledger.resolve(secret) is None

    def test_refresh_secret_is_not_an_access_token(self, ledger: TokenLedger, account: Account) -> None:
        pair = ledger.issue(account, CTX)
        assert ledger.resolve(pair.refresh_token) is None

    def test_expiry_is_strict(self, ledger: TokenLedger, account: Account, clock) -> None:
        """Usable one microsecond before expiry, dead exactly at it."""
        pair = ledger.issue(account, CTX)
        clock.advance(seconds=ledger.access_ttl, microseconds=-1)
        assert ledger.resolve(pair.access_token) is not None
        clock.advance(microseconds=1)
        assert ledger.resolve(pair.access_token) is None

    def test_inactive_account_is_none(self, ledger: TokenLedger, accounts: AccountStore, account: Account) -> None:
        pair = ledger.issue(account, CTX)
        accounts.update_account(account.id, is_active=False)
        assert ledger.resolve(pair.access_token) is None


class TestRotateRefresh:
    def test_rotation_returns_new_pair(self, ledger: TokenLedger, account: Account) -> None:
        pair = ledger.issue(account, CTX)
        rotation = ledger.rotate_refresh(pair.refresh_token, CTX)
        assert rotation is not None
        assert rotation.account.id == account.id
        assert rotation.tokens.refresh_token != pair.refresh_token
        assert ledger.resolve(rotation.tokens.access_token) is not None

    def test_refresh_token_is_single_use(self, ledger: TokenLedger, account: Account) -> None:
        pair = ledger.issue(account, CTX)
        assert ledger.rotate_refresh(pair.refresh_token, CTX) is not None
        assert ledger.rotate_refresh(pair.refresh_token, CTX) is None

    def test_replay_is_logged(self, ledger: TokenLedger, account: Account, caplog) -> None:
        pair = ledger.issue(account, CTX)
        ledger.rotate_refresh(pair.refresh_token, CTX)
        with caplog.at_level("WARNING", logger="scriptoria.auth.tokens"):
            ledger.rotate_refresh(pair.refresh_token, CTX)
        assert "possible reuse" in caplog.text

    def test_expired_refresh_is_refused(self, ledger: TokenLedger, account: Account, clock) -> None:
        pair = ledger.issue(account, CTX)
        clock.advance(seconds=ledger.refresh_ttl)
        assert ledger.rotate_refresh(pair.refresh_token, CTX) is None

    def test_access_secret_cannot_rotate(self, ledger: TokenLedger, account: Account) -> None:
        pair = ledger.issue(account, CTX)
        assert ledger.rotate_refresh(pair.access_token, CTX) is None

    def test_inactive_account_cannot_rotate(
        self, ledger: TokenLedger, accounts: AccountStore, account: Account
    ) -> None:
        pair = ledger.issue(account, CTX)
        accounts.update_account(account.id, is_active=False)
        assert ledger.rotate_refresh(pair.refresh_token, CTX) is None

    def test_concurrent_rotation_has_one_winner(self, tmp_path) -> None:
        """Two threads racing on one refresh secret: exactly one rotation succeeds."""
        db = Database(f"sqlite:///{tmp_path / 'race.db'}")
        db.create_schema()
        store = AccountStore(db)
        uid = store.create_account(Account(username="racer", password_hash="scrypt$x$00"))
        ledger = TokenLedger(db, KEY)
        pair = ledger.issue(store.get_by_id(uid), CTX)

        results = []
        barrier = threading.Barrier(2)

        def rotate() -> None:
            barrier.wait()
            results.append(ledger.rotate_refresh(pair.refresh_token, CTX))

        threads = [threading.Thread(target=rotate) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        db.close()

        assert len([r for r in results if r is not None]) == 1


class TestRevoke:
    def test_revoke_access_token(self, ledger: TokenLedger, account: Account) -> None:
        pair = ledger.issue(account, CTX)
        assert ledger.revoke(pair.access_token, TokenKind.ACCESS) == account.id
        assert ledger.resolve(pair.access_token) is None

    def test_revoke_is_idempotent(self, ledger: TokenLedger, account: Account) -> None:
        pair = ledger.issue(account, CTX)
        ledger.revoke(pair.refresh_token, TokenKind.REFRESH)
        assert ledger.revoke(pair.refresh_token, TokenKind.REFRESH) is None
        assert ledger.revoke(None, TokenKind.REFRESH) is None

    def test_revoke_all_for_account(self, ledger: TokenLedger, account: Account) -> None:
        first = ledger.issue(account, CTX)
        second = ledger.issue(account, CTX)
        assert ledger.revoke_all_for_account(account.id) == 4
        assert ledger.resolve(first.access_token) is None
        assert ledger.resolve(second.access_token) is None
        assert ledger.rotate_refresh(second.refresh_token, CTX) is None
        assert ledger.revoke_all_for_account(account.id) == 0

    def test_revoke_all_leaves_other_accounts(
        self, ledger: TokenLedger, accounts: AccountStore, account: Account
    ) -> None:
        other = accounts.get_by_id(accounts.create_account(Account(username="ben", password_hash="scrypt$x$00")))
        mine = ledger.issue(account, CTX)
        theirs = ledger.issue(other, CTX)
        ledger.revoke_all_for_account(account.id)
        assert ledger.resolve(mine.access_token) is None
        assert ledger.resolve(theirs.access_token) is not None


class TestSessions:
    def test_lists_live_refresh_tokens_newest_first(self, ledger: TokenLedger, account: Account, clock) -> None:
        ledger.issue(account, CTX)
        clock.advance(seconds=10)
        newest = ledger.issue(account, RequestContext(ip="10.0.0.8"))
        sessions = ledger.list_sessions(account.id)
        assert len(sessions) == 2
        assert sessions[0].created_ip == "10.0.0.8"
        ledger.revoke(newest.refresh_token, TokenKind.REFRESH)
        assert len(ledger.list_sessions(account.id)) == 1

    def test_expired_sessions_are_hidden(self, ledger: TokenLedger, account: Account, clock) -> None:
        ledger.issue(account, CTX)
        clock.advance(seconds=ledger.refresh_ttl + 1)
        assert ledger.list_sessions(account.id) == []
