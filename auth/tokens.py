"""
auth/tokens.py -- Token ledger: opaque bearer tokens for access and refresh.

Security design decisions:
  Secrets: secrets.token_urlsafe() with 40 bytes (access) and 56 bytes
       (refresh) of entropy. Opaque, not JWTs: a token means nothing without
       its ledger row, so revocation is immediate.

  Storage: only HMAC-SHA256(SECRET_KEY, secret) hex digests are persisted.
       The plaintext is returned once by issue() and is unrecoverable after.
       An attacker holding a DB dump cannot replay tokens without also
       holding SECRET_KEY. The digest is deterministic so lookup is a single
       UNIQUE-index probe on every authenticated request.

  Usability: a token resolves iff revoked_at is NULL, expires_at is strictly
       in the future, and the owning account is active. Expiry is checked
       lazily here; rows are never swept so they remain for audit.

  Rotation: rotate_refresh() revokes the presented refresh token with a
       conditional UPDATE (revoked_at IS NULL) in the same transaction that
       issues the replacement pair. Two racing rotations of one secret cannot
       both succeed. Presenting an already-revoked refresh token is logged as
       a possible theft signal [H4].

  TTL floors: access >= 60s, refresh >= 300s regardless of configuration.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.engine import Connection

from auth.models import Account, RequestContext, Session, TokenKind, TokenPair
from auth.store import row_to_account
from core.database import Database
from core.schema import access_tokens, refresh_tokens
from core.schema import users as _users
from core.timeutil import Clock, from_iso, to_iso, utcnow

logger = logging.getLogger("scriptoria.auth.tokens")

ACCESS_TTL_FLOOR = 60
REFRESH_TTL_FLOOR = 300

_ACCESS_SECRET_BYTES = 40
_REFRESH_SECRET_BYTES = 56

_TABLES = {
    TokenKind.ACCESS: access_tokens,
    TokenKind.REFRESH: refresh_tokens,
}


@dataclass(frozen=True)
class Rotation:
    """Result of a successful refresh-token rotation."""

    account: Account
    tokens: TokenPair
    rotated_from: int


class TokenLedger:
    """Issues, resolves, rotates and revokes bearer tokens.

    Usage:
        ledger = TokenLedger(db, settings.secret_key)
        pair = ledger.issue(account, RequestContext(ip="10.0.0.1"))
        ledger.resolve(pair.access_token)         # -> Account
        ledger.rotate_refresh(pair.refresh_token, ctx)  # -> Rotation, once
    """

    def __init__(
        self,
        db: Database,
        secret_key: str,
        access_ttl_seconds: int = 900,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        clock: Clock = utcnow,
    ) -> None:
        self.db = db
        self._key = secret_key.encode("utf-8")
        self.access_ttl = max(ACCESS_TTL_FLOOR, int(access_ttl_seconds))
        self.refresh_ttl = max(REFRESH_TTL_FLOOR, int(refresh_ttl_seconds))
        self._clock = clock

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    def digest(self, secret: str) -> str:
        """Return HMAC-SHA256(SECRET_KEY, secret) as hex."""
        return hmac.new(self._key, secret.encode("utf-8"), hashlib.sha256).hexdigest()

    # ------------------------------------------------------------------
    # Issue / resolve
    # ------------------------------------------------------------------

    def issue(self, account: Account, context: RequestContext, conn: Connection | None = None) -> TokenPair:
        """Mint an access + refresh pair for `account` and persist their digests.

        Pass `conn` to make issuance part of a larger transaction (login,
        registration, rotation).
        """
        access_secret = secrets.token_urlsafe(_ACCESS_SECRET_BYTES)
        refresh_secret = secrets.token_urlsafe(_REFRESH_SECRET_BYTES)
        now = self._clock()
        with self.db.transaction(conn) as c:
            self._insert(c, access_tokens, account.id, access_secret, now + timedelta(seconds=self.access_ttl), context)
            self._insert(
                c, refresh_tokens, account.id, refresh_secret, now + timedelta(seconds=self.refresh_ttl), context
            )
        return TokenPair(
            access_token=access_secret,
            refresh_token=refresh_secret,
            access_ttl=self.access_ttl,
            refresh_ttl=self.refresh_ttl,
        )

    def _insert(
        self, conn: Connection, table, account_id: int, secret: str, expires_at, context: RequestContext
    ) -> None:
        conn.execute(
            table.insert().values(
                user_id=account_id,
                token_hash=self.digest(secret),
                expires_at=to_iso(expires_at),
                created_at=to_iso(self._clock()),
                created_ip=(context.ip or None),
                user_agent=(context.user_agent or "")[:255] or None,
            )
        )

    def resolve(self, access_secret: str | None) -> Account | None:
        """Return the owning Account if the access token is usable, else None."""
        if not access_secret:
            return None
        row = self._lookup(access_tokens, access_secret)
        if row is None or not self._usable(row):
            return None
        return row_to_account(row)

    def _lookup(self, table, secret: str, conn: Connection | None = None):
        stmt = (
            select(
                _users,
                table.c.id.label("token_id"),
                table.c.expires_at.label("token_expires_at"),
                table.c.revoked_at.label("token_revoked_at"),
            )
            .join_from(table, _users, table.c.user_id == _users.c.id)
            .where(table.c.token_hash == self.digest(secret))
        )
        with self.db.connect(conn) as c:
            return c.execute(stmt).fetchone()

    def _usable(self, row) -> bool:
        if row.token_revoked_at is not None or not row.is_active:
            return False
        return self._clock() < from_iso(row.token_expires_at)

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate_refresh(self, refresh_secret: str | None, context: RequestContext) -> Rotation | None:
        """Single-use exchange of a refresh token for a brand-new pair.

        Returns None for unknown, expired, revoked, or inactive-account
        tokens. Callers must treat None as an authentication failure.
        """
        if not refresh_secret:
            return None
        with self.db.transaction() as conn:
            row = self._lookup(refresh_tokens, refresh_secret, conn)
            if row is None:
                return None
            if row.token_revoked_at is not None:
                logger.warning("Revoked refresh token presented for user_id=%s (possible reuse)", row.id)  # [H4]
                return None
            if not self._usable(row):
                return None
            revoked = conn.execute(
                refresh_tokens.update()
                .where((refresh_tokens.c.id == row.token_id) & refresh_tokens.c.revoked_at.is_(None))
                .values(revoked_at=to_iso(self._clock()))
            )
            if revoked.rowcount != 1:
                return None
            account = row_to_account(row)
            tokens = self.issue(account, context, conn)
        return Rotation(account=account, tokens=tokens, rotated_from=row.token_id)

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, secret: str | None, kind: TokenKind) -> int | None:
        """Mark one token revoked. Idempotent.

        Returns the owning account id when a live token was revoked by this
        call, None if the secret is unknown or was already revoked.
        """
        if not secret:
            return None
        table = _TABLES[kind]
        token_hash = self.digest(secret)
        with self.db.transaction() as conn:
            row = conn.execute(
                select(table.c.id, table.c.user_id).where(
                    (table.c.token_hash == token_hash) & table.c.revoked_at.is_(None)
                )
            ).fetchone()
            if row is None:
                return None
            conn.execute(table.update().where(table.c.id == row.id).values(revoked_at=to_iso(self._clock())))
        return row.user_id

    def revoke_all_for_account(self, account_id: int, conn: Connection | None = None) -> int:
        """Revoke every live access and refresh token of one account atomically.

        Returns the number of rows revoked across both tables.
        """
        now = to_iso(self._clock())
        total = 0
        with self.db.transaction(conn) as c:
            for table in (access_tokens, refresh_tokens):
                result = c.execute(
                    table.update()
                    .where((table.c.user_id == account_id) & table.c.revoked_at.is_(None))
                    .values(revoked_at=now)
                )
                total += result.rowcount
        return total

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def list_sessions(self, account_id: int) -> list[Session]:
        """Live refresh tokens of an account, newest first. No secrets."""
        now = self._clock()
        with self.db.connect() as conn:
            rows = conn.execute(
                refresh_tokens.select()
                .where((refresh_tokens.c.user_id == account_id) & refresh_tokens.c.revoked_at.is_(None))
                .order_by(refresh_tokens.c.created_at.desc(), refresh_tokens.c.id.desc())
            ).fetchall()
        sessions = []
        for row in rows:
            expires_at = from_iso(row.expires_at)
            if expires_at <= now:
                continue
            sessions.append(
                Session(
                    id=row.id,
                    created_at=from_iso(row.created_at),
                    expires_at=expires_at,
                    created_ip=row.created_ip,
                    user_agent=row.user_agent,
                )
            )
        return sessions
