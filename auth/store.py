"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts.

Pattern: Repository + Data Mapper. AccountStore is the repository;
row_to_account is the mapper (auth/tokens.py reuses it when a token lookup
joins users). Route and service code never touches SQL.

Every method accepts an optional `conn`. When given, the statement runs on
the caller's transaction (LoginGuard and change-password compose several
writes atomically); otherwise the store opens its own.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Handles are stored trimmed and lower-cased; the UNIQUE constraint on that
  form is the only uniqueness check. Callers treat IntegrityError from
  create_account() as "handle taken" [M1].

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.engine import Connection

from auth.models import Account, normalize_handle
from core.database import Database
from core.schema import users as _users
from core.timeutil import Clock, from_iso, to_iso, utcnow


class AccountStore:
    """Repository for Account entities.

    Usage:
        store = AccountStore(db)
        uid = store.create_account(Account(username="ana", password_hash=hash_password("secret-pw")))
        account = store.get_by_username("ANA ")
    """

    def __init__(self, db: Database, clock: Clock = utcnow) -> None:
        self.db = db
        self._clock = clock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_by_username(self, username: str, conn: Connection | None = None) -> Account | None:
        """Look up by handle. The lookup key is normalized first."""
        with self.db.connect(conn) as c:
            row = c.execute(_users.select().where(_users.c.username == normalize_handle(username))).fetchone()
        return row_to_account(row) if row is not None else None

    def get_by_id(self, account_id: int, conn: Connection | None = None) -> Account | None:
        with self.db.connect(conn) as c:
            row = c.execute(_users.select().where(_users.c.id == account_id)).fetchone()
        return row_to_account(row) if row is not None else None

    def list_accounts(self) -> list[Account]:
        """Return all accounts ordered by handle. Admin-only operation."""
        with self.db.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.username)).fetchall()
        return [row_to_account(r) for r in rows]

    def count_active_admins(self) -> int:
        """Used by the admin routes to refuse demoting or deleting the last admin."""
        with self.db.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(_users).where((_users.c.role == "admin") & (_users.c.is_active == 1))
            ).scalar()
        return count or 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_account(self, account: Account, conn: Connection | None = None) -> int:
        """Insert a new account and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the normalized handle exists.
        """
        now = to_iso(self._clock())
        with self.db.transaction(conn) as c:
            result = c.execute(
                _users.insert().values(
                    username=normalize_handle(account.username),
                    password_hash=account.password_hash,
                    role=account.role,
                    is_active=1 if account.is_active else 0,
                    failed_attempts=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def record_failed_attempt(
        self,
        account_id: int,
        attempts: int,
        locked_until: datetime | None,
        conn: Connection | None = None,
    ) -> None:
        """Persist the post-failure lockout state computed by LoginGuard."""
        with self.db.transaction(conn) as c:
            c.execute(
                _users.update()
                .where(_users.c.id == account_id)
                .values(
                    failed_attempts=attempts,
                    locked_until=to_iso(locked_until) if locked_until else None,
                    updated_at=to_iso(self._clock()),
                )
            )

    def record_successful_login(self, account_id: int, at: datetime, conn: Connection | None = None) -> None:
        """Reset the attempt counter, clear any lock, and stamp last login."""
        with self.db.transaction(conn) as c:
            c.execute(
                _users.update()
                .where(_users.c.id == account_id)
                .values(failed_attempts=0, locked_until=None, last_login_at=to_iso(at), updated_at=to_iso(at))
            )

    def update_password_hash(self, account_id: int, password_hash: str, conn: Connection | None = None) -> bool:
        with self.db.transaction(conn) as c:
            result = c.execute(
                _users.update()
                .where(_users.c.id == account_id)
                .values(password_hash=password_hash, updated_at=to_iso(self._clock()))
            )
        return result.rowcount > 0

    def update_account(self, account_id: int, conn: Connection | None = None, **fields) -> bool:
        """Update role and/or is_active. Returns False if the ID is unknown."""
        if "is_active" in fields:
            fields["is_active"] = 1 if fields["is_active"] else 0
        fields["updated_at"] = to_iso(self._clock())
        with self.db.transaction(conn) as c:
            result = c.execute(_users.update().where(_users.c.id == account_id).values(**fields))
        return result.rowcount > 0

    def delete_account(self, account_id: int) -> bool:
        """Delete an account. Tokens and stories cascade; audit rows keep a NULL user."""
        with self.db.transaction() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == account_id))
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def row_to_account(row) -> Account:
    return Account(
        id=row.id,
        username=row.username,
        password_hash=row.password_hash,
        role=row.role,
        is_active=bool(row.is_active),
        failed_attempts=row.failed_attempts or 0,
        locked_until=from_iso(row.locked_until),
        last_login_at=from_iso(row.last_login_at),
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )
