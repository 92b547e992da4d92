"""
core/schema.py -- SQLAlchemy Core table definitions for the whole service.

All tables hang off one MetaData so foreign keys resolve across packages
(tokens and audit entries reference users; documents and revisions reference
stories). Stores import the Table objects they own from here.

Ownership / cascade rules:
  users -> access_tokens, refresh_tokens   ON DELETE CASCADE
  users -> audit_logs                      ON DELETE SET NULL (rows retained)
  users -> stories                         ON DELETE CASCADE
  stories -> story_documents, revisions    ON DELETE CASCADE
  users -> story_document_revisions        ON DELETE SET NULL (created_by)

SQLite only enforces these when PRAGMA foreign_keys=ON, which
core/database.py sets on every new connection.

Timestamps are TEXT in the fixed-width format produced by core.timeutil.to_iso.
"""

from __future__ import annotations

from sqlalchemy import Column, ForeignKey, Index, Integer, MetaData, String, Table, Text

metadata = MetaData()

# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(32), nullable=False, unique=True),  # trimmed + lower-cased
    Column("password_hash", Text, nullable=False),  # scrypt$<salt>$<digest>
    Column("role", String(16), nullable=False, server_default="staff"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(40)),
    Column("last_login_at", String(40)),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
)


# ---------------------------------------------------------------------------
# Bearer tokens -- access and refresh are structurally identical
# ---------------------------------------------------------------------------


def _token_table(name: str) -> Table:
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
        Column("expires_at", String(40), nullable=False),
        Column("revoked_at", String(40)),
        Column("created_at", String(40), nullable=False),
        Column("created_ip", String(64)),
        Column("user_agent", String(255)),
        Index(f"ix_{name}_user_id", "user_id"),
    )


access_tokens = _token_table("access_tokens")
refresh_tokens = _token_table("refresh_tokens")


# ---------------------------------------------------------------------------
# Audit log (append-only)
# ---------------------------------------------------------------------------

audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="SET NULL")),
    Column("action", String(80), nullable=False),
    Column("resource", String(80), nullable=False),
    Column("resource_id", String(64)),
    Column("status", String(16), nullable=False),  # "success" | "failed"
    Column("detail", Text, nullable=False, server_default="{}"),  # JSON object
    Column("ip", String(64)),
    Column("user_agent", String(255)),
    Column("created_at", String(40), nullable=False),
    Index("ix_audit_logs_created_at", "created_at"),
)


# ---------------------------------------------------------------------------
# Story catalog (boundary collaborator of the document engine)
# ---------------------------------------------------------------------------

stories = Table(
    "stories",
    metadata,
    Column("id", String(36), primary_key=True),  # uuid4 text
    Column("owner_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("title", String(200), nullable=False),
    Column("status", String(16), nullable=False, server_default="Draft"),
    Column("cover_image", Text),
    Column("created_at", String(40), nullable=False),
    Column("updated_at", String(40), nullable=False),
    Index("ix_stories_owner_id", "owner_id"),
)


# ---------------------------------------------------------------------------
# Documents and revision history
# ---------------------------------------------------------------------------

story_documents = Table(
    "story_documents",
    metadata,
    Column("story_id", String(36), ForeignKey("stories.id", ondelete="CASCADE"), primary_key=True),
    Column("chapters_json", Text, nullable=False),
    Column("published_at", String(40)),
    Column("updated_at", String(40), nullable=False),
)

story_document_revisions = Table(
    "story_document_revisions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("story_id", String(36), ForeignKey("stories.id", ondelete="CASCADE"), nullable=False),
    Column("chapters_json", Text, nullable=False),
    Column("chapter_count", Integer, nullable=False),
    Column("word_count", Integer, nullable=False),
    Column("created_by", Integer, ForeignKey("users.id", ondelete="SET NULL")),
    Column("note", String(180), nullable=False, server_default=""),
    Column("created_at", String(40), nullable=False),
    Index("ix_story_document_revisions_story", "story_id", "created_at"),
)
