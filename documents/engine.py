"""
documents/engine.py -- Document revision engine: safe writes, history, publishing.

A story's document is an ordered list of chapters. Every accepted or held
write first snapshots the document as it stood into story_document_revisions,
so a bad save can always be undone from history.

Write pipeline (commit_write), one transaction:
  1. Ownership check through the catalog (story id + owner id).
  2. Load the live document, materializing the blank placeholder if absent.
  3. Snapshot it as a revision, unless the write leaves the chapters
     unchanged or they are byte-identical to the newest revision.
  4. Run the overwrite-risk heuristic. A risky write without force=True is
     returned as an OverwriteConflict value (the snapshot still commits).
  5. Otherwise replace the chapters, apply the three-state publish date,
     and stamp updated_at.

Risk heuristic (evaluate_overwrite_risk) -- advisory, not a correctness check:
  existing words < min_existing_words           -> never risky
  incoming is one chapter, blank body, and a
  blank or placeholder ("Chapter 1") title      -> risky ("blank slate")
  chapter count drops by >= chapter_drop AND
  incoming words <= max(loss_floor_words,
                        floor(existing * loss_ratio)) -> risky ("large loss")

Word count: whitespace-delimited tokens over "title\\nbody" of every chapter,
joined with blank lines. Titles count.

Story status machine (catalog/models.py TRANSITIONS):
  Draft -> Review -> Published -> Completed, Archived from any non-terminal
  state. Entering Published goes through publish(): non-empty cover and a
  positive word count. Completed is reachable only from Published and
  re-validates the word count at transition time.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
import math
import re
import uuid
from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy import select
from sqlalchemy.engine import Connection

from audit.models import STATUS_FAILED, STATUS_SUCCESS, AuditEvent
from audit.store import AuditSink
from auth.models import RequestContext
from catalog.models import COVER_REQUIRED, TRANSITIONS, Story, StoryStatus
from catalog.store import StoryStore
from core.database import Database
from core.errors import ErrorKind, ServiceError, invalid_input, not_found
from core.schema import story_document_revisions as _revisions
from core.schema import story_documents as _documents
from core.timeutil import Clock, from_iso, to_iso, utcnow
from documents.models import (
    Chapter,
    DocumentRevision,
    OverwriteConflict,
    PublishDate,
    PublishOutcome,
    RiskPolicy,
    StoryDocument,
)

logger = logging.getLogger("scriptoria.documents")

NOTE_MAX_LENGTH = 180
NOTE_BEFORE_UPDATE = "before_update"
NOTE_BEFORE_FORCE_UPDATE = "before_force_update"
NOTE_BEFORE_BLOCKED_UPDATE = "before_blocked_update"

DEFAULT_MAX_BYTES = 5 * 1024 * 1024


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def count_words(chapters: Iterable[Chapter]) -> int:
    text = "\n\n".join(f"{c.title}\n{c.body}" for c in chapters).strip()
    if not text:
        return 0
    return len(text.split())


def placeholder_chapter() -> Chapter:
    return Chapter(id=str(uuid.uuid4()), title="", body="")


def _coerce_chapter(raw: Any) -> Chapter | None:
    if isinstance(raw, Chapter):
        source: Mapping[str, Any] = raw.to_dict()
    elif isinstance(raw, Mapping):
        source = raw
    else:
        return None
    body = source.get("body")
    if body is None:
        body = source.get("content")
    chapter_id = str(source.get("id") or "").strip() or str(uuid.uuid4())
    return Chapter(
        id=chapter_id,
        title=str(source.get("title") or "").strip(),
        body=str(body or "").replace("\r\n", "\n"),
    )


def normalize_chapters(raw_chapters: Iterable[Any] | None) -> list[Chapter]:
    """Clean a submitted chapter list. Never returns an empty list.

    Entries that are not chapter-shaped are dropped. Missing ids get a fresh
    uuid4; titles are trimmed; CRLF line endings become LF.
    """
    chapters = [c for c in (_coerce_chapter(r) for r in (raw_chapters or [])) if c is not None]
    return chapters or [placeholder_chapter()]


def serialize_chapters(chapters: Iterable[Chapter]) -> str:
    """Canonical JSON used both for storage and revision de-duplication."""
    return json.dumps([c.to_dict() for c in chapters], ensure_ascii=False, separators=(",", ":"))


def deserialize_chapters(payload: str | None) -> list[Chapter]:
    try:
        parsed = json.loads(payload or "[]")
    except ValueError:
        logger.warning("Unreadable chapters_json; substituting placeholder")
        parsed = []
    return normalize_chapters(parsed if isinstance(parsed, list) else [])


def _placeholder_title_pattern(title: str) -> re.Pattern[str]:
    words = title.split()
    return re.compile(r"^" + r"\s*".join(re.escape(w) for w in words) + r"$", re.IGNORECASE)


def evaluate_overwrite_risk(
    existing: list[Chapter],
    incoming: list[Chapter],
    policy: RiskPolicy = RiskPolicy(),
) -> bool:
    """Return True if replacing `existing` with `incoming` looks destructive."""
    existing_words = count_words(existing)
    if existing_words < policy.min_existing_words:
        return False
    incoming_words = count_words(incoming)

    blank_slate = False
    if len(incoming) == 1:
        only = incoming[0]
        title = only.title.strip()
        title_is_blank = not title or bool(_placeholder_title_pattern(policy.placeholder_title).match(title))
        blank_slate = title_is_blank and not only.body.strip()

    chapter_drop = len(existing) - len(incoming)
    loss_limit = max(policy.loss_floor_words, math.floor(existing_words * policy.loss_ratio))
    large_loss = chapter_drop >= policy.chapter_drop and incoming_words <= loss_limit

    return blank_slate or large_loss


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class DocumentEngine:
    """Owns story_documents and story_document_revisions."""

    def __init__(
        self,
        db: Database,
        stories: StoryStore,
        audit: AuditSink,
        policy: RiskPolicy = RiskPolicy(),
        max_bytes: int = DEFAULT_MAX_BYTES,
        clock: Clock = utcnow,
    ) -> None:
        self.db = db
        self.stories = stories
        self.audit = audit
        self.policy = policy
        self.max_bytes = max_bytes
        self._clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def current_document(self, story_id: str, owner_id: int) -> StoryDocument:
        """Return the live document, creating the placeholder on first access."""
        self._require_story(story_id, owner_id)
        with self.db.connect() as conn:
            document = self._load(story_id, conn)
        if document is not None:
            return document
        with self.db.transaction() as conn:
            return self._load_or_create(story_id, conn)

    def list_revisions(self, story_id: str, owner_id: int) -> list[DocumentRevision]:
        """Revision metadata, newest first. Chapters are not loaded."""
        self._require_story(story_id, owner_id)
        with self.db.connect() as conn:
            rows = conn.execute(
                select(
                    _revisions.c.id,
                    _revisions.c.story_id,
                    _revisions.c.chapter_count,
                    _revisions.c.word_count,
                    _revisions.c.created_by,
                    _revisions.c.note,
                    _revisions.c.created_at,
                )
                .where(_revisions.c.story_id == story_id)
                .order_by(_revisions.c.id.desc())
            ).fetchall()
        return [_row_to_revision(r, with_chapters=False) for r in rows]

    def get_revision(self, story_id: str, owner_id: int, revision_id: int) -> DocumentRevision:
        self._require_story(story_id, owner_id)
        with self.db.connect() as conn:
            row = conn.execute(
                _revisions.select().where((_revisions.c.id == revision_id) & (_revisions.c.story_id == story_id))
            ).fetchone()
        if row is None:
            raise not_found("Revision not found.")
        return _row_to_revision(row, with_chapters=True)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def commit_write(
        self,
        story_id: str,
        owner_id: int,
        chapters: Iterable[Any] | None,
        actor_id: int | None,
        force: bool = False,
        published_at: PublishDate = PublishDate.unset(),
        context: RequestContext | None = None,
    ) -> StoryDocument | OverwriteConflict:
        """Snapshot, risk-check, then replace the document's chapters.

        Returns the saved StoryDocument, or an OverwriteConflict when the
        write looks destructive and `force` is False. Raises NotFound for a
        story the caller does not own and InvalidInput for an oversized body.
        """
        incoming = normalize_chapters(chapters)
        incoming_json = serialize_chapters(incoming)
        if len(incoming_json.encode("utf-8")) > self.max_bytes:
            raise invalid_input(
                f"Document is too large (limit {self.max_bytes // (1024 * 1024)} MB).",
                code="document_too_large",
            )

        with self.db.transaction() as conn:
            self._require_story(story_id, owner_id, conn)
            existing = self._load_or_create(story_id, conn)
            risky = evaluate_overwrite_risk(existing.chapters, incoming, self.policy)
            if force:
                note = NOTE_BEFORE_FORCE_UPDATE
            elif risky:
                note = NOTE_BEFORE_BLOCKED_UPDATE
            else:
                note = NOTE_BEFORE_UPDATE
            if serialize_chapters(existing.chapters) != incoming_json:
                self._snapshot(story_id, existing.chapters, actor_id, note, conn)

            if risky and not force:
                conflict = OverwriteConflict(
                    existing_chapter_count=len(existing.chapters),
                    incoming_chapter_count=len(incoming),
                    existing_word_count=count_words(existing.chapters),
                    incoming_word_count=count_words(incoming),
                )
                document = None
            else:
                conflict = None
                document = self._save(story_id, incoming, published_at.apply(existing.published_at), conn)

        ctx = context or RequestContext()
        if conflict is not None:
            self.audit.record(
                AuditEvent(
                    action="story.document.update_blocked",
                    resource="story_documents",
                    resource_id=story_id,
                    status=STATUS_FAILED,
                    user_id=actor_id,
                    detail={"reason": "risky_overwrite", **conflict.to_meta()},
                    ip=ctx.ip,
                    user_agent=ctx.user_agent,
                )
            )
            return conflict

        self.audit.record(
            AuditEvent(
                action="story.document.update",
                resource="story_documents",
                resource_id=story_id,
                status=STATUS_SUCCESS,
                user_id=actor_id,
                detail={"chapterCount": len(document.chapters), "forced": bool(force)},
                ip=ctx.ip,
                user_agent=ctx.user_agent,
            )
        )
        return document

    def publish(
        self,
        story_id: str,
        owner_id: int,
        actor_id: int | None = None,
        context: RequestContext | None = None,
    ) -> PublishOutcome:
        """Move the story to Published and stamp the document's publish time.

        Requires a non-empty cover on the story and a positive word count.
        """
        with self.db.transaction() as conn:
            story = self._require_story(story_id, owner_id, conn)
            self._check_transition(story, StoryStatus.PUBLISHED)
            if not story.has_cover:
                raise invalid_input("Upload a cover before publishing the story.", code="cover_required")
            document = self._load_or_create(story_id, conn)
            words = count_words(document.chapters)
            if words <= 0:
                raise invalid_input(
                    "The story is still empty. Write at least one chapter before publishing.",
                    code="empty_document",
                )
            now = self._clock()
            self.stories.set_status(story_id, owner_id, StoryStatus.PUBLISHED, conn)
            document = self._save(story_id, document.chapters, now, conn, updated_at=now)
            story = self.stories.get_owned_story(story_id, owner_id, conn)

        ctx = context or RequestContext()
        self.audit.record(
            AuditEvent(
                action="story.publish",
                resource="stories",
                resource_id=story_id,
                user_id=actor_id,
                detail={"words": words},
                ip=ctx.ip,
                user_agent=ctx.user_agent,
            )
        )
        return PublishOutcome(story=story, document=document, word_count=words)

    def transition_status(
        self,
        story_id: str,
        owner_id: int,
        target: StoryStatus,
        actor_id: int | None = None,
        context: RequestContext | None = None,
    ) -> Story:
        """Apply one status move, enforcing the story status machine."""
        if target is StoryStatus.PUBLISHED:
            return self.publish(story_id, owner_id, actor_id, context).story

        with self.db.transaction() as conn:
            story = self._require_story(story_id, owner_id, conn)
            previous = story.status
            self._check_transition(story, target)
            if target in COVER_REQUIRED and not story.has_cover:
                raise invalid_input("A cover is required for this status.", code="cover_required")
            if target is StoryStatus.COMPLETED:
                document = self._load_or_create(story_id, conn)
                if count_words(document.chapters) <= 0:
                    raise invalid_input("An empty story cannot be marked completed.", code="empty_document")
            self.stories.set_status(story_id, owner_id, target, conn)
            story = self.stories.get_owned_story(story_id, owner_id, conn)

        ctx = context or RequestContext()
        self.audit.record(
            AuditEvent(
                action="story.status",
                resource="stories",
                resource_id=story_id,
                user_id=actor_id,
                detail={"from": previous.value, "to": target.value},
                ip=ctx.ip,
                user_agent=ctx.user_agent,
            )
        )
        return story

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_story(self, story_id: str, owner_id: int, conn: Connection | None = None) -> Story:
        story = self.stories.get_owned_story(story_id, owner_id, conn)
        if story is None:
            raise not_found("Story not found.")
        return story

    @staticmethod
    def _check_transition(story: Story, target: StoryStatus) -> None:
        if target not in TRANSITIONS[story.status]:
            raise ServiceError(
                ErrorKind.CONFLICT,
                f"Cannot move a story from {story.status.value} to {target.value}.",
                code="invalid_status_transition",
                meta={"from": story.status.value, "to": target.value},
            )

    def _load(self, story_id: str, conn: Connection) -> StoryDocument | None:
        row = conn.execute(_documents.select().where(_documents.c.story_id == story_id)).fetchone()
        if row is None:
            return None
        return StoryDocument(
            story_id=row.story_id,
            chapters=deserialize_chapters(row.chapters_json),
            published_at=from_iso(row.published_at),
            updated_at=from_iso(row.updated_at),
        )

    def _load_or_create(self, story_id: str, conn: Connection) -> StoryDocument:
        """Must run inside a write transaction."""
        document = self._load(story_id, conn)
        if document is not None:
            return document
        return self._save(story_id, [placeholder_chapter()], None, conn)

    def _save(
        self, story_id: str, chapters: list[Chapter], published_at, conn: Connection, updated_at=None
    ) -> StoryDocument:
        updated_at = updated_at or self._clock()
        values = {
            "chapters_json": serialize_chapters(chapters),
            "published_at": to_iso(published_at) if published_at else None,
            "updated_at": to_iso(updated_at),
        }
        result = conn.execute(_documents.update().where(_documents.c.story_id == story_id).values(**values))
        if result.rowcount == 0:
            conn.execute(_documents.insert().values(story_id=story_id, **values))
        return StoryDocument(
            story_id=story_id, chapters=list(chapters), published_at=published_at, updated_at=updated_at
        )

    def _snapshot(
        self, story_id: str, chapters: list[Chapter], actor_id: int | None, note: str, conn: Connection
    ) -> bool:
        """Append a revision unless it duplicates the newest one. Returns True if written."""
        chapters_json = serialize_chapters(chapters)
        latest = conn.execute(
            select(_revisions.c.chapters_json)
            .where(_revisions.c.story_id == story_id)
            .order_by(_revisions.c.id.desc())
            .limit(1)
        ).scalar()
        if latest == chapters_json:
            return False
        conn.execute(
            _revisions.insert().values(
                story_id=story_id,
                chapters_json=chapters_json,
                chapter_count=len(chapters),
                word_count=count_words(chapters),
                created_by=actor_id,
                note=(note or "")[:NOTE_MAX_LENGTH],
                created_at=to_iso(self._clock()),
            )
        )
        return True


def _row_to_revision(row, with_chapters: bool) -> DocumentRevision:
    return DocumentRevision(
        id=row.id,
        story_id=row.story_id,
        chapter_count=row.chapter_count,
        word_count=row.word_count,
        note=row.note or "",
        created_at=from_iso(row.created_at),
        created_by=row.created_by,
        chapters=deserialize_chapters(row.chapters_json) if with_chapters else None,
    )
