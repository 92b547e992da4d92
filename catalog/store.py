"""
catalog/store.py -- SQLAlchemy Core persistence for stories.

Pattern: Repository + Data Mapper, same as auth/store.py.

IDOR guard: every lookup and update is addressed by the (story_id, owner_id)
pair. A story that exists but belongs to someone else is indistinguishable
from one that does not exist.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import uuid

from sqlalchemy.engine import Connection

from catalog.models import Story, StoryStatus
from core.database import Database
from core.schema import stories as _stories
from core.timeutil import Clock, from_iso, to_iso, utcnow


class StoryStore:
    """Repository for Story entities."""

    def __init__(self, db: Database, clock: Clock = utcnow) -> None:
        self.db = db
        self._clock = clock

    def create_story(self, owner_id: int, title: str, cover_image: str | None = None) -> Story:
        now = to_iso(self._clock())
        story_id = str(uuid.uuid4())
        with self.db.transaction() as conn:
            conn.execute(
                _stories.insert().values(
                    id=story_id,
                    owner_id=owner_id,
                    title=title,
                    status=StoryStatus.DRAFT.value,
                    cover_image=cover_image or None,
                    created_at=now,
                    updated_at=now,
                )
            )
            return self.get_owned_story(story_id, owner_id, conn)

    def get_owned_story(self, story_id: str, owner_id: int, conn: Connection | None = None) -> Story | None:
        """Return the story if it exists AND belongs to owner_id, else None."""
        with self.db.connect(conn) as c:
            row = c.execute(
                _stories.select().where((_stories.c.id == story_id) & (_stories.c.owner_id == owner_id))
            ).fetchone()
        return _row_to_story(row) if row is not None else None

    def list_stories(self, owner_id: int) -> list[Story]:
        """Owner's stories, most recently updated first."""
        with self.db.connect() as conn:
            rows = conn.execute(
                _stories.select().where(_stories.c.owner_id == owner_id).order_by(_stories.c.updated_at.desc())
            ).fetchall()
        return [_row_to_story(r) for r in rows]

    def update_story(self, story_id: str, owner_id: int, **fields) -> Story | None:
        """Update title and/or cover_image. Returns None if not found / not owned."""
        values = {k: v for k, v in fields.items() if k in ("title", "cover_image")}
        if "cover_image" in values:
            values["cover_image"] = values["cover_image"] or None
        values["updated_at"] = to_iso(self._clock())
        with self.db.transaction() as conn:
            result = conn.execute(
                _stories.update()
                .where((_stories.c.id == story_id) & (_stories.c.owner_id == owner_id))
                .values(**values)
            )
            if result.rowcount == 0:
                return None
            return self.get_owned_story(story_id, owner_id, conn)

    def set_status(self, story_id: str, owner_id: int, status: StoryStatus, conn: Connection | None = None) -> bool:
        """Write the status column. Transition rules live in DocumentEngine."""
        with self.db.transaction(conn) as c:
            result = c.execute(
                _stories.update()
                .where((_stories.c.id == story_id) & (_stories.c.owner_id == owner_id))
                .values(status=status.value, updated_at=to_iso(self._clock()))
            )
        return result.rowcount > 0


def _row_to_story(row) -> Story:
    return Story(
        id=row.id,
        owner_id=row.owner_id,
        title=row.title,
        status=StoryStatus(row.status),
        cover_image=row.cover_image,
        created_at=from_iso(row.created_at),
        updated_at=from_iso(row.updated_at),
    )
