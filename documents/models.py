"""
documents/models.py -- Domain types for story documents and their revisions.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from catalog.models import Story


@dataclass(frozen=True)
class Chapter:
    id: str
    title: str
    body: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "title": self.title, "body": self.body}


@dataclass
class StoryDocument:
    """The live document of one story. Always holds at least one chapter."""

    story_id: str
    chapters: list[Chapter]
    updated_at: datetime
    published_at: datetime | None = None


@dataclass(frozen=True)
class DocumentRevision:
    """Immutable pre-overwrite snapshot. `chapters` is None in list views."""

    id: int
    story_id: str
    chapter_count: int
    word_count: int
    note: str
    created_at: datetime
    created_by: int | None = None
    chapters: list[Chapter] | None = None


# ---------------------------------------------------------------------------
# Three-state publish date input
# ---------------------------------------------------------------------------


class PublishDateMode(str, Enum):
    UNSET = "unset"  # keep whatever is stored
    CLEAR = "clear"  # explicitly remove the publish date
    SET = "set"  # store the given instant


@dataclass(frozen=True)
class PublishDate:
    """What a document write should do with the publish timestamp.

    "Not supplied" and "supplied as null" are different requests; this type
    keeps them apart instead of relying on key presence.
    """

    mode: PublishDateMode
    value: datetime | None = None

    @classmethod
    def unset(cls) -> "PublishDate":
        return cls(PublishDateMode.UNSET)

    @classmethod
    def clear(cls) -> "PublishDate":
        return cls(PublishDateMode.CLEAR)

    @classmethod
    def at(cls, value: datetime) -> "PublishDate":
        return cls(PublishDateMode.SET, value)

    def apply(self, current: datetime | None) -> datetime | None:
        if self.mode is PublishDateMode.UNSET:
            return current
        if self.mode is PublishDateMode.CLEAR:
            return None
        return self.value


# ---------------------------------------------------------------------------
# Overwrite-risk policy and outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskPolicy:
    """Thresholds of the risky-overwrite heuristic. See evaluate_overwrite_risk()."""

    min_existing_words: int = 200
    chapter_drop: int = 3
    loss_ratio: float = 0.2
    loss_floor_words: int = 40
    placeholder_title: str = "Chapter 1"


@dataclass(frozen=True)
class OverwriteConflict:
    """A write that was held back pending explicit confirmation (force=true)."""

    existing_chapter_count: int
    incoming_chapter_count: int
    existing_word_count: int
    incoming_word_count: int

    def to_meta(self) -> dict[str, Any]:
        return {
            "existingChapterCount": self.existing_chapter_count,
            "incomingChapterCount": self.incoming_chapter_count,
            "existingWordCount": self.existing_word_count,
            "incomingWordCount": self.incoming_word_count,
        }


@dataclass(frozen=True)
class PublishOutcome:
    story: Story
    document: StoryDocument
    word_count: int
