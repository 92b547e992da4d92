"""
catalog/models.py -- Domain dataclasses for the story catalog.

Only the fields the document engine needs at its boundary live here: owner,
cover reference, and publish status. Richer catalog metadata is out of scope.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class StoryStatus(str, Enum):
    DRAFT = "Draft"
    REVIEW = "Review"
    PUBLISHED = "Published"
    COMPLETED = "Completed"
    ARCHIVED = "Archived"


# Allowed status moves. Completed and Archived are terminal. Re-entering
# Published from Published is a republish (refreshes the publish timestamp).
TRANSITIONS: dict[StoryStatus, frozenset[StoryStatus]] = {
    StoryStatus.DRAFT: frozenset({StoryStatus.REVIEW, StoryStatus.PUBLISHED, StoryStatus.ARCHIVED}),
    StoryStatus.REVIEW: frozenset({StoryStatus.DRAFT, StoryStatus.PUBLISHED, StoryStatus.ARCHIVED}),
    StoryStatus.PUBLISHED: frozenset({StoryStatus.PUBLISHED, StoryStatus.COMPLETED, StoryStatus.ARCHIVED}),
    StoryStatus.COMPLETED: frozenset(),
    StoryStatus.ARCHIVED: frozenset(),
}

# Statuses that require a cover image on the story.
COVER_REQUIRED: frozenset[StoryStatus] = frozenset({StoryStatus.PUBLISHED, StoryStatus.COMPLETED})


@dataclass
class Story:
    owner_id: int
    title: str
    id: str | None = None
    status: StoryStatus = StoryStatus.DRAFT
    cover_image: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_cover(self) -> bool:
        return bool((self.cover_image or "").strip())
