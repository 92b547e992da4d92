"""
api/routes/v1/stories.py -- Story catalog endpoints (the subset the document engine needs).

Routes:
  POST  /api/v1/stories                -- create a story (writer roles)
  GET   /api/v1/stories                -- list the caller's stories
  PATCH /api/v1/stories/{id}           -- update title / cover (writer roles)
  POST  /api/v1/stories/{id}/status    -- status transition (writer roles)

IDOR guard: every store call passes current_user.id as owner; another user's
story is a 404, never a 403.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import StatusChange, StoryCreate, StoryPatch, StoryResponse
from auth.dependencies import get_current_user, request_context, require_writer
from auth.models import Account
from catalog.models import StoryStatus
from catalog.store import StoryStore
from documents.engine import DocumentEngine

router = APIRouter()


@router.post("/stories", response_model=StoryResponse, status_code=201)
def create_story(
    request: Request,
    body: StoryCreate,
    current_user: Account = Depends(require_writer),
) -> StoryResponse:
    store: StoryStore = request.app.state.stories
    story = store.create_story(current_user.id, body.title, body.cover_image)
    return StoryResponse.from_story(story)


@router.get("/stories", response_model=list[StoryResponse])
def list_stories(request: Request, current_user: Account = Depends(get_current_user)) -> list[StoryResponse]:
    store: StoryStore = request.app.state.stories
    return [StoryResponse.from_story(s) for s in store.list_stories(current_user.id)]


@router.patch("/stories/{story_id}", response_model=StoryResponse)
def update_story(
    request: Request,
    story_id: str,
    body: StoryPatch,
    current_user: Account = Depends(require_writer),
) -> StoryResponse:
    """Update the title and/or cover. Sending cover_image="" removes the cover."""
    store: StoryStore = request.app.state.stories
    updates = body.model_dump(exclude_unset=True)
    if updates.get("title", "") is None:
        updates.pop("title")
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    story = store.update_story(story_id, current_user.id, **updates)
    if story is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Story not found."},
        )
    return StoryResponse.from_story(story)


@router.post("/stories/{story_id}/status", response_model=StoryResponse)
def change_status(
    request: Request,
    story_id: str,
    body: StatusChange,
    current_user: Account = Depends(require_writer),
) -> StoryResponse:
    """Move the story along Draft -> Review -> Published -> Completed (or Archived)."""
    engine: DocumentEngine = request.app.state.documents
    story = engine.transition_status(
        story_id,
        current_user.id,
        StoryStatus(body.status.value),
        actor_id=current_user.id,
        context=request_context(request),
    )
    return StoryResponse.from_story(story)
