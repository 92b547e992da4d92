"""
api/routes/v1/documents.py -- Story document editing, history and publishing.

Routes:
  GET  /api/v1/stories/{id}/document             -- live document (placeholder on first access)
  PUT  /api/v1/stories/{id}/document             -- replace chapters; 409 risky_overwrite unless force
  POST /api/v1/stories/{id}/publish              -- publish (cover + non-empty document required)
  GET  /api/v1/stories/{id}/revisions            -- revision history, newest first
  GET  /api/v1/stories/{id}/revisions/{rev_id}   -- one revision with its chapters

The 409 body carries meta with existing/incoming chapter and word counts so
the client can show what would be lost before resubmitting with force=true.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import DocumentResponse, DocumentWrite, PublishResponse, RevisionResponse, StoryResponse
from auth.dependencies import get_current_user, request_context, require_writer
from auth.models import Account
from core.errors import ErrorKind, ServiceError
from documents.engine import DocumentEngine
from documents.models import OverwriteConflict

router = APIRouter()


@router.get("/stories/{story_id}/document", response_model=DocumentResponse)
def get_document(
    request: Request,
    story_id: str,
    current_user: Account = Depends(get_current_user),
) -> DocumentResponse:
    engine: DocumentEngine = request.app.state.documents
    return DocumentResponse.from_document(engine.current_document(story_id, current_user.id))


@router.put("/stories/{story_id}/document", response_model=DocumentResponse)
def put_document(
    request: Request,
    story_id: str,
    body: DocumentWrite,
    current_user: Account = Depends(require_writer),
) -> DocumentResponse:
    """Save the full chapter list.

    The pre-write state is always kept as a revision. A write that would wipe
    most of an established document is refused with 409 risky_overwrite
    unless the body sets force=true.
    """
    engine: DocumentEngine = request.app.state.documents
    outcome = engine.commit_write(
        story_id,
        current_user.id,
        [c.model_dump() for c in body.chapters],
        actor_id=current_user.id,
        force=body.force,
        published_at=body.publish_date(),
        context=request_context(request),
    )
    if isinstance(outcome, OverwriteConflict):
        raise ServiceError(
            ErrorKind.CONFLICT,
            "This change would overwrite most of the story. Review it, then save again with confirmation.",
            code="risky_overwrite",
            meta=outcome.to_meta(),
        )
    return DocumentResponse.from_document(outcome)


@router.post("/stories/{story_id}/publish", response_model=PublishResponse)
def publish(
    request: Request,
    story_id: str,
    current_user: Account = Depends(require_writer),
) -> PublishResponse:
    engine: DocumentEngine = request.app.state.documents
    outcome = engine.publish(story_id, current_user.id, actor_id=current_user.id, context=request_context(request))
    return PublishResponse(
        story=StoryResponse.from_story(outcome.story),
        document=DocumentResponse.from_document(outcome.document),
    )


@router.get("/stories/{story_id}/revisions", response_model=list[RevisionResponse])
def list_revisions(
    request: Request,
    story_id: str,
    current_user: Account = Depends(get_current_user),
) -> list[RevisionResponse]:
    engine: DocumentEngine = request.app.state.documents
    return [RevisionResponse.from_revision(r) for r in engine.list_revisions(story_id, current_user.id)]


@router.get("/stories/{story_id}/revisions/{revision_id}", response_model=RevisionResponse)
def get_revision(
    request: Request,
    story_id: str,
    revision_id: int,
    current_user: Account = Depends(get_current_user),
) -> RevisionResponse:
    engine: DocumentEngine = request.app.state.documents
    return RevisionResponse.from_revision(engine.get_revision(story_id, current_user.id, revision_id))
