"""
API request and response models for the Scriptoria REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/, catalog/ and
documents/, which own the internal domain representation. Route handlers map
between the two with the from_* factory methods colocated below.

Separation of concerns: domain models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from audit.models import AuditEntry
from auth.models import Account, Session, TokenPair
from catalog.models import Story
from documents.engine import count_words
from documents.models import Chapter, DocumentRevision, PublishDate, StoryDocument

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    manager = "manager"
    staff = "staff"
    viewer = "viewer"


class StoryStatusEnum(str, Enum):
    Draft = "Draft"
    Review = "Review"
    Published = "Published"
    Completed = "Completed"
    Archived = "Archived"


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    meta: Optional[dict[str, Any]] = None
    retry_after: Optional[int] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Handle format and password length are checked by LoginGuard so the same
    rules apply to admin-created accounts; the limits here only bound input.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1, max_length=255)


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1, max_length=512)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=512)


class ChangePasswordRequest(BaseModel):
    old_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class AccountResponse(BaseModel):
    """Public projection of an account. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: str
    is_active: bool
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            id=account.id,
            username=account.username,
            role=account.role,
            is_active=account.is_active,
            last_login_at=account.last_login_at,
            created_at=account.created_at,
        )


class TokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
    expires_in: int
    refresh_expires_in: int

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.access_ttl,
            refresh_expires_in=pair.refresh_ttl,
        )


class AuthResponse(BaseModel):
    """Response for register, login and refresh."""

    model_config = ConfigDict(frozen=True)

    user: AccountResponse
    tokens: TokenResponse


class SessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    created_at: datetime
    expires_at: datetime
    created_ip: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            id=session.id,
            created_at=session.created_at,
            expires_at=session.expires_at,
            created_ip=session.created_ip,
            user_agent=session.user_agent,
        )


# ---------------------------------------------------------------------------
# Stories
# ---------------------------------------------------------------------------


class StoryCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: str = Field(min_length=1, max_length=200)
    cover_image: Optional[str] = Field(default=None, max_length=2048)


class StoryPatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    cover_image: Optional[str] = Field(default=None, max_length=2048)


class StatusChange(BaseModel):
    status: StoryStatusEnum


class StoryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    status: str
    cover_image: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_story(cls, story: Story) -> "StoryResponse":
        return cls(
            id=story.id,
            title=story.title,
            status=story.status.value,
            cover_image=story.cover_image,
            created_at=story.created_at,
            updated_at=story.updated_at,
        )


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class ChapterPayload(BaseModel):
    id: Optional[str] = Field(default=None, max_length=64)
    title: str = Field(default="", max_length=300)
    body: str = ""

    @classmethod
    def from_chapter(cls, chapter: Chapter) -> "ChapterPayload":
        return cls(id=chapter.id, title=chapter.title, body=chapter.body)


class DocumentWrite(BaseModel):
    """Request body for PUT /api/v1/stories/{id}/document.

    published_at is three-state: omit it to keep the stored value, send null
    to clear it, send a timestamp to set it. publish_date() reads
    model_fields_set to tell "omitted" from "null".
    """

    chapters: list[ChapterPayload] = Field(default_factory=list, max_length=2000)
    force: bool = False
    published_at: Optional[datetime] = None

    def publish_date(self) -> PublishDate:
        if "published_at" not in self.model_fields_set:
            return PublishDate.unset()
        if self.published_at is None:
            return PublishDate.clear()
        return PublishDate.at(self.published_at)


class DocumentResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    story_id: str
    chapters: list[ChapterPayload]
    published_at: Optional[datetime] = None
    updated_at: datetime
    word_count: int

    @classmethod
    def from_document(cls, document: StoryDocument) -> "DocumentResponse":
        return cls(
            story_id=document.story_id,
            chapters=[ChapterPayload.from_chapter(c) for c in document.chapters],
            published_at=document.published_at,
            updated_at=document.updated_at,
            word_count=count_words(document.chapters),
        )


class RevisionResponse(BaseModel):
    """One revision. chapters is present only on the detail route."""

    model_config = ConfigDict(frozen=True)

    id: int
    chapter_count: int
    word_count: int
    note: str
    created_by: Optional[int] = None
    created_at: datetime
    chapters: Optional[list[ChapterPayload]] = None

    @classmethod
    def from_revision(cls, revision: DocumentRevision) -> "RevisionResponse":
        chapters = None
        if revision.chapters is not None:
            chapters = [ChapterPayload.from_chapter(c) for c in revision.chapters]
        return cls(
            id=revision.id,
            chapter_count=revision.chapter_count,
            word_count=revision.word_count,
            note=revision.note,
            created_by=revision.created_by,
            created_at=revision.created_at,
            chapters=chapters,
        )


class PublishResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    story: StoryResponse
    document: DocumentResponse


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class AdminUserCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=64)
    password: str = Field(min_length=1, max_length=255)
    role: RoleEnum = RoleEnum.staff


class AdminUserPatch(BaseModel):
    role: Optional[RoleEnum] = None
    is_active: Optional[bool] = None


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    action: str
    resource: str
    resource_id: Optional[str] = None
    status: str
    detail: dict[str, Any]
    user_id: Optional[int] = None
    username: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            action=entry.action,
            resource=entry.resource,
            resource_id=entry.resource_id,
            status=entry.status,
            detail=entry.detail,
            user_id=entry.user_id,
            username=entry.username,
            ip=entry.ip,
            user_agent=entry.user_agent,
            created_at=entry.created_at,
        )
