from pydantic import BaseModel, Field, model_validator
from pydantic.alias_generators import to_camel
from fastapi_users import schemas
from typing import Any, ClassVar, Dict, FrozenSet, List, Literal, Optional
from datetime import datetime

from .models import (
    AnnouncementLevel, AnnouncementType, ApplicationStatus, BookStage, ContentRole, ContentType,
    GroupStageType, LogLevel, LogType, OutlineNodeStatus, PermissionType, PromptStatus,
    ReportReason, ReportStatus, StageStatus, TaskStatus,
)


class CamelInput(BaseModel):
    """Request bodies accept snake_case and camelCase keys."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class PatchInput(CamelInput):
    """Partial update: omitted keys are left alone, null only clears `nullable` fields."""

    nullable: ClassVar[FrozenSet[str]] = frozenset()

    @model_validator(mode="after")
    def reject_nulls(self):
        cleared = sorted(
            name for name in self.model_fields_set
            if getattr(self, name) is None and name not in self.nullable
        )
        if cleared:
            raise ValueError(f"{', '.join(cleared)} cannot be null")
        return self


# =========================
# USER SCHEMAS
# =========================
class UserRead(schemas.BaseUser[int]):
    username: Optional[str] = None


class UserCreate(schemas.BaseUserCreate):
    username: Optional[str] = None


class UserUpdate(schemas.BaseUserUpdate):
    username: Optional[str] = None


# =========================
# CATEGORY SCHEMAS
# =========================
class CategoryCreate(CamelInput):
    name: str = Field(min_length=1, max_length=50)
    description: Optional[str] = None
    icon: Optional[str] = None
    order: int = 0


class CategoryUpdate(PatchInput):
    nullable = frozenset({"description", "icon"})

    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    description: Optional[str] = None
    icon: Optional[str] = None
    order: Optional[int] = None


class CategoryRead(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    icon: Optional[str] = None
    order: int = 0

    class Config:
        from_attributes = True


# =========================
# PROMPT SCHEMAS
# =========================
class ParameterSchema(CamelInput):
    name: str
    required: bool = True
    description: str = ""


class ContentCreate(CamelInput):
    name: str = Field(min_length=1, max_length=100)
    role: ContentRole = ContentRole.system
    content: str = ""
    order: Optional[int] = None
    type: ContentType = ContentType.text
    reference_id: Optional[int] = None
    is_enabled: bool = True
    # only `required` / `description` overrides are honoured
    parameters: Optional[List[ParameterSchema]] = None


class ContentUpdate(PatchInput):
    nullable = frozenset({"reference_id", "parameters"})

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    role: Optional[ContentRole] = None
    content: Optional[str] = None
    order: Optional[int] = None
    type: Optional[ContentType] = None
    reference_id: Optional[int] = None
    is_enabled: Optional[bool] = None
    parameters: Optional[List[ParameterSchema]] = None


class ContentRead(BaseModel):
    id: int
    prompt_id: int
    name: str
    role: ContentRole
    content: str
    order: int
    type: ContentType
    reference_id: Optional[int] = None
    is_enabled: bool
    parameters: List[ParameterSchema] = []

    class Config:
        from_attributes = True


class ContentMeta(BaseModel):
    """Content block without its text, used when content is withheld."""

    id: int
    name: str
    role: ContentRole
    order: int
    type: ContentType
    reference_id: Optional[int] = None
    is_enabled: bool
    parameters: List[ParameterSchema] = []

    class Config:
        from_attributes = True


class PromptCreate(CamelInput):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    category_id: Optional[int] = None
    is_public: bool = True
    is_content_public: bool = True
    require_application: bool = False
    status: PromptStatus = PromptStatus.draft
    contents: List[ContentCreate] = []


class PromptUpdate(PatchInput):
    nullable = frozenset({"description", "category_id", "contents"})

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    category_id: Optional[int] = None
    is_public: Optional[bool] = None
    is_content_public: Optional[bool] = None
    require_application: Optional[bool] = None
    status: Optional[PromptStatus] = None
    contents: Optional[List[ContentCreate]] = None


class PromptSummary(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    category_id: Optional[int] = None
    author_id: int
    is_public: bool
    is_content_public: bool
    require_application: bool
    status: PromptStatus
    is_banned: bool = False
    banned_reason: Optional[str] = None
    needs_review: bool = False
    view_count: int = 0
    use_count: int = 0
    like_count: int = 0
    hot_value: float = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PromptRead(PromptSummary):
    contents: Optional[List[ContentRead]] = None
    parameters: Optional[List[ParameterSchema]] = None


class MyPromptRead(PromptSummary):
    pending_application_count: int = 0


class PromptConfigRead(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    author_id: int
    is_content_public: bool
    require_application: bool
    parameters: List[ParameterSchema] = []
    contents: List[ContentMeta] = []


class ChatTurn(CamelInput):
    role: Literal["user", "assistant"]
    content: str


class BuildSimplePayload(CamelInput):
    prompt_id: int
    parameters: Dict[str, Any] = {}


class BuildPromptPayload(BuildSimplePayload):
    history: List[ChatTurn] = []
    user_input: Optional[str] = None


class BuildPromptResult(BaseModel):
    prompt_id: int
    messages: List[Dict[str, str]]
    characters: int


class BatchUpdatePayload(PatchInput):
    nullable = frozenset({"category_id"})

    ids: List[int] = Field(min_length=1)
    status: Optional[PromptStatus] = None
    is_public: Optional[bool] = None
    category_id: Optional[int] = None


class ReasonPayload(CamelInput):
    reason: Optional[str] = Field(default=None, max_length=500)


class PromptStatsRead(BaseModel):
    id: int
    view_count: int
    use_count: int
    like_count: int
    hot_value: float
    liked: bool = False
    favorited: bool = False


# =========================
# PERMISSION / APPLICATION SCHEMAS
# =========================
class PermissionGrant(CamelInput):
    user_id: int
    permission: PermissionType = PermissionType.use


class PermissionRead(BaseModel):
    id: int
    prompt_id: int
    user_id: int
    permission: PermissionType
    granted_by: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ApplicationCreate(CamelInput):
    reason: Optional[str] = Field(default=None, max_length=1000)


class ApplicationReview(CamelInput):
    status: Literal["approved", "rejected"]
    review_note: Optional[str] = Field(default=None, max_length=1000)


class ApplicationRead(BaseModel):
    id: int
    prompt_id: int
    user_id: int
    reason: Optional[str] = None
    status: ApplicationStatus
    reviewed_by: Optional[int] = None
    reviewed_at: Optional[datetime] = None
    review_note: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# =========================
# REPORT SCHEMAS
# =========================
class ReportCreate(CamelInput):
    reason: ReportReason
    description: Optional[str] = Field(default=None, max_length=1000)


class ReportReview(CamelInput):
    status: Literal["approved", "rejected"]
    review_note: Optional[str] = Field(default=None, max_length=1000)


class ReportRead(BaseModel):
    id: int
    prompt_id: int
    reporter_id: int
    reason: ReportReason
    description: Optional[str] = None
    status: ReportStatus
    reviewer_id: Optional[int] = None
    review_note: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# =========================
# PROMPT GROUP SCHEMAS
# =========================
class GroupItemIn(CamelInput):
    # optional so an unselected prompt reaches validation instead of a 422
    prompt_id: Optional[int] = None
    stage_type: GroupStageType
    stage_label: Optional[str] = None
    order: Optional[int] = None
    is_required: bool = True


class GroupCreate(CamelInput):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    category_id: Optional[int] = None
    is_public: bool = True
    require_application: bool = False
    status: PromptStatus = PromptStatus.published
    items: List[GroupItemIn] = []


class GroupUpdate(PatchInput):
    nullable = frozenset({"description", "category_id", "items"})

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    category_id: Optional[int] = None
    is_public: Optional[bool] = None
    require_application: Optional[bool] = None
    status: Optional[PromptStatus] = None
    items: Optional[List[GroupItemIn]] = None


class GroupItemRead(BaseModel):
    id: int
    prompt_id: int
    stage_type: GroupStageType
    stage_label: Optional[str] = None
    order: int
    is_required: bool

    class Config:
        from_attributes = True


class GroupRead(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    category_id: Optional[int] = None
    user_id: int
    is_public: bool
    require_application: bool
    status: PromptStatus
    view_count: int = 0
    use_count: int = 0
    like_count: int = 0
    hot_value: float = 0
    created_at: Optional[datetime] = None
    items: List[GroupItemRead] = []

    class Config:
        from_attributes = True


class GroupParameterRead(BaseModel):
    name: str
    required: bool = True
    description: str = ""
    stage_type: GroupStageType
    prompt_id: int


# =========================
# BOOK CREATION SCHEMAS
# =========================
class TaskConfigIn(CamelInput):
    enable_review: bool = True
    concurrency_limit: Optional[int] = Field(default=None, ge=1, le=20)
    temperature: Optional[float] = Field(default=None, ge=0, le=2)


class TaskCreate(CamelInput):
    prompt_group_id: Optional[int] = None
    model: Optional[str] = None
    parameters: Dict[str, Any] = {}
    prompt_config: Dict[str, int] = {}
    task_config: Optional[TaskConfigIn] = None
    auto_execute: bool = False


class ExecuteStagePayload(CamelInput):
    stage: Optional[BookStage] = None


class TitleSynopsisPayload(CamelInput):
    title: str = Field(min_length=1, max_length=255)
    synopsis: Optional[str] = None


class OptimizeStagePayload(CamelInput):
    feedback: str = Field(min_length=1)


class OutlineNodeUpdate(PatchInput):
    nullable = frozenset({"content", "body"})

    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    content: Optional[str] = None
    body: Optional[str] = None


class StageRead(BaseModel):
    id: int
    stage_type: BookStage
    status: StageStatus
    prompt_id: Optional[int] = None
    input_data: Optional[Dict[str, Any]] = None
    output_data: Optional[Dict[str, Any]] = None
    characters_consumed: int = 0
    retry_count: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TaskRead(BaseModel):
    id: int
    user_id: int
    prompt_group_id: Optional[int] = None
    model: Optional[str] = None
    status: TaskStatus
    current_stage: BookStage
    processed_data: Dict[str, Any] = {}
    prompt_config: Dict[str, Any] = {}
    task_config: Dict[str, Any] = {}
    error_message: Optional[str] = None
    total_characters_consumed: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TaskDetail(TaskRead):
    stages: List[StageRead] = []


class OutlineNodeRead(BaseModel):
    id: int
    parent_id: Optional[int] = None
    level: int
    title: str
    content: Optional[str] = None
    order: int
    status: OutlineNodeStatus
    body: Optional[str] = None
    review: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    children: List["OutlineNodeRead"] = []

    class Config:
        from_attributes = True


# =========================
# LOG SCHEMAS
# =========================
class LogRead(BaseModel):
    id: int
    user_id: Optional[int] = None
    username: Optional[str] = None
    type: LogType
    level: LogLevel
    action: str
    method: Optional[str] = None
    path: Optional[str] = None
    params: Optional[str] = None
    response: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    duration: Optional[int] = None
    status_code: Optional[int] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# =========================
# ANNOUNCEMENT SCHEMAS
# =========================
class AnnouncementCreate(CamelInput):
    title: str = Field(min_length=1, max_length=200)
    content: str = Field(min_length=1)
    summary: Optional[str] = Field(default=None, max_length=500)
    type: AnnouncementType = AnnouncementType.notice
    level: AnnouncementLevel = AnnouncementLevel.info
    priority: int = Field(default=5, ge=0, le=10)
    is_active: bool = False
    is_top: bool = False
    is_popup: bool = False
    link_url: Optional[str] = None
    link_text: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class AnnouncementUpdate(PatchInput):
    nullable = frozenset({"summary", "link_url", "link_text", "start_time", "end_time"})

    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    content: Optional[str] = None
    summary: Optional[str] = None
    type: Optional[AnnouncementType] = None
    level: Optional[AnnouncementLevel] = None
    priority: Optional[int] = Field(default=None, ge=0, le=10)
    is_active: Optional[bool] = None
    is_top: Optional[bool] = None
    is_popup: Optional[bool] = None
    link_url: Optional[str] = None
    link_text: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class AnnouncementRead(BaseModel):
    id: int
    title: str
    content: str
    summary: Optional[str] = None
    type: AnnouncementType
    level: AnnouncementLevel
    priority: int
    is_active: bool
    is_top: bool
    is_popup: bool
    link_url: Optional[str] = None
    link_text: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    published_at: Optional[datetime] = None
    view_count: int = 0
    creator_id: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
