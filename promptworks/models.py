from sqlalchemy import (
    Column, Integer, String, Boolean, ForeignKey, Text, DateTime,
    UniqueConstraint, Index, Float, JSON
)
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.mutable import MutableDict, MutableList
from sqlalchemy import Enum as SAEnum
from datetime import datetime, timezone
import enum

from .database import Base


# JSONB on Postgres, plain JSON elsewhere (sqlite in dev/tests).
# One instance per column: as_mutable binds to the type instance.
def json_type():
    return JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    # columns are naive "timestamp without time zone"
    return datetime.now(timezone.utc).replace(tzinfo=None)


class PromptStatus(str, enum.Enum):
    draft = "draft"
    published = "published"
    archived = "archived"


class ContentRole(str, enum.Enum):
    system = "system"
    user = "user"
    assistant = "assistant"


class ContentType(str, enum.Enum):
    text = "text"
    character = "character"
    worldview = "worldview"


class PermissionType(str, enum.Enum):
    view = "view"
    use = "use"
    edit = "edit"


class ApplicationStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class ReportReason(str, enum.Enum):
    spam = "spam"
    inappropriate = "inappropriate"
    violence = "violence"
    hate_speech = "hate_speech"
    pornography = "pornography"
    copyright = "copyright"
    fraud = "fraud"
    other = "other"


class ReportStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"


class GroupStageType(str, enum.Enum):
    idea = "idea"
    idea_optimize = "idea_optimize"
    title = "title"
    outline_main = "outline_main"
    outline_volume = "outline_volume"
    outline_chapter = "outline_chapter"
    content = "content"
    review = "review"
    summary = "summary"
    optimize = "optimize"


class TaskStatus(str, enum.Enum):
    paused = "paused"
    idea_generating = "idea_generating"
    title_generating = "title_generating"
    outline_generating = "outline_generating"
    content_generating = "content_generating"
    review_optimizing = "review_optimizing"
    waiting_next_stage = "waiting_next_stage"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class BookStage(str, enum.Enum):
    idea = "idea"
    title = "title"
    outline = "outline"
    content = "content"
    review = "review"


class StageStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class OutlineNodeStatus(str, enum.Enum):
    draft = "draft"
    generated = "generated"
    failed = "failed"


class LogType(str, enum.Enum):
    auth = "auth"
    user = "user"
    role = "role"
    permission = "permission"
    api = "api"
    system = "system"


class LogLevel(str, enum.Enum):
    info = "info"
    warn = "warn"
    error = "error"


class AnnouncementType(str, enum.Enum):
    system = "system"
    activity = "activity"
    maintenance = "maintenance"
    feature = "feature"
    notice = "notice"


class AnnouncementLevel(str, enum.Enum):
    info = "info"
    warning = "warning"
    important = "important"
    urgent = "urgent"


# ---------------------------
# USER MODEL
# ---------------------------
class User(Base):
    __tablename__ = "user"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(320), unique=True, index=True, nullable=False)
    username = Column(String(64), index=True)
    hashed_password = Column(String(1024), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_superuser = Column(Boolean, default=False, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    prompts = relationship("Prompt", back_populates="author")


# ---------------------------
# PROMPTS
# ---------------------------
class PromptCategory(Base):
    __tablename__ = "prompt_category"

    id = Column(Integer, primary_key=True)
    name = Column(String(50), unique=True, nullable=False)
    description = Column(String(200), nullable=True)
    icon = Column(String(50), nullable=True)
    order = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Prompt(Base):
    __tablename__ = "prompt"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    category_id = Column(Integer, ForeignKey("prompt_category.id", ondelete="SET NULL"), nullable=True, index=True)
    author_id = Column(Integer, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)

    is_public = Column(Boolean, default=True, nullable=False)
    is_content_public = Column(Boolean, default=True, nullable=False)
    require_application = Column(Boolean, default=False, nullable=False)
    status = Column(SAEnum(PromptStatus), default=PromptStatus.draft, nullable=False, index=True)

    # ---- moderation ----
    is_banned = Column(Boolean, default=False, nullable=False)
    banned_reason = Column(Text, nullable=True)
    banned_at = Column(DateTime, nullable=True)
    needs_review = Column(Boolean, default=False, nullable=False)
    review_snapshot = Column(MutableDict.as_mutable(json_type()), nullable=True)
    review_submitted_at = Column(DateTime, nullable=True)

    # ---- counters ----
    view_count = Column(Integer, default=0, nullable=False)
    use_count = Column(Integer, default=0, nullable=False)
    like_count = Column(Integer, default=0, nullable=False)
    hot_value = Column(Float, default=0, nullable=False, index=True)

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True)

    author = relationship("User", back_populates="prompts")
    category = relationship("PromptCategory")
    contents = relationship(
        "PromptContent",
        back_populates="prompt",
        cascade="all, delete-orphan",
        order_by="PromptContent.order",
    )


class PromptContent(Base):
    __tablename__ = "prompt_content"

    id = Column(Integer, primary_key=True)
    prompt_id = Column(Integer, ForeignKey("prompt.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    role = Column(SAEnum(ContentRole), default=ContentRole.system, nullable=False)
    content = Column(Text, nullable=False, default="")
    order = Column(Integer, default=0, nullable=False)
    type = Column(SAEnum(ContentType), default=ContentType.text, nullable=False)
    reference_id = Column(Integer, nullable=True)
    is_enabled = Column(Boolean, default=True, nullable=False)
    # [{name, required, description}] derived from `content`
    parameters = Column(MutableList.as_mutable(json_type()), nullable=False, default=list)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    prompt = relationship("Prompt", back_populates="contents")


class PromptPermission(Base):
    __tablename__ = "prompt_permission"
    __table_args__ = (
        UniqueConstraint("prompt_id", "user_id", name="uq_prompt_permission_prompt_user"),
    )

    id = Column(Integer, primary_key=True)
    prompt_id = Column(Integer, ForeignKey("prompt.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    permission = Column(SAEnum(PermissionType), default=PermissionType.view, nullable=False)
    granted_by = Column(Integer, ForeignKey("user.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", foreign_keys=[user_id])


class PromptApplication(Base):
    __tablename__ = "prompt_application"
    __table_args__ = (
        Index("ix_prompt_application_prompt_status", "prompt_id", "status"),
    )

    id = Column(Integer, primary_key=True)
    prompt_id = Column(Integer, ForeignKey("prompt.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    reason = Column(Text, nullable=True)
    status = Column(SAEnum(ApplicationStatus), default=ApplicationStatus.pending, nullable=False)
    reviewed_by = Column(Integer, ForeignKey("user.id", ondelete="SET NULL"), nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    review_note = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    prompt = relationship("Prompt")
    user = relationship("User", foreign_keys=[user_id])


class PromptLike(Base):
    __tablename__ = "prompt_like"
    __table_args__ = (UniqueConstraint("prompt_id", "user_id", name="uq_prompt_like"),)

    id = Column(Integer, primary_key=True)
    prompt_id = Column(Integer, ForeignKey("prompt.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)


class PromptFavorite(Base):
    __tablename__ = "prompt_favorite"
    __table_args__ = (UniqueConstraint("prompt_id", "user_id", name="uq_prompt_favorite"),)

    id = Column(Integer, primary_key=True)
    prompt_id = Column(Integer, ForeignKey("prompt.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)

    prompt = relationship("Prompt")


class PromptReport(Base):
    __tablename__ = "prompt_report"

    id = Column(Integer, primary_key=True)
    prompt_id = Column(Integer, ForeignKey("prompt.id", ondelete="CASCADE"), nullable=False, index=True)
    reporter_id = Column(Integer, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    reason = Column(SAEnum(ReportReason), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(SAEnum(ReportStatus), default=ReportStatus.pending, nullable=False, index=True)
    reviewer_id = Column(Integer, ForeignKey("user.id", ondelete="SET NULL"), nullable=True)
    review_note = Column(Text, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    prompt = relationship("Prompt")


# ---------------------------
# PROMPT GROUPS
# ---------------------------
class PromptGroup(Base):
    __tablename__ = "prompt_group"

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    category_id = Column(Integer, ForeignKey("prompt_category.id", ondelete="SET NULL"), nullable=True)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    is_public = Column(Boolean, default=True, nullable=False)
    require_application = Column(Boolean, default=False, nullable=False)
    status = Column(SAEnum(PromptStatus), default=PromptStatus.published, nullable=False)
    view_count = Column(Integer, default=0, nullable=False)
    use_count = Column(Integer, default=0, nullable=False)
    like_count = Column(Integer, default=0, nullable=False)
    hot_value = Column(Float, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    deleted_at = Column(DateTime, nullable=True)

    items = relationship(
        "PromptGroupItem",
        back_populates="group",
        cascade="all, delete-orphan",
        order_by="PromptGroupItem.order",
    )


class PromptGroupItem(Base):
    __tablename__ = "prompt_group_item"
    __table_args__ = (
        UniqueConstraint("group_id", "stage_type", name="uq_prompt_group_item_stage"),
    )

    id = Column(Integer, primary_key=True)
    group_id = Column(Integer, ForeignKey("prompt_group.id", ondelete="CASCADE"), nullable=False, index=True)
    prompt_id = Column(Integer, ForeignKey("prompt.id", ondelete="CASCADE"), nullable=False)
    stage_type = Column(SAEnum(GroupStageType), nullable=False)
    stage_label = Column(String(100), nullable=True)
    order = Column(Integer, default=0, nullable=False)
    is_required = Column(Boolean, default=True, nullable=False)

    group = relationship("PromptGroup", back_populates="items")
    prompt = relationship("Prompt")


class PromptGroupLike(Base):
    __tablename__ = "prompt_group_like"
    __table_args__ = (UniqueConstraint("group_id", "user_id", name="uq_prompt_group_like"),)

    id = Column(Integer, primary_key=True)
    group_id = Column(Integer, ForeignKey("prompt_group.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime, default=utcnow)


# ---------------------------
# BOOK CREATION
# ---------------------------
class BookCreationTask(Base):
    __tablename__ = "book_creation_task"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    prompt_group_id = Column(Integer, ForeignKey("prompt_group.id", ondelete="SET NULL"), nullable=True)
    model = Column(String(100), nullable=True)
    status = Column(SAEnum(TaskStatus), default=TaskStatus.paused, nullable=False, index=True)
    current_stage = Column(SAEnum(BookStage), default=BookStage.idea, nullable=False)
    processed_data = Column(MutableDict.as_mutable(json_type()), nullable=False, default=dict)
    prompt_config = Column(MutableDict.as_mutable(json_type()), nullable=False, default=dict)
    task_config = Column(MutableDict.as_mutable(json_type()), nullable=False, default=dict)
    error_message = Column(Text, nullable=True)
    total_characters_consumed = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)

    stages = relationship(
        "BookCreationStage",
        back_populates="task",
        cascade="all, delete-orphan",
        order_by="BookCreationStage.id",
    )


class BookCreationStage(Base):
    __tablename__ = "book_creation_stage"

    id = Column(Integer, primary_key=True)
    task_id = Column(Integer, ForeignKey("book_creation_task.id", ondelete="CASCADE"), nullable=False, index=True)
    stage_type = Column(SAEnum(BookStage), nullable=False)
    status = Column(SAEnum(StageStatus), default=StageStatus.pending, nullable=False)
    input_data = Column(MutableDict.as_mutable(json_type()), nullable=True)
    output_data = Column(MutableDict.as_mutable(json_type()), nullable=True)
    prompt_id = Column(Integer, ForeignKey("prompt.id", ondelete="SET NULL"), nullable=True)
    characters_consumed = Column(Integer, default=0, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)

    task = relationship("BookCreationTask", back_populates="stages")


class OutlineNode(Base):
    __tablename__ = "outline_node"
    __table_args__ = (
        Index("ix_outline_node_task_level", "task_id", "level"),
    )

    id = Column(Integer, primary_key=True)
    task_id = Column(Integer, ForeignKey("book_creation_task.id", ondelete="CASCADE"), nullable=False)
    parent_id = Column(Integer, ForeignKey("outline_node.id", ondelete="CASCADE"), nullable=True)
    level = Column(Integer, nullable=False)  # 1 main, 2 volume, 3 chapter
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=True)
    order = Column(Integer, default=0, nullable=False)
    status = Column(SAEnum(OutlineNodeStatus), default=OutlineNodeStatus.draft, nullable=False)
    # chapter nodes only
    body = Column(Text, nullable=True)
    review = Column(MutableDict.as_mutable(json_type()), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


# ---------------------------
# AUDIT LOG
# ---------------------------
class Log(Base):
    __tablename__ = "log"
    __table_args__ = (
        Index("ix_log_user_id", "user_id"),
        Index("ix_log_type", "type"),
        Index("ix_log_level", "level"),
        Index("ix_log_created_at", "created_at"),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=True)
    username = Column(String(64), nullable=True)
    type = Column(SAEnum(LogType), default=LogType.api, nullable=False)
    level = Column(SAEnum(LogLevel), default=LogLevel.info, nullable=False)
    action = Column(String(255), nullable=False)
    method = Column(String(10), nullable=True)
    path = Column(String(500), nullable=True)
    params = Column(Text, nullable=True)
    response = Column(Text, nullable=True)
    ip = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)
    duration = Column(Integer, nullable=True)
    status_code = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


# ---------------------------
# ANNOUNCEMENTS
# ---------------------------
class Announcement(Base):
    __tablename__ = "announcement"

    id = Column(Integer, primary_key=True)
    title = Column(String(200), nullable=False)
    content = Column(Text, nullable=False)
    summary = Column(String(500), nullable=True)
    type = Column(SAEnum(AnnouncementType), default=AnnouncementType.notice, nullable=False)
    level = Column(SAEnum(AnnouncementLevel), default=AnnouncementLevel.info, nullable=False)
    priority = Column(Integer, default=5, nullable=False)
    is_active = Column(Boolean, default=False, nullable=False)
    is_top = Column(Boolean, default=False, nullable=False)
    is_popup = Column(Boolean, default=False, nullable=False)
    link_url = Column(String(500), nullable=True)
    link_text = Column(String(100), nullable=True)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    published_at = Column(DateTime, nullable=True)
    view_count = Column(Integer, default=0, nullable=False)
    creator_id = Column(Integer, ForeignKey("user.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
