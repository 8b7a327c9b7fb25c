"""Prompt store: prompts, their content blocks and derived parameters."""
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..errors import DomainError, ForbiddenError, NotFoundError, PromptBannedError
from ..models import (
    ApplicationStatus, ContentRole, PermissionType, Prompt, PromptApplication, PromptCategory, PromptContent,
    PromptStatus, utcnow,
)
from ..schemas import (
    BatchUpdatePayload, BuildPromptResult, ChatTurn, ContentCreate, ContentMeta, ContentUpdate,
    ParameterSchema, PromptConfigRead, PromptCreate, PromptRead, PromptUpdate,
)
from ..utils import PageParams, is_admin
from . import stats
from .permissions import can_see_content, check_permission, ensure_author_or_admin
from .templating import extract_parameters, merge_parameters, render_text

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "hot_value": Prompt.hot_value,
    "hotValue": Prompt.hot_value,
    "created_at": Prompt.created_at,
    "createdAt": Prompt.created_at,
    "view_count": Prompt.view_count,
    "viewCount": Prompt.view_count,
    "use_count": Prompt.use_count,
    "useCount": Prompt.use_count,
    "like_count": Prompt.like_count,
    "likeCount": Prompt.like_count,
}


def normalize_visibility(prompt: Prompt) -> None:
    # a gated prompt never exposes its content text
    if prompt.require_application:
        prompt.is_content_public = False


def _user_id(user) -> Optional[int]:
    return getattr(user, "id", None)


async def get_prompt_or_404(db: AsyncSession, prompt_id: int, with_contents: bool = True) -> Prompt:
    q = select(Prompt).where(Prompt.id == prompt_id, Prompt.deleted_at.is_(None))
    if with_contents:
        q = q.options(selectinload(Prompt.contents)).execution_options(populate_existing=True)
    prompt = (await db.execute(q)).scalars().first()
    if not prompt:
        raise NotFoundError("Prompt not found")
    return prompt


async def _ensure_category(db: AsyncSession, category_id: Optional[int]) -> None:
    if category_id is not None and not await db.get(PromptCategory, category_id):
        raise NotFoundError("Category not found")


def build_content(data: ContentCreate, order: int, previous: Optional[Iterable[dict]] = None) -> PromptContent:
    overrides = [p.model_dump() for p in data.parameters] if data.parameters else list(previous or [])
    return PromptContent(
        name=data.name,
        role=data.role,
        content=data.content or "",
        order=data.order if data.order is not None else order,
        type=data.type,
        reference_id=data.reference_id,
        is_enabled=data.is_enabled,
        parameters=extract_parameters(data.content, overrides),
    )


def prompt_parameters(contents: Iterable[PromptContent], enabled_only: bool = True) -> List[dict]:
    blocks = sorted(contents, key=lambda c: (c.order, c.id or 0))
    return merge_parameters(c.parameters or [] for c in blocks if c.is_enabled or not enabled_only)


# ---------------------------
# CRUD
# ---------------------------
async def create_prompt(db: AsyncSession, author, payload: PromptCreate) -> Prompt:
    await _ensure_category(db, payload.category_id)
    prompt = Prompt(
        name=payload.name,
        description=payload.description,
        category_id=payload.category_id,
        author_id=author.id,
        is_public=payload.is_public,
        is_content_public=payload.is_content_public,
        require_application=payload.require_application,
        status=payload.status,
        view_count=0,
        use_count=0,
        like_count=0,
        hot_value=0,
    )
    normalize_visibility(prompt)
    prompt.contents = [build_content(c, i) for i, c in enumerate(payload.contents)]
    db.add(prompt)
    await db.commit()
    logger.info("User %s created prompt %s", author.id, prompt.id)
    return await get_prompt_or_404(db, prompt.id)


async def update_prompt(db: AsyncSession, prompt_id: int, user, payload: PromptUpdate) -> Prompt:
    prompt = await get_prompt_or_404(db, prompt_id)
    ensure_author_or_admin(prompt, user, "edit this prompt")

    fields = payload.model_dump(exclude_unset=True, exclude={"contents"})
    if "category_id" in fields:
        await _ensure_category(db, fields["category_id"])
    for key, value in fields.items():
        setattr(prompt, key, value)
    normalize_visibility(prompt)

    if payload.contents is not None:
        previous = {c.name: list(c.parameters or []) for c in prompt.contents}
        prompt.contents = [
            build_content(c, i, previous.get(c.name)) for i, c in enumerate(payload.contents)
        ]

    await db.commit()
    db.expire(prompt)
    return await get_prompt_or_404(db, prompt_id)


async def delete_prompt(db: AsyncSession, prompt_id: int, user) -> None:
    prompt = await get_prompt_or_404(db, prompt_id, with_contents=False)
    ensure_author_or_admin(prompt, user, "delete this prompt")
    prompt.deleted_at = utcnow()
    await db.commit()
    logger.info("Prompt %s soft-deleted by user %s", prompt_id, _user_id(user))


# ---------------------------
# Content blocks
# ---------------------------
async def add_content(db: AsyncSession, prompt_id: int, user, payload: ContentCreate) -> PromptContent:
    prompt = await get_prompt_or_404(db, prompt_id)
    ensure_author_or_admin(prompt, user, "edit this prompt")
    next_order = max((c.order for c in prompt.contents), default=-1) + 1
    block = build_content(payload, next_order)
    block.prompt_id = prompt.id
    db.add(block)
    await db.commit()
    return block


async def _get_content(db: AsyncSession, prompt_id: int, content_id: int) -> PromptContent:
    block = (
        await db.execute(
            select(PromptContent).where(PromptContent.id == content_id, PromptContent.prompt_id == prompt_id)
        )
    ).scalars().first()
    if not block:
        raise NotFoundError("Content block not found")
    return block


async def update_content(db: AsyncSession, prompt_id: int, content_id: int, user,
                         payload: ContentUpdate) -> PromptContent:
    prompt = await get_prompt_or_404(db, prompt_id, with_contents=False)
    ensure_author_or_admin(prompt, user, "edit this prompt")
    block = await _get_content(db, prompt_id, content_id)

    fields = payload.model_dump(exclude_unset=True, exclude={"parameters"})
    for key, value in fields.items():
        setattr(block, key, value)

    overrides = (
        [p.model_dump() for p in payload.parameters] if payload.parameters is not None
        else list(block.parameters or [])
    )
    # recomputed on every edit, not incrementally
    block.parameters = extract_parameters(block.content, overrides)
    await db.commit()
    return block


async def delete_content(db: AsyncSession, prompt_id: int, content_id: int, user) -> None:
    prompt = await get_prompt_or_404(db, prompt_id, with_contents=False)
    ensure_author_or_admin(prompt, user, "edit this prompt")
    block = await _get_content(db, prompt_id, content_id)
    await db.delete(block)
    await db.commit()


# ---------------------------
# Listing
# ---------------------------
def _sorted(q, sort_by: Optional[str], sort_order: str):
    column = SORT_COLUMNS.get(sort_by or "", Prompt.created_at)
    direction = column.asc() if (sort_order or "").lower() == "asc" else column.desc()
    return q.order_by(direction, Prompt.id.desc())


async def _page(db: AsyncSession, q, params: PageParams):
    total = (await db.execute(select(func.count()).select_from(q.subquery()))).scalar_one()
    rows = (await db.execute(q.offset(params.offset).limit(params.page_size))).scalars().all()
    return rows, total


async def list_prompts(db: AsyncSession, user, params: PageParams, *, category_id: Optional[int] = None,
                       author_id: Optional[int] = None, keyword: Optional[str] = None,
                       sort_by: Optional[str] = None, sort_order: str = "desc"):
    q = select(Prompt).where(Prompt.deleted_at.is_(None))

    own = author_id is not None and author_id == _user_id(user)
    if own:
        q = q.where(Prompt.author_id == author_id)
    else:
        q = (
            q.where(Prompt.is_public.is_(True))
            .where(Prompt.is_banned.is_(False))
            .where(Prompt.needs_review.is_(False))
            .where(Prompt.status == PromptStatus.published)
        )
        if author_id is not None:
            q = q.where(Prompt.author_id == author_id)

    if category_id is not None:
        q = q.where(Prompt.category_id == category_id)
    if keyword:
        like = f"%{keyword.strip()}%"
        q = q.where(or_(Prompt.name.ilike(like), Prompt.description.ilike(like)))

    return await _page(db, _sorted(q, sort_by, sort_order), params)


async def list_my_prompts(db: AsyncSession, user, params: PageParams, *, status: Optional[PromptStatus] = None):
    q = select(Prompt).where(Prompt.deleted_at.is_(None), Prompt.author_id == user.id)
    if status is not None:
        q = q.where(Prompt.status == status)
    rows, total = await _page(db, q.order_by(Prompt.updated_at.desc(), Prompt.id.desc()), params)

    counts = {}
    ids = [p.id for p in rows]
    if ids:
        res = await db.execute(
            select(PromptApplication.prompt_id, func.count(PromptApplication.id))
            .where(PromptApplication.prompt_id.in_(ids))
            .where(PromptApplication.status == ApplicationStatus.pending)
            .group_by(PromptApplication.prompt_id)
        )
        counts = {pid: n for pid, n in res.all()}
    return [(p, counts.get(p.id, 0)) for p in rows], total


async def list_all_for_admin(db: AsyncSession, params: PageParams, *, status: Optional[PromptStatus] = None,
                             keyword: Optional[str] = None, is_banned: Optional[bool] = None,
                             needs_review: Optional[bool] = None):
    q = select(Prompt).where(Prompt.deleted_at.is_(None))
    if status is not None:
        q = q.where(Prompt.status == status)
    if is_banned is not None:
        q = q.where(Prompt.is_banned.is_(is_banned))
    if needs_review is not None:
        q = q.where(Prompt.needs_review.is_(needs_review))
    if keyword:
        like = f"%{keyword.strip()}%"
        q = q.where(or_(Prompt.name.ilike(like), Prompt.description.ilike(like)))
    return await _page(db, q.order_by(Prompt.created_at.desc(), Prompt.id.desc()), params)


# ---------------------------
# Reads with access rules
# ---------------------------
async def get_prompt(db: AsyncSession, prompt_id: int, user) -> PromptRead:
    """Full mode: contents for those allowed to see them, parameters otherwise."""
    prompt = await get_prompt_or_404(db, prompt_id)
    uid = _user_id(user)
    privileged = prompt.author_id == uid or is_admin(user)

    if not privileged:
        if prompt.status != PromptStatus.published:
            raise ForbiddenError("This prompt is not published")
        if prompt.is_banned:
            raise PromptBannedError(prompt.banned_reason)
        if prompt.needs_review:
            raise ForbiddenError("This prompt is under review")
        if not prompt.is_public and not await check_permission(db, prompt, uid, PermissionType.view):
            raise ForbiddenError("This prompt is private")

    await stats.increment_view(db, prompt, uid)
    await db.commit()

    view = PromptRead.model_validate(prompt)
    if not await can_see_content(db, prompt, user):
        parameters = [ParameterSchema.model_validate(p) for p in prompt_parameters(prompt.contents)]
        view = view.model_copy(update={"contents": None, "parameters": parameters})
    return view


async def get_prompt_config(db: AsyncSession, prompt_id: int, user) -> PromptConfigRead:
    """Config mode: parameter names/descriptions and block metadata, never text."""
    prompt = await get_prompt_or_404(db, prompt_id)
    uid = _user_id(user)

    if prompt.is_banned:
        raise PromptBannedError(prompt.banned_reason)
    if prompt.needs_review:
        raise ForbiddenError("This prompt is under review")

    is_author = prompt.author_id == uid
    if not is_author and not is_admin(user):
        if prompt.status != PromptStatus.published:
            raise ForbiddenError("This prompt is not published")
        if not prompt.is_public and not await check_permission(db, prompt, uid, PermissionType.view):
            raise ForbiddenError("This prompt is private")
        if prompt.require_application and not await check_permission(db, prompt, uid, PermissionType.use):
            raise ForbiddenError("An approved application is required to use this prompt")

    enabled = [c for c in prompt.contents if c.is_enabled]
    return PromptConfigRead(
        id=prompt.id,
        name=prompt.name,
        description=prompt.description,
        author_id=prompt.author_id,
        is_content_public=prompt.is_content_public,
        require_application=prompt.require_application,
        parameters=prompt_parameters(enabled),
        contents=[ContentMeta.model_validate(c) for c in enabled],
    )


async def load_usable_prompt(db: AsyncSession, prompt_id: int, user_id: int) -> Prompt:
    """Prompt with contents, checked for use by `user_id`."""
    prompt = await get_prompt_or_404(db, prompt_id)
    if prompt.is_banned:
        raise PromptBannedError(prompt.banned_reason)
    if not await check_permission(db, prompt, user_id, PermissionType.use):
        raise ForbiddenError(f"No permission to use prompt {prompt_id}")
    return prompt


# ---------------------------
# Message building
# ---------------------------
def build_messages(prompt: Prompt, values: Mapping[str, Any]) -> List[Dict[str, str]]:
    """Enabled blocks in order, placeholders substituted, blank results dropped."""
    messages = []
    for block in sorted(prompt.contents, key=lambda c: (c.order, c.id or 0)):
        if not block.is_enabled:
            continue
        text = render_text(block.content, values, block.parameters)
        if not text.strip():
            continue
        role = block.role.value if isinstance(block.role, ContentRole) else str(block.role)
        messages.append({"role": role, "content": text})
    if not messages:
        raise DomainError(f"Prompt {prompt.id} has no enabled content")
    return messages


async def build_prompt(db: AsyncSession, user, prompt_id: int, parameters: Mapping[str, Any],
                       history: Iterable[ChatTurn] = (), user_input: Optional[str] = None) -> BuildPromptResult:
    """Prompt messages followed by prior turns and the new user input."""
    prompt = await load_usable_prompt(db, prompt_id, user.id)
    messages = build_messages(prompt, parameters)
    for turn in history:
        messages.append({"role": turn.role, "content": turn.content})
    if user_input:
        messages.append({"role": ContentRole.user.value, "content": user_input})
    logger.info("User %s built prompt %s (%d messages)", user.id, prompt.id, len(messages))
    return BuildPromptResult(
        prompt_id=prompt.id,
        messages=messages,
        characters=sum(len(m["content"]) for m in messages),
    )


# ---------------------------
# Bulk / moderation
# ---------------------------
async def batch_update(db: AsyncSession, user, payload: BatchUpdatePayload) -> int:
    q = select(Prompt).where(Prompt.id.in_(payload.ids), Prompt.deleted_at.is_(None))
    if not is_admin(user):
        q = q.where(Prompt.author_id == user.id)
    rows = (await db.execute(q)).scalars().all()
    fields = payload.model_dump(exclude_unset=True, exclude={"ids"})
    if not fields:
        raise DomainError("Nothing to update")
    if "category_id" in fields:
        await _ensure_category(db, fields["category_id"])
    for prompt in rows:
        for key, value in fields.items():
            setattr(prompt, key, value)
    await db.commit()
    return len(rows)


async def ban_prompt(db: AsyncSession, prompt_id: int, reason: Optional[str]) -> Prompt:
    prompt = await get_prompt_or_404(db, prompt_id)
    prompt.is_banned = True
    prompt.banned_reason = reason or "violates content policy"
    prompt.banned_at = utcnow()
    await db.commit()
    logger.info("Prompt %s banned: %s", prompt_id, prompt.banned_reason)
    return prompt


async def unban_prompt(db: AsyncSession, prompt_id: int) -> Prompt:
    prompt = await get_prompt_or_404(db, prompt_id)
    if not prompt.is_banned:
        raise DomainError("Prompt is not banned")
    prompt.is_banned = False
    prompt.banned_reason = None
    prompt.banned_at = None
    await db.commit()
    return prompt


async def submit_for_review(db: AsyncSession, prompt_id: int, user) -> Prompt:
    prompt = await get_prompt_or_404(db, prompt_id)
    if prompt.author_id != user.id:
        raise ForbiddenError("Only the author can submit this prompt for review")
    if not prompt.needs_review:
        raise DomainError("This prompt does not need review")
    if prompt.review_submitted_at is not None:
        raise DomainError("Already submitted for review")
    prompt.review_submitted_at = utcnow()
    await db.commit()
    return prompt


async def approve_review(db: AsyncSession, prompt_id: int) -> Prompt:
    prompt = await get_prompt_or_404(db, prompt_id)
    if not prompt.needs_review:
        raise DomainError("This prompt does not need review")
    prompt.needs_review = False
    prompt.review_snapshot = None
    prompt.review_submitted_at = None
    prompt.status = PromptStatus.published
    await db.commit()
    logger.info("Prompt %s review approved", prompt_id)
    return prompt


async def reject_review(db: AsyncSession, prompt_id: int, reason: Optional[str]) -> Prompt:
    prompt = await get_prompt_or_404(db, prompt_id)
    if not prompt.needs_review or prompt.review_submitted_at is None:
        raise DomainError("This prompt has no pending review submission")
    snapshot = dict(prompt.review_snapshot or {})
    snapshot["rejection_reason"] = reason or ""
    snapshot["rejected_at"] = utcnow().isoformat()
    prompt.review_snapshot = snapshot
    prompt.review_submitted_at = None
    await db.commit()
    return prompt
