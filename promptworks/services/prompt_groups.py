# services/prompt_groups.py
import logging
from typing import Dict, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..errors import DomainError, ForbiddenError, NotFoundError
from ..models import (
    Prompt, PromptContent, PromptGroup, PromptGroupItem, PromptGroupLike, PromptStatus, utcnow,
)
from ..schemas import GroupCreate, GroupItemIn, GroupUpdate
from ..utils import PageParams, is_admin

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "hot_value": PromptGroup.hot_value,
    "hotValue": PromptGroup.hot_value,
    "created_at": PromptGroup.created_at,
    "createdAt": PromptGroup.created_at,
    "use_count": PromptGroup.use_count,
    "useCount": PromptGroup.use_count,
    "like_count": PromptGroup.like_count,
    "likeCount": PromptGroup.like_count,
}


def group_hot_value(group: PromptGroup) -> float:
    return float((group.view_count or 0) + (group.use_count or 0) * 5 + (group.like_count or 0) * 10)


async def get_group_or_404(db: AsyncSession, group_id: int) -> PromptGroup:
    q = (
        select(PromptGroup)
        .where(PromptGroup.id == group_id, PromptGroup.deleted_at.is_(None))
        .options(selectinload(PromptGroup.items))
        .execution_options(populate_existing=True)
    )
    group = (await db.execute(q)).scalars().first()
    if not group:
        raise NotFoundError("Prompt group not found")
    return group


def _ensure_owner(group: PromptGroup, user, action: str) -> None:
    if group.user_id == getattr(user, "id", None) or is_admin(user):
        return
    raise ForbiddenError(f"Only the owner can {action}")


async def validate_items(db: AsyncSession, items: List[GroupItemIn]) -> None:
    """Reject empty groups, unbound stages, duplicate stages and unknown prompts."""
    if not items:
        raise DomainError("A prompt group needs at least one prompt")

    missing = [i.stage_type.value for i in items if i.prompt_id is None]
    if missing:
        raise DomainError(
            "Every stage must select a prompt",
            details=[{"field": stage, "message": "prompt_id is required"} for stage in missing],
        )

    seen = set()
    for item in items:
        if item.stage_type in seen:
            raise DomainError(f"Duplicate stage type: {item.stage_type.value}")
        seen.add(item.stage_type)

    ids = {i.prompt_id for i in items}
    found = set((await db.execute(
        select(Prompt.id).where(Prompt.id.in_(ids), Prompt.deleted_at.is_(None))
    )).scalars().all())
    if found != ids:
        raise DomainError(
            "Some prompts do not exist",
            details={"missing": sorted(ids - found)},
        )


def _build_items(items: List[GroupItemIn]) -> List[PromptGroupItem]:
    return [
        PromptGroupItem(
            prompt_id=i.prompt_id,
            stage_type=i.stage_type,
            stage_label=i.stage_label,
            order=i.order if i.order is not None else idx,
            is_required=i.is_required,
        )
        for idx, i in enumerate(items)
    ]


async def _propagate_gate(db: AsyncSession, group: PromptGroup) -> None:
    # gating a group gates the owner's own member prompts too
    ids = [i.prompt_id for i in group.items]
    if not ids:
        return
    await db.execute(
        update(Prompt)
        .where(Prompt.id.in_(ids), Prompt.author_id == group.user_id)
        .values(require_application=True, is_content_public=False)
        .execution_options(synchronize_session=False)
    )


async def create_group(db: AsyncSession, user, payload: GroupCreate) -> PromptGroup:
    await validate_items(db, payload.items)
    group = PromptGroup(
        name=payload.name,
        description=payload.description,
        category_id=payload.category_id,
        user_id=user.id,
        is_public=payload.is_public,
        require_application=payload.require_application,
        status=payload.status,
        view_count=0,
        use_count=0,
        like_count=0,
        hot_value=0,
    )
    group.items = _build_items(payload.items)
    db.add(group)
    await db.flush()
    if group.require_application:
        await _propagate_gate(db, group)
    await db.commit()
    logger.info("User %s created prompt group %s", user.id, group.id)
    return await get_group_or_404(db, group.id)


async def update_group(db: AsyncSession, group_id: int, user, payload: GroupUpdate) -> PromptGroup:
    group = await get_group_or_404(db, group_id)
    _ensure_owner(group, user, "edit this group")

    if payload.items is not None:
        await validate_items(db, payload.items)
        group.items = []
        # old rows must be gone before the unique (group, stage) rows come back
        await db.flush()
        group.items = _build_items(payload.items)

    for key, value in payload.model_dump(exclude_unset=True, exclude={"items"}).items():
        setattr(group, key, value)

    try:
        await db.flush()
    except IntegrityError as e:
        await db.rollback()
        raise DomainError("Duplicate stage type in group") from e
    if group.require_application:
        await _propagate_gate(db, group)
    await db.commit()
    return await get_group_or_404(db, group_id)


async def delete_group(db: AsyncSession, group_id: int, user) -> None:
    group = await get_group_or_404(db, group_id)
    _ensure_owner(group, user, "delete this group")
    group.deleted_at = utcnow()
    await db.commit()


async def get_group(db: AsyncSession, group_id: int, user) -> PromptGroup:
    group = await get_group_or_404(db, group_id)
    uid = getattr(user, "id", None)
    if group.user_id != uid and not is_admin(user):
        if group.status != PromptStatus.published or not group.is_public:
            raise ForbiddenError("This prompt group is not available")
        group.view_count = (group.view_count or 0) + 1
        group.hot_value = group_hot_value(group)
        await db.commit()
    return group


async def _page(db: AsyncSession, q, params: PageParams):
    total = (await db.execute(select(func.count()).select_from(q.subquery()))).scalar_one()
    rows = (await db.execute(
        q.options(selectinload(PromptGroup.items)).offset(params.offset).limit(params.page_size)
    )).scalars().all()
    return rows, total


async def list_groups(db: AsyncSession, params: PageParams, *, category_id: Optional[int] = None,
                      keyword: Optional[str] = None, sort_by: Optional[str] = None, sort_order: str = "desc"):
    q = (
        select(PromptGroup)
        .where(PromptGroup.deleted_at.is_(None))
        .where(PromptGroup.is_public.is_(True))
        .where(PromptGroup.status == PromptStatus.published)
    )
    if category_id is not None:
        q = q.where(PromptGroup.category_id == category_id)
    if keyword:
        like = f"%{keyword.strip()}%"
        q = q.where(or_(PromptGroup.name.ilike(like), PromptGroup.description.ilike(like)))
    column = SORT_COLUMNS.get(sort_by or "", PromptGroup.created_at)
    q = q.order_by(column.asc() if sort_order == "asc" else column.desc(), PromptGroup.id.desc())
    return await _page(db, q, params)


async def list_my(db: AsyncSession, user, params: PageParams):
    q = (
        select(PromptGroup)
        .where(PromptGroup.deleted_at.is_(None), PromptGroup.user_id == user.id)
        .order_by(PromptGroup.updated_at.desc(), PromptGroup.id.desc())
    )
    return await _page(db, q, params)


async def get_group_parameters(db: AsyncSession, group_id: int, user) -> List[dict]:
    """Parameters of every member prompt, tagged with the stage they first appear in."""
    group = await get_group(db, group_id, user)
    ids = [i.prompt_id for i in group.items]
    contents = (await db.execute(
        select(PromptContent)
        .where(PromptContent.prompt_id.in_(ids), PromptContent.is_enabled.is_(True))
        .order_by(PromptContent.order, PromptContent.id)
    )).scalars().all() if ids else []

    by_prompt: Dict[int, List[PromptContent]] = {}
    for c in contents:
        by_prompt.setdefault(c.prompt_id, []).append(c)

    out: List[dict] = []
    seen = set()
    for item in sorted(group.items, key=lambda i: (i.order, i.id)):
        for block in by_prompt.get(item.prompt_id, []):
            for p in block.parameters or []:
                name = p.get("name")
                if not name or name in seen:
                    continue
                seen.add(name)
                out.append({
                    "name": name,
                    "required": bool(p.get("required", True)),
                    "description": p.get("description") or "",
                    "stage_type": item.stage_type,
                    "prompt_id": item.prompt_id,
                })
    return out


def build_prompt_config(group: PromptGroup) -> Dict[str, int]:
    return {item.stage_type.value: item.prompt_id for item in group.items}


async def like_group(db: AsyncSession, group_id: int, user_id: int) -> PromptGroup:
    group = await get_group_or_404(db, group_id)
    existing = (await db.execute(
        select(PromptGroupLike).where(PromptGroupLike.group_id == group_id, PromptGroupLike.user_id == user_id)
    )).scalars().first()
    if existing:
        raise DomainError("Already liked")
    db.add(PromptGroupLike(group_id=group_id, user_id=user_id))
    group.like_count = (group.like_count or 0) + 1
    group.hot_value = group_hot_value(group)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise DomainError("Already liked") from e
    return group


async def unlike_group(db: AsyncSession, group_id: int, user_id: int) -> PromptGroup:
    group = await get_group_or_404(db, group_id)
    existing = (await db.execute(
        select(PromptGroupLike).where(PromptGroupLike.group_id == group_id, PromptGroupLike.user_id == user_id)
    )).scalars().first()
    if not existing:
        raise DomainError("Not liked yet")
    await db.delete(existing)
    group.like_count = max((group.like_count or 0) - 1, 0)
    group.hot_value = group_hot_value(group)
    await db.commit()
    return group


async def use_group(db: AsyncSession, group_id: int) -> PromptGroup:
    group = await get_group_or_404(db, group_id)
    group.use_count = (group.use_count or 0) + 1
    group.hot_value = group_hot_value(group)
    await db.commit()
    return group
