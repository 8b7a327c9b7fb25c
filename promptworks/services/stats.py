# services/stats.py
import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import DomainError, NotFoundError
from ..models import Prompt, PromptFavorite, PromptLike
from ..utils import PageParams

logger = logging.getLogger(__name__)

VIEW_WEIGHT = 0.2
USE_WEIGHT = 4
LIKE_WEIGHT = 15


def hot_value(view_count: int, use_count: int, like_count: int) -> float:
    return round((view_count or 0) * VIEW_WEIGHT + (use_count or 0) * USE_WEIGHT + (like_count or 0) * LIKE_WEIGHT, 2)


def refresh_hot_value(prompt: Prompt) -> None:
    prompt.hot_value = hot_value(prompt.view_count, prompt.use_count, prompt.like_count)


async def _load(db: AsyncSession, prompt_id: int) -> Prompt:
    prompt = (
        await db.execute(select(Prompt).where(Prompt.id == prompt_id, Prompt.deleted_at.is_(None)))
    ).scalars().first()
    if not prompt:
        raise NotFoundError("Prompt not found")
    return prompt


async def _bump(db: AsyncSession, prompt_id: int, column, delta: int) -> None:
    # atomic in SQL; the session copy is synchronised by the ORM update
    await db.execute(
        update(Prompt).where(Prompt.id == prompt_id).values({column: column + delta})
    )


async def increment_view(db: AsyncSession, prompt: Prompt, viewer_id) -> None:
    if viewer_id is not None and viewer_id == prompt.author_id:
        return
    await _bump(db, prompt.id, Prompt.view_count, 1)
    refresh_hot_value(prompt)
    await db.commit()


async def record_use(db: AsyncSession, prompt_id: int) -> Prompt:
    prompt = await _load(db, prompt_id)
    await _bump(db, prompt.id, Prompt.use_count, 1)
    refresh_hot_value(prompt)
    await db.commit()
    return prompt


async def like(db: AsyncSession, prompt_id: int, user_id: int) -> Prompt:
    prompt = await _load(db, prompt_id)
    existing = (await db.execute(
        select(PromptLike).where(PromptLike.prompt_id == prompt_id, PromptLike.user_id == user_id)
    )).scalars().first()
    if existing:
        raise DomainError("Already liked")
    db.add(PromptLike(prompt_id=prompt_id, user_id=user_id))
    try:
        await db.flush()
    except IntegrityError as e:
        await db.rollback()
        raise DomainError("Already liked") from e
    await _bump(db, prompt_id, Prompt.like_count, 1)
    refresh_hot_value(prompt)
    await db.commit()
    return prompt


async def unlike(db: AsyncSession, prompt_id: int, user_id: int) -> Prompt:
    prompt = await _load(db, prompt_id)
    existing = (await db.execute(
        select(PromptLike).where(PromptLike.prompt_id == prompt_id, PromptLike.user_id == user_id)
    )).scalars().first()
    if not existing:
        raise DomainError("Not liked yet")
    await db.delete(existing)
    await _bump(db, prompt_id, Prompt.like_count, -1)
    if prompt.like_count < 0:
        prompt.like_count = 0
    refresh_hot_value(prompt)
    await db.commit()
    return prompt


async def favorite(db: AsyncSession, prompt_id: int, user_id: int) -> None:
    await _load(db, prompt_id)
    existing = (await db.execute(
        select(PromptFavorite).where(PromptFavorite.prompt_id == prompt_id, PromptFavorite.user_id == user_id)
    )).scalars().first()
    if existing:
        raise DomainError("Already in favorites")
    db.add(PromptFavorite(prompt_id=prompt_id, user_id=user_id))
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise DomainError("Already in favorites") from e


async def unfavorite(db: AsyncSession, prompt_id: int, user_id: int) -> None:
    existing = (await db.execute(
        select(PromptFavorite).where(PromptFavorite.prompt_id == prompt_id, PromptFavorite.user_id == user_id)
    )).scalars().first()
    if not existing:
        raise DomainError("Not in favorites")
    await db.delete(existing)
    await db.commit()


async def list_favorites(db: AsyncSession, user_id: int, params: PageParams):
    base = (
        select(Prompt)
        .join(PromptFavorite, PromptFavorite.prompt_id == Prompt.id)
        .where(PromptFavorite.user_id == user_id)
        .where(Prompt.deleted_at.is_(None))
    )
    total = (await db.execute(select(func.count()).select_from(base.subquery()))).scalar_one()
    rows = (await db.execute(
        base.order_by(PromptFavorite.created_at.desc(), PromptFavorite.id.desc())
        .offset(params.offset).limit(params.page_size)
    )).scalars().all()
    return rows, total


async def get_stats(db: AsyncSession, prompt_id: int, user_id) -> dict:
    prompt = await _load(db, prompt_id)
    liked = favorited = False
    if user_id is not None:
        liked = bool((await db.execute(
            select(PromptLike.id).where(PromptLike.prompt_id == prompt_id, PromptLike.user_id == user_id)
        )).scalar_one_or_none())
        favorited = bool((await db.execute(
            select(PromptFavorite.id).where(PromptFavorite.prompt_id == prompt_id, PromptFavorite.user_id == user_id)
        )).scalar_one_or_none())
    return {
        "id": prompt.id,
        "view_count": prompt.view_count,
        "use_count": prompt.use_count,
        "like_count": prompt.like_count,
        "hot_value": prompt.hot_value,
        "liked": liked,
        "favorited": favorited,
    }
