# services/announcements.py
import logging
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ForbiddenError, NotFoundError
from ..models import Announcement, AnnouncementLevel, AnnouncementType, utcnow
from ..schemas import AnnouncementCreate, AnnouncementUpdate
from ..utils import PageParams, is_admin

logger = logging.getLogger(__name__)


async def _get(db: AsyncSession, announcement_id: int) -> Announcement:
    row = await db.get(Announcement, announcement_id)
    if not row:
        raise NotFoundError("Announcement not found")
    return row


def _ensure_creator(row: Announcement, user) -> None:
    if row.creator_id == getattr(user, "id", None) or is_admin(user):
        return
    raise ForbiddenError("Only the creator can manage this announcement")


async def create(db: AsyncSession, user, payload: AnnouncementCreate) -> Announcement:
    row = Announcement(**payload.model_dump(), creator_id=user.id, view_count=0)
    if row.is_active:
        row.published_at = utcnow()
    db.add(row)
    await db.commit()
    logger.info("Announcement %s created by user %s", row.id, user.id)
    return row


async def list_all(db: AsyncSession, params: PageParams, *, type: Optional[AnnouncementType] = None,
                   level: Optional[AnnouncementLevel] = None, is_active: Optional[bool] = None,
                   is_top: Optional[bool] = None, is_popup: Optional[bool] = None):
    q = select(Announcement)
    if type is not None:
        q = q.where(Announcement.type == type)
    if level is not None:
        q = q.where(Announcement.level == level)
    if is_active is not None:
        q = q.where(Announcement.is_active.is_(is_active))
    if is_top is not None:
        q = q.where(Announcement.is_top.is_(is_top))
    if is_popup is not None:
        q = q.where(Announcement.is_popup.is_(is_popup))
    total = (await db.execute(select(func.count()).select_from(q.subquery()))).scalar_one()
    rows = (await db.execute(
        q.order_by(Announcement.is_top.desc(), Announcement.priority.desc(), Announcement.created_at.desc(),
                   Announcement.id.desc())
        .offset(params.offset).limit(params.page_size)
    )).scalars().all()
    return rows, total


def _active_query():
    now = utcnow()
    return (
        select(Announcement)
        .where(Announcement.is_active.is_(True))
        .where(or_(Announcement.start_time.is_(None), Announcement.start_time <= now))
        .where(or_(Announcement.end_time.is_(None), Announcement.end_time > now))
        .order_by(Announcement.is_top.desc(), Announcement.priority.desc(), Announcement.published_at.desc(),
                  Announcement.id.desc())
    )


async def list_active(db: AsyncSession):
    return (await db.execute(_active_query())).scalars().all()


async def list_popup(db: AsyncSession):
    return (await db.execute(_active_query().where(Announcement.is_popup.is_(True)))).scalars().all()


async def get(db: AsyncSession, announcement_id: int) -> Announcement:
    row = await _get(db, announcement_id)
    row.view_count = (row.view_count or 0) + 1
    await db.commit()
    return row


async def update(db: AsyncSession, announcement_id: int, user, payload: AnnouncementUpdate) -> Announcement:
    row = await _get(db, announcement_id)
    _ensure_creator(row, user)
    for key, value in payload.model_dump(exclude_unset=True).items():
        setattr(row, key, value)
    await db.commit()
    return row


async def delete(db: AsyncSession, announcement_id: int, user) -> None:
    row = await _get(db, announcement_id)
    _ensure_creator(row, user)
    await db.delete(row)
    await db.commit()


async def publish(db: AsyncSession, announcement_id: int, user) -> Announcement:
    row = await _get(db, announcement_id)
    _ensure_creator(row, user)
    row.published_at = utcnow()
    row.is_active = True
    await db.commit()
    logger.info("Announcement %s published", announcement_id)
    return row
