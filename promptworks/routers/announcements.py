from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models import AnnouncementLevel, AnnouncementType
from ..schemas import AnnouncementCreate, AnnouncementRead, AnnouncementUpdate
from ..services import announcements
from ..utils import PageParams, page_params, paginated, require_admin_user

router = APIRouter(prefix="/api/v1/announcements", tags=["announcements"])


def _reads(rows):
    return [AnnouncementRead.model_validate(r) for r in rows]


@router.post("", status_code=201)
async def create_announcement(
    payload: AnnouncementCreate,
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin_user),
):
    return AnnouncementRead.model_validate(await announcements.create(db, admin, payload))


@router.get("")
async def list_announcements(
    type: Optional[AnnouncementType] = None,
    level: Optional[AnnouncementLevel] = None,
    is_active: Optional[bool] = Query(None, alias="isActive"),
    is_top: Optional[bool] = Query(None, alias="isTop"),
    is_popup: Optional[bool] = Query(None, alias="isPopup"),
    params: PageParams = Depends(page_params),
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin_user),
):
    rows, total = await announcements.list_all(
        db, params, type=type, level=level, is_active=is_active, is_top=is_top, is_popup=is_popup,
    )
    return paginated(_reads(rows), total, params)


@router.get("/active")
async def active_announcements(db: AsyncSession = Depends(get_db)):
    return _reads(await announcements.list_active(db))


@router.get("/popup")
async def popup_announcements(db: AsyncSession = Depends(get_db)):
    return _reads(await announcements.list_popup(db))


@router.get("/{announcement_id}")
async def get_announcement(announcement_id: int, db: AsyncSession = Depends(get_db)):
    return AnnouncementRead.model_validate(await announcements.get(db, announcement_id))


@router.patch("/{announcement_id}")
async def update_announcement(
    announcement_id: int,
    payload: AnnouncementUpdate,
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin_user),
):
    return AnnouncementRead.model_validate(await announcements.update(db, announcement_id, admin, payload))


@router.delete("/{announcement_id}")
async def delete_announcement(
    announcement_id: int,
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin_user),
):
    await announcements.delete(db, announcement_id, admin)
    return {"id": announcement_id, "message": "Announcement deleted"}


@router.post("/{announcement_id}/publish")
async def publish_announcement(
    announcement_id: int,
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin_user),
):
    row = await announcements.publish(db, announcement_id, admin)
    return AnnouncementRead.model_validate(row)
