from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models import LogLevel, LogType
from ..schemas import LogRead
from ..services import audit_log
from ..utils import PageParams, page_params, paginated, require_admin_user

router = APIRouter(prefix="/api/v1/logs", tags=["admin", "logs"])


@router.get("")
async def list_logs(
    user_id: Optional[int] = Query(None, alias="userId"),
    type: Optional[LogType] = None,
    level: Optional[LogLevel] = None,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    params: PageParams = Depends(page_params),
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin_user),
):
    rows, total = await audit_log.list_logs(
        db, params, user_id=user_id, log_type=type, level=level, start=start_date, end=end_date,
    )
    return paginated([LogRead.model_validate(r) for r in rows], total, params)


@router.get("/statistics")
async def log_statistics(
    days: int = Query(7, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin_user),
):
    return await audit_log.statistics(db, days)


@router.delete("/cleanup")
async def cleanup_logs(
    days: int = Query(90, ge=1),
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin_user),
):
    deleted = await audit_log.cleanup(db, days)
    return {"deleted": deleted, "message": f"Deleted {deleted} log(s) older than {days} days"}
