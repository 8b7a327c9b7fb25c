from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models import ReportStatus
from ..schemas import ReportCreate, ReportRead, ReportReview
from ..services import reports
from ..utils import PageParams, page_params, paginated, require_admin_user, require_authenticated_user

# mounted before the prompts router so "/prompts/reports" never reaches "/prompts/{prompt_id}"
router = APIRouter(prefix="/api/v1/prompts/reports", tags=["prompts", "reports"])


def _reads(rows):
    return [ReportRead.model_validate(r) for r in rows]


@router.get("")
async def list_reports(
    status: Optional[ReportStatus] = None,
    prompt_id: Optional[int] = Query(None, alias="promptId"),
    params: PageParams = Depends(page_params),
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin_user),
):
    rows, total = await reports.list_reports(db, params, status=status, prompt_id=prompt_id)
    return paginated(_reads(rows), total, params)


@router.get("/my")
async def my_reports(
    params: PageParams = Depends(page_params),
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    rows, total = await reports.list_my_reports(db, user, params)
    return paginated(_reads(rows), total, params)


@router.get("/stats/{prompt_id}")
async def report_stats(
    prompt_id: int,
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin_user),
):
    return await reports.report_stats(db, prompt_id)


@router.post("/{prompt_id}", status_code=201)
async def create_report(
    prompt_id: int,
    payload: ReportCreate,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    report = await reports.create_report(db, prompt_id, user, payload)
    return ReportRead.model_validate(report)


@router.post("/{report_id}/review")
async def review_report(
    report_id: int,
    payload: ReportReview,
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin_user),
):
    report = await reports.review_report(db, report_id, admin, payload.status, payload.review_note)
    return ReportRead.model_validate(report)


@router.delete("/{report_id}")
async def delete_report(
    report_id: int,
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin_user),
):
    await reports.delete_report(db, report_id)
    return {"id": report_id, "message": "Report deleted"}
