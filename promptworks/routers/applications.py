from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models import ApplicationStatus
from ..schemas import ApplicationCreate, ApplicationRead, ApplicationReview
from ..services import applications
from ..utils import PageParams, page_params, paginated, require_authenticated_user

router = APIRouter(prefix="/api/v1/prompt-applications", tags=["prompt-applications"])


def _reads(rows):
    return [ApplicationRead.model_validate(r) for r in rows]


@router.post("/prompts/{prompt_id}/apply", status_code=201)
async def apply_for_prompt(
    prompt_id: int,
    payload: ApplicationCreate,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    application = await applications.apply(db, prompt_id, user, payload.reason)
    return ApplicationRead.model_validate(application)


@router.get("/my")
async def my_applications(
    status: Optional[ApplicationStatus] = None,
    params: PageParams = Depends(page_params),
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    rows, total = await applications.list_my(db, user, params, status)
    return paginated(_reads(rows), total, params)


@router.get("/pending")
async def pending_for_my_prompts(
    params: PageParams = Depends(page_params),
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    rows, total = await applications.list_pending_for_author(db, user, params)
    return paginated(_reads(rows), total, params)


@router.get("/prompts/{prompt_id}")
async def applications_for_prompt(
    prompt_id: int,
    status: Optional[ApplicationStatus] = None,
    params: PageParams = Depends(page_params),
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    rows, total = await applications.list_for_prompt(db, prompt_id, user, params, status)
    return paginated(_reads(rows), total, params)


@router.post("/{application_id}/review")
async def review_application(
    application_id: int,
    payload: ApplicationReview,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    application = await applications.review_application(
        db, application_id, user, payload.status, payload.review_note
    )
    return ApplicationRead.model_validate(application)
