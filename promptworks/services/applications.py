# services/applications.py
import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import DomainError, ForbiddenError, NotFoundError
from ..models import ApplicationStatus, Prompt, PromptApplication, utcnow
from ..utils import PageParams, is_admin
from .permissions import _load_prompt, ensure_author_or_admin, has_approved_application

logger = logging.getLogger(__name__)


async def _page(db: AsyncSession, q, params: PageParams):
    total = (await db.execute(select(func.count()).select_from(q.subquery()))).scalar_one()
    rows = (await db.execute(
        q.order_by(PromptApplication.created_at.desc(), PromptApplication.id.desc())
        .offset(params.offset).limit(params.page_size)
    )).scalars().all()
    return rows, total


async def apply(db: AsyncSession, prompt_id: int, user, reason: Optional[str]) -> PromptApplication:
    prompt = await _load_prompt(db, prompt_id)
    if not prompt.require_application:
        raise DomainError("This prompt does not need an application")
    if prompt.author_id == user.id:
        raise DomainError("You cannot apply for your own prompt")

    pending = (await db.execute(
        select(PromptApplication.id)
        .where(PromptApplication.prompt_id == prompt_id)
        .where(PromptApplication.user_id == user.id)
        .where(PromptApplication.status == ApplicationStatus.pending)
        .limit(1)
    )).scalar_one_or_none()
    if pending:
        raise DomainError("You already have a pending application for this prompt")
    if await has_approved_application(db, prompt_id, user.id):
        raise DomainError("Your application for this prompt was already approved")

    application = PromptApplication(
        prompt_id=prompt_id,
        user_id=user.id,
        reason=reason,
        status=ApplicationStatus.pending,
    )
    db.add(application)
    await db.commit()
    logger.info("User %s applied for prompt %s", user.id, prompt_id)
    return application


async def review_application(db: AsyncSession, application_id: int, reviewer, status: str,
                             note: Optional[str] = None) -> PromptApplication:
    application = await db.get(PromptApplication, application_id)
    if not application:
        raise NotFoundError("Application not found")

    prompt = await db.get(Prompt, application.prompt_id)
    if prompt is None:
        raise NotFoundError("Prompt not found")
    if prompt.author_id != reviewer.id and not is_admin(reviewer):
        raise ForbiddenError("Only the prompt author can review applications")

    # terminal states stay terminal
    if application.status != ApplicationStatus.pending:
        raise DomainError("This application has already been reviewed")

    application.status = ApplicationStatus(status)
    application.reviewed_by = reviewer.id
    application.reviewed_at = utcnow()
    application.review_note = note
    await db.commit()
    logger.info("Application %s %s by user %s", application_id, application.status.value, reviewer.id)
    return application


async def list_my(db: AsyncSession, user, params: PageParams, status: Optional[ApplicationStatus] = None):
    q = select(PromptApplication).where(PromptApplication.user_id == user.id)
    if status is not None:
        q = q.where(PromptApplication.status == status)
    return await _page(db, q, params)


async def list_pending_for_author(db: AsyncSession, user, params: PageParams):
    q = (
        select(PromptApplication)
        .join(Prompt, Prompt.id == PromptApplication.prompt_id)
        .where(Prompt.author_id == user.id)
        .where(Prompt.deleted_at.is_(None))
        .where(PromptApplication.status == ApplicationStatus.pending)
    )
    return await _page(db, q, params)


async def list_for_prompt(db: AsyncSession, prompt_id: int, user, params: PageParams,
                          status: Optional[ApplicationStatus] = None):
    prompt = await _load_prompt(db, prompt_id)
    ensure_author_or_admin(prompt, user, "view applications")
    q = select(PromptApplication).where(PromptApplication.prompt_id == prompt_id)
    if status is not None:
        q = q.where(PromptApplication.status == status)
    return await _page(db, q, params)
