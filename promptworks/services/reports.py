# services/reports.py
import logging
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import DomainError, NotFoundError
from ..models import PromptReport, PromptStatus, ReportStatus, utcnow
from ..schemas import ReportCreate
from ..utils import PageParams
from .prompts import get_prompt_or_404

logger = logging.getLogger(__name__)


async def _page(db: AsyncSession, q, params: PageParams):
    total = (await db.execute(select(func.count()).select_from(q.subquery()))).scalar_one()
    rows = (await db.execute(
        q.order_by(PromptReport.created_at.desc(), PromptReport.id.desc())
        .offset(params.offset).limit(params.page_size)
    )).scalars().all()
    return rows, total


async def create_report(db: AsyncSession, prompt_id: int, user, payload: ReportCreate) -> PromptReport:
    prompt = await get_prompt_or_404(db, prompt_id, with_contents=False)
    if prompt.author_id == user.id:
        raise DomainError("You cannot report your own prompt")

    pending = (await db.execute(
        select(PromptReport.id)
        .where(PromptReport.prompt_id == prompt_id)
        .where(PromptReport.reporter_id == user.id)
        .where(PromptReport.status == ReportStatus.pending)
        .limit(1)
    )).scalar_one_or_none()
    if pending:
        raise DomainError("You already have a pending report for this prompt")

    report = PromptReport(
        prompt_id=prompt_id,
        reporter_id=user.id,
        reason=payload.reason,
        description=payload.description,
        status=ReportStatus.pending,
    )
    db.add(report)
    await db.commit()
    logger.info("User %s reported prompt %s (%s)", user.id, prompt_id, payload.reason.value)
    return report


async def list_reports(db: AsyncSession, params: PageParams, *, status: Optional[ReportStatus] = None,
                       prompt_id: Optional[int] = None):
    q = select(PromptReport)
    if status is not None:
        q = q.where(PromptReport.status == status)
    if prompt_id is not None:
        q = q.where(PromptReport.prompt_id == prompt_id)
    return await _page(db, q, params)


async def list_my_reports(db: AsyncSession, user, params: PageParams):
    return await _page(db, select(PromptReport).where(PromptReport.reporter_id == user.id), params)


async def review_report(db: AsyncSession, report_id: int, reviewer, status: str,
                        note: Optional[str] = None) -> PromptReport:
    report = await db.get(PromptReport, report_id)
    if not report:
        raise NotFoundError("Report not found")
    if report.status != ReportStatus.pending:
        raise DomainError("This report has already been reviewed")

    report.status = ReportStatus(status)
    report.reviewer_id = reviewer.id
    report.review_note = note
    report.reviewed_at = utcnow()

    if report.status == ReportStatus.approved:
        prompt = await get_prompt_or_404(db, report.prompt_id)
        # the author edits from this snapshot and resubmits
        prompt.review_snapshot = {
            "name": prompt.name,
            "description": prompt.description,
            "contents": [
                {"name": c.name, "role": c.role.value, "content": c.content, "order": c.order}
                for c in prompt.contents
            ],
            "snapshot_at": utcnow().isoformat(),
        }
        prompt.status = PromptStatus.draft
        prompt.is_public = False
        prompt.needs_review = True
        prompt.review_submitted_at = None
        logger.info("Prompt %s taken down after report %s", prompt.id, report_id)

    await db.commit()
    return report


async def delete_report(db: AsyncSession, report_id: int) -> None:
    report = await db.get(PromptReport, report_id)
    if not report:
        raise NotFoundError("Report not found")
    await db.delete(report)
    await db.commit()


async def report_stats(db: AsyncSession, prompt_id: int) -> dict:
    rows = (await db.execute(
        select(PromptReport.status, func.count(PromptReport.id))
        .where(PromptReport.prompt_id == prompt_id)
        .group_by(PromptReport.status)
    )).all()
    counts = {status: n for status, n in rows}
    return {
        "total": sum(counts.values()),
        "pending": counts.get(ReportStatus.pending, 0),
        "approved": counts.get(ReportStatus.approved, 0),
        "rejected": counts.get(ReportStatus.rejected, 0),
    }
