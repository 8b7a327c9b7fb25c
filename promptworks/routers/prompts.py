from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..models import PromptStatus
from ..schemas import (
    BatchUpdatePayload, BuildPromptPayload, BuildSimplePayload, ContentCreate, ContentRead, ContentUpdate,
    MyPromptRead, PromptCreate, PromptRead, PromptStatsRead, PromptSummary, PromptUpdate, ReasonPayload,
)
from ..services import prompts as prompt_service
from ..services import stats
from ..utils import (
    PageParams, get_current_user, page_params, paginated, require_admin_user, require_authenticated_user,
)

router = APIRouter(prefix="/api/v1/prompts", tags=["prompts"])


def _summaries(rows):
    return [PromptSummary.model_validate(p) for p in rows]


# ---------------------------
# Collections (static paths before /{prompt_id})
# ---------------------------
@router.get("")
async def list_prompts(
    category_id: Optional[int] = Query(None, alias="categoryId"),
    author_id: Optional[int] = Query(None, alias="authorId"),
    keyword: Optional[str] = None,
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    params: PageParams = Depends(page_params),
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    rows, total = await prompt_service.list_prompts(
        db, user, params,
        category_id=category_id, author_id=author_id, keyword=keyword,
        sort_by=sort_by, sort_order=sort_order,
    )
    return paginated(_summaries(rows), total, params)


@router.post("", status_code=201)
async def create_prompt(
    payload: PromptCreate,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    prompt = await prompt_service.create_prompt(db, user, payload)
    return PromptRead.model_validate(prompt)


@router.get("/my")
async def my_prompts(
    status: Optional[PromptStatus] = None,
    params: PageParams = Depends(page_params),
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    rows, total = await prompt_service.list_my_prompts(db, user, params, status=status)
    items = [
        MyPromptRead.model_validate(p).model_copy(update={"pending_application_count": n})
        for p, n in rows
    ]
    return paginated(items, total, params)


@router.get("/favorites")
async def my_favorites(
    params: PageParams = Depends(page_params),
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    rows, total = await stats.list_favorites(db, user.id, params)
    return paginated(_summaries(rows), total, params)


@router.get("/admin/all")
async def admin_list_prompts(
    status: Optional[PromptStatus] = None,
    keyword: Optional[str] = None,
    is_banned: Optional[bool] = Query(None, alias="isBanned"),
    needs_review: Optional[bool] = Query(None, alias="needsReview"),
    params: PageParams = Depends(page_params),
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin_user),
):
    rows, total = await prompt_service.list_all_for_admin(
        db, params, status=status, keyword=keyword, is_banned=is_banned, needs_review=needs_review,
    )
    return paginated(_summaries(rows), total, params)


@router.post("/batch-update")
async def batch_update(
    payload: BatchUpdatePayload,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    updated = await prompt_service.batch_update(db, user, payload)
    return {"updated": updated, "message": f"Updated {updated} prompt(s)"}


@router.post("/build")
async def build_prompt(
    payload: BuildPromptPayload,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    return await prompt_service.build_prompt(
        db, user, payload.prompt_id, payload.parameters, payload.history, payload.user_input,
    )


@router.post("/build/simple")
async def build_prompt_simple(
    payload: BuildSimplePayload,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    return await prompt_service.build_prompt(db, user, payload.prompt_id, payload.parameters)


# ---------------------------
# Single prompt
# ---------------------------
@router.get("/{prompt_id}")
async def get_prompt(
    prompt_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(get_current_user),
):
    return await prompt_service.get_prompt(db, prompt_id, user)


@router.get("/{prompt_id}/config")
async def get_prompt_config(
    prompt_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(get_current_user),
):
    return await prompt_service.get_prompt_config(db, prompt_id, user)


@router.patch("/{prompt_id}")
async def update_prompt(
    prompt_id: int,
    payload: PromptUpdate,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    prompt = await prompt_service.update_prompt(db, prompt_id, user, payload)
    return PromptRead.model_validate(prompt)


@router.delete("/{prompt_id}")
async def delete_prompt(
    prompt_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    await prompt_service.delete_prompt(db, prompt_id, user)
    return {"id": prompt_id, "message": "Prompt deleted"}


# ---------------------------
# Content blocks
# ---------------------------
@router.post("/{prompt_id}/contents", status_code=201)
async def add_content(
    prompt_id: int,
    payload: ContentCreate,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    block = await prompt_service.add_content(db, prompt_id, user, payload)
    return ContentRead.model_validate(block)


@router.patch("/{prompt_id}/contents/{content_id}")
async def update_content(
    prompt_id: int,
    content_id: int,
    payload: ContentUpdate,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    block = await prompt_service.update_content(db, prompt_id, content_id, user, payload)
    return ContentRead.model_validate(block)


@router.delete("/{prompt_id}/contents/{content_id}")
async def delete_content(
    prompt_id: int,
    content_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    await prompt_service.delete_content(db, prompt_id, content_id, user)
    return {"id": content_id, "message": "Content block deleted"}


# ---------------------------
# Usage / likes / favorites
# ---------------------------
@router.post("/{prompt_id}/use")
async def use_prompt(
    prompt_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    await prompt_service.load_usable_prompt(db, prompt_id, user.id)
    prompt = await stats.record_use(db, prompt_id)
    return {"id": prompt.id, "use_count": prompt.use_count, "hot_value": prompt.hot_value}


@router.post("/{prompt_id}/like")
async def like_prompt(
    prompt_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    prompt = await stats.like(db, prompt_id, user.id)
    return {"id": prompt.id, "like_count": prompt.like_count, "message": "Liked"}


@router.delete("/{prompt_id}/like")
async def unlike_prompt(
    prompt_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    prompt = await stats.unlike(db, prompt_id, user.id)
    return {"id": prompt.id, "like_count": prompt.like_count, "message": "Like removed"}


@router.post("/{prompt_id}/favorite")
async def favorite_prompt(
    prompt_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    await stats.favorite(db, prompt_id, user.id)
    return {"id": prompt_id, "message": "Added to favorites"}


@router.delete("/{prompt_id}/favorite")
async def unfavorite_prompt(
    prompt_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    await stats.unfavorite(db, prompt_id, user.id)
    return {"id": prompt_id, "message": "Removed from favorites"}


@router.get("/{prompt_id}/stats", response_model=PromptStatsRead)
async def prompt_stats(
    prompt_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(get_current_user),
):
    return await stats.get_stats(db, prompt_id, getattr(user, "id", None))


# ---------------------------
# Moderation
# ---------------------------
@router.post("/{prompt_id}/ban")
async def ban_prompt(
    prompt_id: int,
    payload: ReasonPayload,
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin_user),
):
    prompt = await prompt_service.ban_prompt(db, prompt_id, payload.reason)
    return PromptSummary.model_validate(prompt)


@router.post("/{prompt_id}/unban")
async def unban_prompt(
    prompt_id: int,
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin_user),
):
    prompt = await prompt_service.unban_prompt(db, prompt_id)
    return PromptSummary.model_validate(prompt)


@router.post("/{prompt_id}/submit-review")
async def submit_review(
    prompt_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    prompt = await prompt_service.submit_for_review(db, prompt_id, user)
    return PromptSummary.model_validate(prompt)


@router.post("/{prompt_id}/approve")
async def approve_review(
    prompt_id: int,
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin_user),
):
    prompt = await prompt_service.approve_review(db, prompt_id)
    return PromptSummary.model_validate(prompt)


@router.post("/{prompt_id}/reject-review")
async def reject_review(
    prompt_id: int,
    payload: ReasonPayload,
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin_user),
):
    prompt = await prompt_service.reject_review(db, prompt_id, payload.reason)
    return PromptSummary.model_validate(prompt)
