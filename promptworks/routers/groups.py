from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..schemas import GroupCreate, GroupParameterRead, GroupRead, GroupUpdate
from ..services import prompt_groups
from ..utils import PageParams, get_current_user, page_params, paginated, require_authenticated_user

router = APIRouter(prefix="/api/v1/prompt-groups", tags=["prompt-groups"])


def _reads(rows):
    return [GroupRead.model_validate(g) for g in rows]


@router.get("")
async def list_groups(
    category_id: Optional[int] = Query(None, alias="categoryId"),
    keyword: Optional[str] = None,
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder"),
    params: PageParams = Depends(page_params),
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    rows, total = await prompt_groups.list_groups(
        db, params, category_id=category_id, keyword=keyword, sort_by=sort_by, sort_order=sort_order,
    )
    return paginated(_reads(rows), total, params)


@router.get("/my")
async def my_groups(
    params: PageParams = Depends(page_params),
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    rows, total = await prompt_groups.list_my(db, user, params)
    return paginated(_reads(rows), total, params)


@router.post("", status_code=201)
async def create_group(
    payload: GroupCreate,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    return GroupRead.model_validate(await prompt_groups.create_group(db, user, payload))


@router.get("/{group_id}")
async def get_group(
    group_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(get_current_user),
):
    return GroupRead.model_validate(await prompt_groups.get_group(db, group_id, user))


@router.get("/{group_id}/parameters")
async def group_parameters(
    group_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(get_current_user),
):
    params = await prompt_groups.get_group_parameters(db, group_id, user)
    return [GroupParameterRead(**p) for p in params]


@router.patch("/{group_id}")
async def update_group(
    group_id: int,
    payload: GroupUpdate,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    return GroupRead.model_validate(await prompt_groups.update_group(db, group_id, user, payload))


@router.delete("/{group_id}")
async def delete_group(
    group_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    await prompt_groups.delete_group(db, group_id, user)
    return {"id": group_id, "message": "Prompt group deleted"}


@router.post("/{group_id}/like")
async def like_group(
    group_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    group = await prompt_groups.like_group(db, group_id, user.id)
    return {"id": group.id, "like_count": group.like_count, "message": "Liked"}


@router.delete("/{group_id}/like")
async def unlike_group(
    group_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    group = await prompt_groups.unlike_group(db, group_id, user.id)
    return {"id": group.id, "like_count": group.like_count, "message": "Like removed"}


@router.post("/{group_id}/use")
async def use_group(
    group_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    group = await prompt_groups.use_group(db, group_id)
    return {"id": group.id, "use_count": group.use_count, "hot_value": group.hot_value}
