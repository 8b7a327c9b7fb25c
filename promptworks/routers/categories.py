from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..schemas import CategoryCreate, CategoryRead, CategoryUpdate
from ..services import categories
from ..utils import require_admin_user

router = APIRouter(prefix="/api/v1/prompt-categories", tags=["prompt-categories"])


@router.get("")
async def list_categories(db: AsyncSession = Depends(get_db)):
    return [CategoryRead.model_validate(c) for c in await categories.list_categories(db)]


@router.get("/{category_id}")
async def get_category(category_id: int, db: AsyncSession = Depends(get_db)):
    return CategoryRead.model_validate(await categories.get_category(db, category_id))


@router.post("", status_code=201)
async def create_category(
    payload: CategoryCreate,
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin_user),
):
    return CategoryRead.model_validate(await categories.create_category(db, payload))


@router.patch("/{category_id}")
async def update_category(
    category_id: int,
    payload: CategoryUpdate,
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin_user),
):
    return CategoryRead.model_validate(await categories.update_category(db, category_id, payload))


@router.delete("/{category_id}")
async def delete_category(
    category_id: int,
    db: AsyncSession = Depends(get_db),
    admin=Depends(require_admin_user),
):
    await categories.delete_category(db, category_id)
    return {"id": category_id, "message": "Category deleted"}
