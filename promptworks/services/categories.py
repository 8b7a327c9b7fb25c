# services/categories.py
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ConflictError, NotFoundError
from ..models import PromptCategory
from ..schemas import CategoryCreate, CategoryUpdate


async def list_categories(db: AsyncSession):
    q = select(PromptCategory).order_by(PromptCategory.order, PromptCategory.id)
    return (await db.execute(q)).scalars().all()


async def get_category(db: AsyncSession, category_id: int) -> PromptCategory:
    category = await db.get(PromptCategory, category_id)
    if not category:
        raise NotFoundError("Category not found")
    return category


async def _name_taken(db: AsyncSession, name: str, exclude_id=None) -> bool:
    q = select(PromptCategory.id).where(PromptCategory.name == name)
    if exclude_id is not None:
        q = q.where(PromptCategory.id != exclude_id)
    return (await db.execute(q.limit(1))).scalar_one_or_none() is not None


async def _commit_unique(db: AsyncSession) -> None:
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise ConflictError("A category with this name already exists") from e


async def create_category(db: AsyncSession, payload: CategoryCreate) -> PromptCategory:
    name = payload.name.strip()
    if await _name_taken(db, name):
        raise ConflictError("A category with this name already exists")
    category = PromptCategory(name=name, description=payload.description, icon=payload.icon, order=payload.order)
    db.add(category)
    await _commit_unique(db)
    return category


async def update_category(db: AsyncSession, category_id: int, payload: CategoryUpdate) -> PromptCategory:
    category = await get_category(db, category_id)
    fields = payload.model_dump(exclude_unset=True)
    if fields.get("name"):
        fields["name"] = fields["name"].strip()
        if await _name_taken(db, fields["name"], exclude_id=category_id):
            raise ConflictError("A category with this name already exists")
    for key, value in fields.items():
        setattr(category, key, value)
    await _commit_unique(db)
    return category


async def delete_category(db: AsyncSession, category_id: int) -> None:
    category = await get_category(db, category_id)
    await db.delete(category)
    await db.commit()
