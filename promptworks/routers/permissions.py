from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..schemas import PermissionGrant, PermissionRead
from ..services import permissions
from ..utils import require_authenticated_user

router = APIRouter(prefix="/api/v1/prompts", tags=["prompts", "permissions"])


@router.get("/{prompt_id}/permissions")
async def list_permissions(
    prompt_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    rows = await permissions.list_permissions(db, prompt_id, user)
    return [PermissionRead.model_validate(r) for r in rows]


@router.post("/{prompt_id}/permissions", status_code=201)
async def grant_permission(
    prompt_id: int,
    payload: PermissionGrant,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    row = await permissions.grant_permission(db, prompt_id, payload.user_id, payload.permission, user)
    return PermissionRead.model_validate(row)


@router.delete("/{prompt_id}/permissions/{user_id}")
async def revoke_permission(
    prompt_id: int,
    user_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    await permissions.revoke_permission(db, prompt_id, user_id, user)
    return {"prompt_id": prompt_id, "user_id": user_id, "message": "Permission revoked"}
