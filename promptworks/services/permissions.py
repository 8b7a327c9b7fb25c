# services/permissions.py
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ConflictError, ForbiddenError, NotFoundError
from ..models import (
    ApplicationStatus, PermissionType, Prompt, PromptApplication, PromptPermission, User,
)

logger = logging.getLogger(__name__)

LEVELS = {
    PermissionType.view: 1,
    PermissionType.use: 2,
    PermissionType.edit: 3,
}


def _is_admin(user) -> bool:
    return bool(user is not None and getattr(user, "is_superuser", False))


async def _load_prompt(db: AsyncSession, prompt_id: int) -> Prompt:
    prompt = (
        await db.execute(select(Prompt).where(Prompt.id == prompt_id, Prompt.deleted_at.is_(None)))
    ).scalars().first()
    if not prompt:
        raise NotFoundError("Prompt not found")
    return prompt


def ensure_author_or_admin(prompt: Prompt, user, action: str = "manage this prompt") -> None:
    if prompt.author_id == getattr(user, "id", None) or _is_admin(user):
        return
    raise ForbiddenError(f"Only the author can {action}")


async def get_permission_row(db: AsyncSession, prompt_id: int, user_id: int) -> Optional[PromptPermission]:
    q = select(PromptPermission).where(
        PromptPermission.prompt_id == prompt_id,
        PromptPermission.user_id == user_id,
    )
    return (await db.execute(q)).scalars().first()


async def has_approved_application(db: AsyncSession, prompt_id: int, user_id: int) -> bool:
    q = (
        select(PromptApplication.id)
        .where(PromptApplication.prompt_id == prompt_id)
        .where(PromptApplication.user_id == user_id)
        .where(PromptApplication.status == ApplicationStatus.approved)
        .limit(1)
    )
    return bool((await db.execute(q)).scalar_one_or_none())


async def check_permission(db: AsyncSession, prompt: Prompt, user_id: Optional[int],
                           action: PermissionType) -> bool:
    """Can `user_id` perform `action` on `prompt`.

    Author first, then an explicit grant of at least that level, then the
    prompt's visibility flags. A gated prompt needs an approved application
    for view/use; edit always needs an explicit grant.
    """
    if user_id is not None and prompt.author_id == user_id:
        return True

    if user_id is not None:
        row = await get_permission_row(db, prompt.id, user_id)
        if row and LEVELS[row.permission] >= LEVELS[action]:
            return True

    if action == PermissionType.edit:
        return False

    if prompt.require_application:
        if user_id is None:
            return False
        return await has_approved_application(db, prompt.id, user_id)

    return bool(prompt.is_public)


async def can_see_content(db: AsyncSession, prompt: Prompt, user) -> bool:
    """Raw content text is shown to the author, admins and explicit grantees."""
    if prompt.is_content_public:
        return True
    user_id = getattr(user, "id", None)
    if user_id is None:
        return False
    if prompt.author_id == user_id or _is_admin(user):
        return True
    return await get_permission_row(db, prompt.id, user_id) is not None


async def grant_permission(db: AsyncSession, prompt_id: int, target_user_id: int,
                           permission: PermissionType, granted_by) -> PromptPermission:
    prompt = await _load_prompt(db, prompt_id)
    ensure_author_or_admin(prompt, granted_by, "grant permissions")

    target = await db.get(User, target_user_id)
    if not target:
        raise NotFoundError("User not found")

    if await get_permission_row(db, prompt_id, target_user_id):
        raise ConflictError("User already has a permission on this prompt")

    row = PromptPermission(
        prompt_id=prompt_id,
        user_id=target_user_id,
        permission=permission,
        granted_by=granted_by.id,
    )
    db.add(row)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        raise ConflictError("User already has a permission on this prompt") from e
    await db.refresh(row)
    logger.info("Prompt %s: granted %s to user %s", prompt_id, permission.value, target_user_id)
    return row


async def list_permissions(db: AsyncSession, prompt_id: int, user) -> list:
    prompt = await _load_prompt(db, prompt_id)
    ensure_author_or_admin(prompt, user, "view permissions")
    q = (
        select(PromptPermission)
        .where(PromptPermission.prompt_id == prompt_id)
        .order_by(PromptPermission.created_at.desc(), PromptPermission.id.desc())
    )
    return list((await db.execute(q)).scalars().all())


async def revoke_permission(db: AsyncSession, prompt_id: int, target_user_id: int, user) -> None:
    prompt = await _load_prompt(db, prompt_id)
    ensure_author_or_admin(prompt, user, "revoke permissions")
    row = await get_permission_row(db, prompt_id, target_user_id)
    if not row:
        raise NotFoundError("Permission not found")
    await db.delete(row)
    await db.commit()
    logger.info("Prompt %s: revoked permission of user %s", prompt_id, target_user_id)
