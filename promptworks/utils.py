from fastapi import Depends, HTTPException, Query, Request, status
from fastapi_users import models
import logging
import math
from dataclasses import dataclass
from typing import Any, Sequence

from .users import fastapi_users, current_active_user

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def _remember(request: Request, user) -> None:
    # plain values for the request logging middleware; the ORM row may be expired by then
    request.state.user_id = getattr(user, "id", None)
    request.state.username = getattr(user, "username", None)


# Dependency to get the current user, None when anonymous
async def get_current_user(
    request: Request,
    user: models.UP = Depends(fastapi_users.current_user(optional=True)),
):
    _remember(request, user)
    return user


# Dependency to enforce authentication (non-admin user is OK)
async def require_authenticated_user(
    request: Request,
    user: models.UP = Depends(current_active_user),
):
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    _remember(request, user)
    return user


async def require_admin_user(
    request: Request,
    user: models.UP = Depends(current_active_user),
):
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    if not getattr(user, "is_superuser", False):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    _remember(request, user)
    return user


def is_admin(user) -> bool:
    return bool(user is not None and getattr(user, "is_superuser", False))


@dataclass
class PageParams:
    page: int = 1
    page_size: int = 20

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


def page_params(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=MAX_PAGE_SIZE, alias="pageSize"),
) -> PageParams:
    return PageParams(page=page, page_size=page_size)


def paginated(items: Sequence[Any], total: int, params: PageParams) -> dict:
    """Standard list payload: {data, pagination:{page,pageSize,total,totalPages}}."""
    return {
        "data": list(items),
        "pagination": {
            "page": params.page,
            "pageSize": params.page_size,
            "total": total,
            "totalPages": math.ceil(total / params.page_size) if params.page_size else 0,
        },
    }


def client_ip(request: Request) -> str:
    fwd = request.headers.get("x-forwarded-for")
    if fwd:
        return fwd.split(",")[0].strip()
    return request.client.host if request.client else ""
