import os
import logging
from fastapi import Depends, Request
from fastapi_users import FastAPIUsers
from fastapi_users.manager import BaseUserManager, IntegerIDMixin
from fastapi_users.authentication import CookieTransport, AuthenticationBackend, JWTStrategy
from fastapi_users.db import SQLAlchemyUserDatabase
from .models import User, LogType
from .database import get_db


logger = logging.getLogger(__name__)


def _bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


SECRET = os.getenv("SECRET", "").strip()
if not SECRET or SECRET == "CHANGE_ME_SECRET":
    raise RuntimeError(
        "SECRET environment variable must be set to a strong value; the default placeholder is not allowed."
    )

# -------------------------
# Database Dependency
# -------------------------
async def get_user_db(session=Depends(get_db)):
    yield SQLAlchemyUserDatabase(session, User)

# -------------------------
# User Manager
# -------------------------
class UserManager(IntegerIDMixin, BaseUserManager[User, int]):
    reset_password_token_secret = SECRET
    verification_token_secret = SECRET

    def _audit(self, request):
        if request is None:
            return None
        return getattr(request.app.state, "audit", None)

    async def on_after_register(self, user: User, request: Request = None):
        logger.info("User %s registered", user.id)
        audit = self._audit(request)
        if audit:
            audit.log_auth("register", user_id=user.id, username=user.username, request=request)

    async def on_after_login(self, user: User, request: Request = None, response=None):
        audit = self._audit(request)
        if audit:
            audit.log_auth("login", user_id=user.id, username=user.username, request=request)

    async def on_after_forgot_password(self, user: User, token: str, request: Request = None):
        logger.info("Password reset requested for user %s", user.id)
        audit = self._audit(request)
        if audit:
            audit.log_user_action(
                "forgot password", user_id=user.id, username=user.username, log_type=LogType.auth
            )

async def get_user_manager(user_db=Depends(get_user_db)):
    yield UserManager(user_db)

# -------------------------
# Authentication Backend
# -------------------------
cookie_transport = CookieTransport(
    cookie_name="session",
    cookie_max_age=3600 * 24,
    cookie_secure=_bool_env("COOKIE_SECURE", default=False),
    cookie_httponly=True,
)

def get_jwt_strategy() -> JWTStrategy:
    return JWTStrategy(secret=SECRET, lifetime_seconds=3600 * 24)

auth_backend = AuthenticationBackend(
    name="jwt",
    transport=cookie_transport,
    get_strategy=get_jwt_strategy,
)

# -------------------------
# FastAPI Users instance
# -------------------------
fastapi_users = FastAPIUsers[User, int](
    get_user_manager,
    [auth_backend],
)

# Dependency to get currently active user
current_active_user = fastapi_users.current_user(active=True)
