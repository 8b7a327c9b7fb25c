import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from passlib.hash import bcrypt
from sqlalchemy import select

from .background import drain, pending
from .database import async_session_maker, init_db
from .envelope import envelope_middleware, register_exception_handlers, request_logging_middleware
from .routers import (
    announcements, applications, book_creation, categories, groups, logs, permissions, prompts, reports,
)
from .schemas import UserCreate, UserRead, UserUpdate
from .services.audit_log import AuditLog
from .settings.config import settings
from .users import auth_backend, fastapi_users

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Promptworks",
    docs_url="/docs" if settings.docs_enabled else None,
    redoc_url="/redoc" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.docs_enabled else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# last registered runs outermost: logging sees the enveloped response
app.middleware("http")(envelope_middleware)
app.middleware("http")(request_logging_middleware)

register_exception_handlers(app)
app.state.audit = AuditLog()

# ----------------------
# Route Includes
# ----------------------
app.include_router(reports.router)
app.include_router(permissions.router)
app.include_router(prompts.router)
app.include_router(applications.router)
app.include_router(categories.router)
app.include_router(groups.router)
app.include_router(book_creation.router)
app.include_router(logs.router)
app.include_router(announcements.router)

# Authentication Routes
app.include_router(
    fastapi_users.get_auth_router(auth_backend),
    prefix="/auth/jwt",
    tags=["auth"],
)
app.include_router(
    fastapi_users.get_register_router(UserRead, UserCreate),
    prefix="/auth",
    tags=["auth"],
)
app.include_router(
    fastapi_users.get_users_router(UserRead, UserUpdate),
    prefix="/users",
    tags=["users"],
)


@app.get("/health")
async def health():
    return {"status": "ok", "env": settings.APP_ENV, "background_tasks": pending()}


# ----------------------
# Auto-create admin user
# ----------------------
async def create_admin_user():
    from .models import User

    if not settings.ADMIN_EMAIL or not settings.ADMIN_PASSWORD:
        logger.warning("ADMIN_EMAIL or ADMIN_PASSWORD not set, skipping admin creation.")
        return

    async with async_session_maker() as session:
        result = await session.execute(select(User).where(User.email == settings.ADMIN_EMAIL))
        existing_admin = result.scalars().first()
        if not existing_admin:
            user = User(
                email=settings.ADMIN_EMAIL,
                hashed_password=bcrypt.hash(settings.ADMIN_PASSWORD),
                username=settings.ADMIN_USERNAME,
                is_superuser=True,
                is_active=True,
                is_verified=True,
            )
            session.add(user)
            await session.commit()
            logger.info("Admin user created: %s", settings.ADMIN_EMAIL)
        else:
            logger.info("Admin user already exists: %s", settings.ADMIN_EMAIL)


@app.on_event("startup")
async def on_startup():
    from . import models  # noqa: F401  registers the tables on Base.metadata
    await init_db()
    await create_admin_user()


@app.on_event("shutdown")
async def on_shutdown():
    await drain()
