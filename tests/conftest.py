import os
import tempfile

_tmp_dir = tempfile.mkdtemp(prefix="promptworks-tests-")
DB_PATH = os.path.join(_tmp_dir, "test.db")

# must be in place before promptworks is imported
os.environ["SECRET"] = "test-secret-value-for-jwt"
os.environ["DATABASE_URL"] = f"sqlite:///{DB_PATH}"
os.environ["APP_ENV"] = "test"
os.environ["AUDIT_API_CALLS"] = "false"
os.environ.pop("ADMIN_EMAIL", None)

import pytest
from fastapi import Depends, HTTPException, Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

from promptworks import models
from promptworks.database import Base, get_db
from promptworks.main import app
from promptworks.services.audit_log import AuditLog
from promptworks.utils import get_current_user, require_admin_user, require_authenticated_user

ALICE, BOB, ADMIN = 1, 2, 3

sync_engine = create_engine(f"sqlite:///{DB_PATH}")


def as_user(user_id):
    return {"X-Test-User": str(user_id)}


# ---------------------------
# Auth overrides: the caller is picked by header
# ---------------------------
async def _header_user(request: Request, db: AsyncSession = Depends(get_db)):
    raw = request.headers.get("x-test-user")
    if not raw:
        return None
    user = await db.get(models.User, int(raw))
    request.state.user_id = user.id if user else None
    return user


async def _required_user(user=Depends(_header_user)):
    if user is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


async def _required_admin(user=Depends(_required_user)):
    if not user.is_superuser:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(sync_engine)
    Base.metadata.create_all(sync_engine)
    with Session(sync_engine) as s:
        s.add_all([
            models.User(id=ALICE, email="alice@example.com", username="alice", hashed_password="x"),
            models.User(id=BOB, email="bob@example.com", username="bob", hashed_password="x"),
            models.User(id=ADMIN, email="admin@example.com", username="admin", hashed_password="x",
                        is_superuser=True),
        ])
        s.commit()
    yield


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(app.state, "audit", AuditLog(enabled=False))
    app.dependency_overrides[get_current_user] = _header_user
    app.dependency_overrides[require_authenticated_user] = _required_user
    app.dependency_overrides[require_admin_user] = _required_admin
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.clear()


def data_of(response):
    body = response.json()
    assert body["success"] is True, body
    return body["data"]


def make_prompt(client, user_id=ALICE, **overrides):
    payload = {
        "name": "Story seed",
        "description": "Seeds a story",
        "status": "published",
        "contents": [
            {"name": "system", "role": "system", "content": "You are a novelist."},
            {"name": "task", "role": "user", "content": "Write about {{genre}} for ${audience}."},
        ],
    }
    payload.update(overrides)
    r = client.post("/api/v1/prompts", json=payload, headers=as_user(user_id))
    assert r.status_code == 201, r.text
    return data_of(r)
