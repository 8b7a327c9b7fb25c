"""Append-only audit log.

Writes are fire-and-forget: `AuditLog.record` schedules the insert on a
supervised background task and `AuditLog.create` never raises, so a broken log
table can not fail the request that produced the record.
"""
from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..background import spawn
from ..database import async_session_maker
from ..models import Log, LogLevel, LogType, utcnow
from ..utils import PageParams

logger = logging.getLogger(__name__)

MAX_TEXT = 10_000


def _serialize(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        text = value
    else:
        try:
            text = json.dumps(value, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            text = repr(value)
    return text[:MAX_TEXT]


class AuditLog:
    def __init__(self, session_factory=async_session_maker, enabled: bool = True):
        self.session_factory = session_factory
        self.enabled = enabled

    async def create(self, *, action: str, type: LogType = LogType.system, level: LogLevel = LogLevel.info,
                     user_id: Optional[int] = None, username: Optional[str] = None,
                     method: Optional[str] = None, path: Optional[str] = None,
                     params: Any = None, response: Any = None, ip: Optional[str] = None,
                     user_agent: Optional[str] = None, duration: Optional[int] = None,
                     status_code: Optional[int] = None, error_message: Optional[str] = None) -> Optional[Log]:
        row = Log(
            action=action[:255],
            type=type,
            level=level,
            user_id=user_id,
            username=username,
            method=method,
            path=(path or None) and path[:500],
            params=_serialize(params),
            response=_serialize(response),
            ip=ip,
            user_agent=(user_agent or None) and user_agent[:500],
            duration=duration,
            status_code=status_code,
            error_message=_serialize(error_message),
        )
        try:
            async with self.session_factory() as session:
                session.add(row)
                await session.commit()
            return row
        except Exception:  # noqa: BLE001
            logger.exception("Failed to write audit log %r", action)
            return None

    def record(self, **fields):
        """Schedule `create` in the background; returns the task or None."""
        if not self.enabled:
            return None
        return spawn(self.create(**fields), name=f"audit:{fields.get('action', '?')}")

    # ---- canned helpers ----
    def log_auth(self, action: str, *, user_id: Optional[int] = None, username: Optional[str] = None,
                 request=None, error_message: Optional[str] = None):
        ip = user_agent = None
        if request is not None:
            ip = request.client.host if request.client else None
            user_agent = request.headers.get("user-agent")
        return self.record(
            action=action,
            type=LogType.auth,
            level=LogLevel.error if error_message else LogLevel.info,
            user_id=user_id,
            username=username,
            ip=ip,
            user_agent=user_agent,
            error_message=error_message,
        )

    def log_user_action(self, action: str, *, user_id: Optional[int], username: Optional[str] = None,
                        log_type: LogType = LogType.user, params: Any = None):
        return self.record(
            action=action, type=log_type, level=LogLevel.info,
            user_id=user_id, username=username, params=params,
        )

    def log_api_call(self, *, method: str, path: str, status_code: int, duration: int,
                     user_id: Optional[int] = None, username: Optional[str] = None,
                     ip: Optional[str] = None, user_agent: Optional[str] = None,
                     params: Any = None, error_message: Optional[str] = None):
        return self.record(
            action=f"{method} {path}",
            type=LogType.api,
            level=LogLevel.error if status_code >= 400 else LogLevel.info,
            method=method,
            path=path,
            status_code=status_code,
            duration=duration,
            user_id=user_id,
            username=username,
            ip=ip,
            user_agent=user_agent,
            params=params,
            error_message=error_message,
        )

    def log_error(self, action: str, error_message: str, *, user_id: Optional[int] = None,
                  username: Optional[str] = None, method: Optional[str] = None, path: Optional[str] = None):
        return self.record(
            action=action, type=LogType.system, level=LogLevel.error,
            error_message=error_message, user_id=user_id, username=username,
            method=method, path=path,
        )


# ---------------------------
# Read side (admin)
# ---------------------------
async def list_logs(db: AsyncSession, params: PageParams, *, user_id: Optional[int] = None,
                    log_type: Optional[LogType] = None, level: Optional[LogLevel] = None,
                    start=None, end=None):
    q = select(Log)
    if user_id is not None:
        q = q.where(Log.user_id == user_id)
    if log_type is not None:
        q = q.where(Log.type == log_type)
    if level is not None:
        q = q.where(Log.level == level)
    if start is not None:
        q = q.where(Log.created_at >= start)
    if end is not None:
        q = q.where(Log.created_at <= end)

    total = (await db.execute(select(func.count()).select_from(q.subquery()))).scalar_one()
    rows = (
        await db.execute(
            q.order_by(Log.created_at.desc(), Log.id.desc()).offset(params.offset).limit(params.page_size)
        )
    ).scalars().all()
    return rows, total


async def statistics(db: AsyncSession, days: int = 7) -> dict:
    now = utcnow()
    since = now - timedelta(days=days)
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)

    async def _count(*conds) -> int:
        return (await db.execute(select(func.count(Log.id)).where(*conds))).scalar_one()

    return {
        "total_logs": await _count(Log.created_at >= since),
        "auth_logs": await _count(Log.created_at >= since, Log.type == LogType.auth),
        "error_logs": await _count(Log.created_at >= since, Log.level == LogLevel.error),
        "today_logs": await _count(Log.created_at >= today),
        "days": days,
    }


async def cleanup(db: AsyncSession, days: int) -> int:
    cutoff = utcnow() - timedelta(days=days)
    result = await db.execute(delete(Log).where(Log.created_at < cutoff))
    await db.commit()
    logger.info("Deleted %s audit log rows older than %s days", result.rowcount, days)
    return result.rowcount or 0
