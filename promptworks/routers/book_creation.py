from typing import Dict, Literal, Optional

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..envelope import skip_envelope
from ..models import BookStage, TaskStatus
from ..schemas import (
    ExecuteStagePayload, OptimizeStagePayload, OutlineNodeRead, OutlineNodeUpdate, TaskCreate, TaskDetail,
    TaskRead, TitleSynopsisPayload,
)
from ..services import book_creation
from ..utils import PageParams, page_params, paginated, require_authenticated_user

router = APIRouter(prefix="/api/v1/book-creation", tags=["book-creation"])


@router.post("/tasks", status_code=201)
async def create_task(
    payload: TaskCreate,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    return TaskRead.model_validate(await book_creation.create_task(db, user, payload))


@router.get("/tasks")
async def list_tasks(
    status: Optional[TaskStatus] = None,
    params: PageParams = Depends(page_params),
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    rows, total = await book_creation.list_tasks(db, user, params, status)
    return paginated([TaskRead.model_validate(t) for t in rows], total, params)


@router.get("/tasks/{task_id}")
async def get_task(
    task_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    return TaskDetail.model_validate(await book_creation.get_task(db, task_id, user, with_stages=True))


@router.post("/tasks/{task_id}/execute-stage")
async def execute_stage(
    task_id: int,
    payload: Optional[ExecuteStagePayload] = Body(None),
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    stage = payload.stage if payload else None
    return await book_creation.execute_stage(db, task_id, user, stage)


@router.post("/tasks/{task_id}/pause")
async def pause_task(
    task_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    await book_creation.pause_task(db, task_id, user)
    return {"id": task_id, "message": "Task paused"}


@router.post("/tasks/{task_id}/resume")
async def resume_task(
    task_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    await book_creation.resume_task(db, task_id, user)
    return {"id": task_id, "message": "Task resumed"}


@router.delete("/tasks/{task_id}")
async def cancel_task(
    task_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    await book_creation.cancel_task(db, task_id, user)
    return {"id": task_id, "message": "Task cancelled"}


@router.patch("/tasks/{task_id}/prompt-config")
async def update_prompt_config(
    task_id: int,
    config: Dict[str, int] = Body(...),
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    return TaskRead.model_validate(await book_creation.update_prompt_config(db, task_id, user, config))


@router.patch("/tasks/{task_id}/title-synopsis")
async def select_title(
    task_id: int,
    payload: TitleSynopsisPayload,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    task = await book_creation.select_title(db, task_id, user, payload.title, payload.synopsis)
    return TaskRead.model_validate(task)


@router.post("/tasks/{task_id}/stages/{stage}/optimize")
async def optimize_stage(
    task_id: int,
    stage: BookStage,
    payload: OptimizeStagePayload,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    return await book_creation.optimize_stage(db, task_id, user, stage, payload.feedback)


@router.get("/tasks/{task_id}/progress")
async def task_progress(
    task_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    return await book_creation.get_progress(db, task_id, user)


@router.get("/tasks/{task_id}/outline")
async def task_outline(
    task_id: int,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    return await book_creation.get_outline(db, task_id, user)


@router.patch("/tasks/{task_id}/outline-nodes/{node_id}")
async def update_outline_node(
    task_id: int,
    node_id: int,
    payload: OutlineNodeUpdate,
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    node = await book_creation.update_outline_node(db, task_id, node_id, user, payload)
    return OutlineNodeRead.model_validate(node)


@router.get("/tasks/{task_id}/export", dependencies=[Depends(skip_envelope)])
async def export_task(
    task_id: int,
    format: Literal["json", "markdown"] = "json",
    db: AsyncSession = Depends(get_db),
    user=Depends(require_authenticated_user),
):
    book = await book_creation.export_book(db, task_id, user)
    if format == "markdown":
        headers = {"Content-Disposition": f'attachment; filename="book-{task_id}.md"'}
        return PlainTextResponse(book_creation.book_markdown(book), media_type="text/markdown", headers=headers)
    headers = {"Content-Disposition": f'attachment; filename="book-{task_id}.json"'}
    return JSONResponse(book, headers=headers)
