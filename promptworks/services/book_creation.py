"""Book creation: a five-stage generation workflow driven by prompt groups.

Stages run in a fixed order (idea, title, outline, content, review). Each
stage resolves the prompt bound to it, substitutes the named inputs gathered
so far, sends the messages to the generation provider and parses the output
according to the stage's declared shape.

A stage that fails marks both its stage row and the task as failed; the same
stage can then be executed again. Chapter generation runs in bounded batches,
each chapter in its own session, and one failed chapter never blocks its
siblings.
"""
import asyncio
import enum
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .. import background, database, llm_client
from ..errors import AppError, DomainError, ForbiddenError, NotFoundError, ProviderError, StageOutputError
from ..models import (
    BookCreationStage, BookCreationTask, BookStage, GroupStageType, OutlineNode,
    OutlineNodeStatus, PromptStatus, StageStatus, TaskStatus, utcnow,
)
from ..schemas import OutlineNodeRead, OutlineNodeUpdate, TaskCreate
from ..settings.config import settings
from ..utils import PageParams, is_admin
from . import prompt_groups, prompts

logger = logging.getLogger(__name__)

STAGE_ORDER = [BookStage.idea, BookStage.title, BookStage.outline, BookStage.content, BookStage.review]

STAGE_STATUS = {
    BookStage.idea: TaskStatus.idea_generating,
    BookStage.title: TaskStatus.title_generating,
    BookStage.outline: TaskStatus.outline_generating,
    BookStage.content: TaskStatus.content_generating,
    BookStage.review: TaskStatus.review_optimizing,
}

# count against MAX_ACTIVE_TASKS
ACTIVE_STATUSES = (
    TaskStatus.paused,
    TaskStatus.idea_generating,
    TaskStatus.title_generating,
    TaskStatus.outline_generating,
    TaskStatus.content_generating,
    TaskStatus.review_optimizing,
    TaskStatus.waiting_next_stage,
)

PROGRESS_PER_STAGE = 20

FENCE_RE = re.compile(r"^```[\w-]*[ \t]*\n?([\s\S]*?)\n?```$")


class OutputShape(str, enum.Enum):
    text = "text"
    json_object = "json_object"
    json_array = "json_array"


# output shape per bound prompt
STAGE_SHAPES = {
    GroupStageType.idea: OutputShape.text,
    GroupStageType.idea_optimize: OutputShape.text,
    GroupStageType.title: OutputShape.json_object,
    GroupStageType.outline_main: OutputShape.json_array,
    GroupStageType.outline_volume: OutputShape.json_array,
    GroupStageType.outline_chapter: OutputShape.json_array,
    GroupStageType.content: OutputShape.text,
    GroupStageType.review: OutputShape.json_object,
    GroupStageType.summary: OutputShape.text,
    GroupStageType.optimize: OutputShape.text,
}


@dataclass
class ResolvedStage:
    prompt_id: int
    messages: List[Dict[str, str]]
    shape: OutputShape


@dataclass
class StageResult:
    data: Dict[str, Any]
    characters: int = 0
    input_data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class _Runner:
    """Plain values a chapter worker needs; ORM objects stay in their session."""

    task_id: int
    user_id: int
    model: Optional[str]
    temperature: Optional[float]
    prompt_config: Dict[str, Any]


# ---------------------------
# Resolution / parsing
# ---------------------------
async def resolve_stage(db: AsyncSession, prompt_id: int, values: Dict[str, Any],
                        shape: OutputShape = OutputShape.text, user_id: Optional[int] = None) -> ResolvedStage:
    """Substitute `values` into the enabled blocks of `prompt_id`, in block order."""
    if user_id is not None:
        prompt = await prompts.load_usable_prompt(db, prompt_id, user_id)
    else:
        prompt = await prompts.get_prompt_or_404(db, prompt_id)
    return ResolvedStage(prompt_id=prompt.id, messages=prompts.build_messages(prompt, values), shape=shape)


def strip_fences(raw: str) -> str:
    s = (raw or "").strip()
    m = FENCE_RE.match(s)
    return m.group(1).strip() if m else s


def parse_output(raw: str, shape: OutputShape) -> Any:
    """Parse provider output for `shape`. Mismatches raise, nothing is coerced."""
    text = strip_fences(raw)
    if shape == OutputShape.text:
        if not text:
            raise StageOutputError("Generation returned empty text")
        return text
    try:
        data = json.loads(text)
    except ValueError as e:
        raise StageOutputError(
            f"Expected {shape.value} output but got non-JSON text",
            details={"expected": shape.value, "output": text[:200]},
        ) from e
    if shape == OutputShape.json_object and not isinstance(data, dict):
        raise StageOutputError("Expected a JSON object", details={"expected": shape.value})
    if shape == OutputShape.json_array and not isinstance(data, list):
        raise StageOutputError("Expected a JSON array", details={"expected": shape.value})
    return data


def _prompt_for(prompt_config: Dict[str, Any], stage_type: GroupStageType) -> Optional[int]:
    value = (prompt_config or {}).get(stage_type.value)
    return int(value) if value else None


def _required_prompt(prompt_config: Dict[str, Any], stage_type: GroupStageType) -> int:
    prompt_id = _prompt_for(prompt_config, stage_type)
    if not prompt_id:
        raise DomainError(f"No prompt configured for stage '{stage_type.value}'")
    return prompt_id


async def _generate(db: AsyncSession, runner: _Runner, stage_type: GroupStageType,
                    values: Dict[str, Any]) -> Tuple[Any, int]:
    prompt_id = _required_prompt(runner.prompt_config, stage_type)
    shape = STAGE_SHAPES[stage_type]
    resolved = await resolve_stage(db, prompt_id, values, shape, user_id=runner.user_id)
    try:
        raw = await llm_client.generate_chat(resolved.messages, model=runner.model,
                                             temperature=runner.temperature)
    except llm_client.LLMError as e:
        raise ProviderError(str(e)) from e
    return parse_output(raw, shape), len(raw)


def _runner(task: BookCreationTask) -> _Runner:
    return _Runner(
        task_id=task.id,
        user_id=task.user_id,
        model=task.model,
        temperature=(task.task_config or {}).get("temperature"),
        prompt_config=dict(task.prompt_config or {}),
    )


# ---------------------------
# Stage runners
# ---------------------------
async def _run_idea(db: AsyncSession, task: BookCreationTask) -> StageResult:
    values = dict((task.processed_data or {}).get("user_parameters") or {})
    if not values:
        logger.warning("Task %s: idea stage running without user parameters", task.id)
    brainstorm, chars = await _generate(db, _runner(task), GroupStageType.idea, values)
    return StageResult(data={"brainstorm": brainstorm}, characters=chars, input_data={"user_parameters": values})


async def _run_title(db: AsyncSession, task: BookCreationTask) -> StageResult:
    values = {"brainstorm": (task.processed_data or {}).get("brainstorm") or ""}
    out, chars = await _generate(db, _runner(task), GroupStageType.title, values)
    titles = out.get("titles")
    if not isinstance(titles, list) or not titles:
        raise StageOutputError("Title output must carry a non-empty 'titles' list")
    data = {
        "titles": [str(t) for t in titles],
        "synopsis": str(out.get("synopsis") or ""),
    }
    return StageResult(data=data, characters=chars, input_data=values)


def _entries(items: List[Any], text_key: str, label: str) -> List[Tuple[str, str]]:
    """(title, text) pairs from one outline reply; all entries must be objects."""
    out = []
    for i, item in enumerate(items):
        if not isinstance(item, dict):
            raise StageOutputError("Outline entries must be JSON objects")
        title = str(item.get("title") or "").strip() or f"{label} {i + 1}"
        out.append((title[:255], str(item.get(text_key) or "")))
    return out


def _unit_failed(node: OutlineNode, error: AppError, failed_units: List[Dict[str, Any]]) -> None:
    node.status = OutlineNodeStatus.failed
    node.error_message = error.message
    failed_units.append({"node_id": node.id, "error": error.message})


async def _run_outline(db: AsyncSession, task: BookCreationTask) -> StageResult:
    pd = task.processed_data or {}
    titles = pd.get("titles") or []
    values = {
        "title": pd.get("selected_title") or (titles[0] if titles else ""),
        "synopsis": pd.get("synopsis") or "",
        "brainstorm": pd.get("brainstorm") or "",
    }
    runner = _runner(task)

    # a retried outline starts from scratch
    await db.execute(delete(OutlineNode).where(OutlineNode.task_id == task.id))

    main_items, chars = await _generate(db, runner, GroupStageType.outline_main, values)
    mains = _entries(main_items, "content", "Part")
    volumes = chapters = 0
    failed_units: List[Dict[str, Any]] = []

    for i, (title, content) in enumerate(mains):
        main = OutlineNode(task_id=task.id, level=1, title=title, content=content, order=i,
                           status=OutlineNodeStatus.generated)
        db.add(main)
        await db.flush()

        try:
            volume_items, used = await _generate(
                db, runner, GroupStageType.outline_volume, {**values, "main_title": title, "main_content": content}
            )
            volume_entries = _entries(volume_items, "description", "Volume")
        except (StageOutputError, ProviderError) as e:
            _unit_failed(main, e, failed_units)
            continue
        chars += used

        for j, (v_title, v_desc) in enumerate(volume_entries):
            volume = OutlineNode(task_id=task.id, parent_id=main.id, level=2, title=v_title, content=v_desc,
                                 order=j, status=OutlineNodeStatus.generated)
            db.add(volume)
            await db.flush()
            volumes += 1

            try:
                chapter_items, used = await _generate(
                    db, runner, GroupStageType.outline_chapter,
                    {**values, "volume_title": v_title, "volume_description": v_desc},
                )
                chapter_entries = _entries(chapter_items, "summary", "Chapter")
            except (StageOutputError, ProviderError) as e:
                _unit_failed(volume, e, failed_units)
                continue
            chars += used

            for k, (c_title, c_summary) in enumerate(chapter_entries):
                db.add(OutlineNode(task_id=task.id, parent_id=volume.id, level=3, title=c_title,
                                   content=c_summary, order=k, status=OutlineNodeStatus.draft))
                chapters += 1

    data = {
        "outline": {
            "main_count": len(main_items),
            "volume_count": volumes,
            "chapter_count": chapters,
            "failed_units": failed_units,
        }
    }
    return StageResult(data=data, characters=chars, input_data=values)


async def _ordered_chapters(db: AsyncSession, task_id: int) -> List[OutlineNode]:
    """Chapter nodes in reading order: main, then volume, then chapter order."""
    nodes = (await db.execute(
        select(OutlineNode)
        .where(OutlineNode.task_id == task_id)
        .execution_options(populate_existing=True)
    )).scalars().all()
    by_id = {n.id: n for n in nodes}

    def key(node: OutlineNode):
        path = []
        cur = node
        while cur is not None:
            path.append((cur.order, cur.id))
            cur = by_id.get(cur.parent_id)
        return list(reversed(path))

    return sorted((n for n in nodes if n.level == 3), key=key)


def _previous_summaries(chapters: List[OutlineNode], chapter: OutlineNode) -> str:
    lines = []
    for c in chapters:
        if c.id == chapter.id:
            break
        if c.parent_id == chapter.parent_id and c.content:
            lines.append(f"Chapter {c.order + 1}: {c.content}")
    return "\n".join(lines)


async def _generate_chapter(runner: _Runner, chapter_id: int, values: Dict[str, Any]) -> int:
    async with database.async_session_maker() as session:
        node = await session.get(OutlineNode, chapter_id)
        try:
            body, chars = await _generate(session, runner, GroupStageType.content, values)
        except Exception as e:
            message = e.message if isinstance(e, AppError) else str(e)
            await session.rollback()
            node = await session.get(OutlineNode, chapter_id, populate_existing=True)
            node.status = OutlineNodeStatus.failed
            node.error_message = message
            await session.commit()
            raise
        node.body = body
        node.status = OutlineNodeStatus.generated
        node.error_message = None
        await session.commit()
        return chars


async def _run_content(db: AsyncSession, task: BookCreationTask) -> StageResult:
    chapters = await _ordered_chapters(db, task.id)
    if not chapters:
        raise DomainError("No chapters to generate; run the outline stage first")

    runner = _runner(task)
    limit = int((task.task_config or {}).get("concurrency_limit") or settings.CHAPTER_CONCURRENCY_LIMIT)
    # a retry only regenerates what is missing
    todo = [c for c in chapters if c.status != OutlineNodeStatus.generated or not c.body]
    jobs = [
        (c.id, {
            "chapter_title": c.title,
            "chapter_summary": c.content or "",
            "previous_summaries": _previous_summaries(chapters, c),
        })
        for c in todo
    ]

    generated = len(chapters) - len(todo)
    chars = 0
    failed: List[Dict[str, Any]] = []
    for start in range(0, len(jobs), limit):
        batch = jobs[start:start + limit]
        results = await asyncio.gather(
            *(_generate_chapter(runner, chapter_id, values) for chapter_id, values in batch),
            return_exceptions=True,
        )
        for (chapter_id, _), result in zip(batch, results):
            if isinstance(result, BaseException):
                message = result.message if isinstance(result, AppError) else str(result)
                logger.warning("Task %s: chapter %s failed: %s", task.id, chapter_id, message)
                failed.append({"chapter_id": chapter_id, "error": message})
            else:
                generated += 1
                chars += result

    if failed and generated == 0:
        raise DomainError("Every chapter failed to generate", details=failed)

    data = {"content": {"total_chapters": len(chapters), "generated": generated,
                        "failed": len(failed), "failed_chapters": failed}}
    return StageResult(data=data, characters=chars, input_data={"concurrency_limit": limit})


async def _run_review(db: AsyncSession, task: BookCreationTask) -> StageResult:
    if not (task.task_config or {}).get("enable_review", True):
        return StageResult(data={"review": {"skipped": True}})

    runner = _runner(task)
    chapters = await _ordered_chapters(db, task.id)
    written = [c for c in chapters if c.body]
    has_summary = _prompt_for(runner.prompt_config, GroupStageType.summary) is not None
    has_optimize = _prompt_for(runner.prompt_config, GroupStageType.optimize) is not None

    reviewed = optimized = failed = 0
    total_score = 0.0
    chars = 0
    for chapter in written:
        try:
            if has_summary and len(chapter.content or "") < 20:
                summary, used = await _generate(db, runner, GroupStageType.summary,
                                                {"chapter_title": chapter.title, "chapter_body": chapter.body})
                chapter.content = summary
                chars += used

            report, used = await _generate(db, runner, GroupStageType.review,
                                           {"chapter_title": chapter.title, "chapter_body": chapter.body})
            chars += used
            issues = report.get("issues") if isinstance(report.get("issues"), list) else []
            score = report.get("score")
            chapter.review = {
                "score": score,
                "issues": issues,
                "suggestions": report.get("suggestions") or [],
            }
            reviewed += 1
            if isinstance(score, (int, float)):
                total_score += score

            serious = [i for i in issues if isinstance(i, dict) and i.get("severity") in ("high", "medium")]
            if serious and has_optimize:
                body, used = await _generate(db, runner, GroupStageType.optimize, {
                    "chapter_title": chapter.title,
                    "chapter_body": chapter.body,
                    "review_issues": json.dumps(serious, ensure_ascii=False),
                    "previous_summaries": _previous_summaries(chapters, chapter),
                })
                chapter.body = body
                chars += used
                optimized += 1
            await db.flush()
        except (AppError, llm_client.LLMError) as e:
            failed += 1
            chapter.error_message = getattr(e, "message", None) or str(e)
            logger.warning("Task %s: review of chapter %s failed: %s", task.id, chapter.id, e)

    data = {"review": {
        "total_chapters": len(written),
        "reviewed": reviewed,
        "optimized": optimized,
        "failed": failed,
        "average_score": round(total_score / reviewed, 2) if reviewed else 0,
    }}
    return StageResult(data=data, characters=chars)


RUNNERS = {
    BookStage.idea: _run_idea,
    BookStage.title: _run_title,
    BookStage.outline: _run_outline,
    BookStage.content: _run_content,
    BookStage.review: _run_review,
}


# ---------------------------
# Tasks
# ---------------------------
async def get_task(db: AsyncSession, task_id: int, user, with_stages: bool = False) -> BookCreationTask:
    q = select(BookCreationTask).where(BookCreationTask.id == task_id).execution_options(populate_existing=True)
    if with_stages:
        q = q.options(selectinload(BookCreationTask.stages))
    task = (await db.execute(q)).scalars().first()
    if not task:
        raise NotFoundError("Task not found")
    if task.user_id != getattr(user, "id", None) and not is_admin(user):
        raise ForbiddenError("No access to this task")
    return task


async def list_tasks(db: AsyncSession, user, params: PageParams, status: Optional[TaskStatus] = None):
    q = select(BookCreationTask).where(BookCreationTask.user_id == user.id)
    if status is not None:
        q = q.where(BookCreationTask.status == status)
    total = (await db.execute(select(func.count()).select_from(q.subquery()))).scalar_one()
    rows = (await db.execute(
        q.order_by(BookCreationTask.created_at.desc(), BookCreationTask.id.desc())
        .offset(params.offset).limit(params.page_size)
    )).scalars().all()
    return rows, total


def _check_prompt_config(config: Dict[str, Any]) -> Dict[str, int]:
    valid = {s.value for s in GroupStageType}
    unknown = sorted(k for k in config if k not in valid)
    if unknown:
        raise DomainError(f"Unknown stage types in prompt config: {', '.join(unknown)}")
    return {k: int(v) for k, v in config.items() if v}


async def create_task(db: AsyncSession, user, payload: TaskCreate) -> BookCreationTask:
    active = (await db.execute(
        select(func.count(BookCreationTask.id))
        .where(BookCreationTask.user_id == user.id)
        .where(BookCreationTask.status.in_(ACTIVE_STATUSES))
    )).scalar_one()
    if active >= settings.MAX_ACTIVE_TASKS:
        raise DomainError(f"At most {settings.MAX_ACTIVE_TASKS} book creation tasks can be active at once")

    if payload.prompt_group_id is not None:
        group = await prompt_groups.get_group_or_404(db, payload.prompt_group_id)
        if group.user_id != user.id and (not group.is_public or group.status != PromptStatus.published):
            raise ForbiddenError("This prompt group is not available")
        prompt_config = prompt_groups.build_prompt_config(group)
    else:
        prompt_config = _check_prompt_config(payload.prompt_config)

    task_config = {"enable_review": True, "concurrency_limit": settings.CHAPTER_CONCURRENCY_LIMIT}
    if payload.task_config is not None:
        task_config.update(payload.task_config.model_dump(exclude_none=True))

    processed_data = {}
    if payload.parameters:
        processed_data["user_parameters"] = dict(payload.parameters)

    task = BookCreationTask(
        user_id=user.id,
        prompt_group_id=payload.prompt_group_id,
        model=payload.model,
        status=TaskStatus.idea_generating if payload.auto_execute else TaskStatus.paused,
        current_stage=BookStage.idea,
        processed_data=processed_data,
        prompt_config=prompt_config,
        task_config=task_config,
        total_characters_consumed=0,
    )
    db.add(task)
    await db.commit()
    logger.info("Created book creation task %s for user %s", task.id, user.id)

    if payload.auto_execute:
        background.spawn(_auto_execute(task.id), name=f"book-task-{task.id}-idea")
    return task


async def _auto_execute(task_id: int) -> None:
    async with database.async_session_maker() as session:
        task = await session.get(BookCreationTask, task_id)
        if task is None:
            return
        await run_stage(session, task, BookStage.idea)


async def _stage_row(db: AsyncSession, task_id: int, stage: BookStage) -> Optional[BookCreationStage]:
    return (await db.execute(
        select(BookCreationStage)
        .where(BookCreationStage.task_id == task_id, BookCreationStage.stage_type == stage)
        .order_by(BookCreationStage.id.desc())
        .execution_options(populate_existing=True)
    )).scalars().first()


async def _completed_stages(db: AsyncSession, task_id: int) -> List[BookStage]:
    rows = (await db.execute(
        select(BookCreationStage.stage_type)
        .where(BookCreationStage.task_id == task_id, BookCreationStage.status == StageStatus.completed)
    )).scalars().all()
    return [s for s in STAGE_ORDER if s in set(rows)]


async def next_stage(db: AsyncSession, task: BookCreationTask) -> Optional[BookStage]:
    done = await _completed_stages(db, task.id)
    if task.current_stage not in done:
        return task.current_stage
    idx = STAGE_ORDER.index(task.current_stage)
    return STAGE_ORDER[idx + 1] if idx + 1 < len(STAGE_ORDER) else None


async def validate_stage(db: AsyncSession, task: BookCreationTask, stage: BookStage) -> None:
    if task.status in (TaskStatus.cancelled, TaskStatus.completed):
        raise DomainError(f"Task is {task.status.value}")
    running = (await db.execute(
        select(BookCreationStage.id)
        .where(BookCreationStage.task_id == task.id, BookCreationStage.status == StageStatus.processing)
        .limit(1)
    )).scalar_one_or_none()
    if running:
        raise DomainError("A stage of this task is already running")

    idx = STAGE_ORDER.index(stage)
    if idx == 0:
        return
    if idx > STAGE_ORDER.index(task.current_stage) + 1:
        raise DomainError("Complete the previous stage first")
    if STAGE_ORDER[idx - 1] not in await _completed_stages(db, task.id):
        raise DomainError("Complete the previous stage first")


async def execute_stage(db: AsyncSession, task_id: int, user, stage: Optional[BookStage] = None) -> dict:
    task = await get_task(db, task_id, user)
    target = stage or await next_stage(db, task)
    if target is None:
        raise DomainError("There is no stage left to execute")
    await validate_stage(db, task, target)
    return await run_stage(db, task, target)


async def run_stage(db: AsyncSession, task: BookCreationTask, stage: BookStage) -> dict:
    task_id = task.id
    row = await _stage_row(db, task_id, stage)
    if row is None:
        row = BookCreationStage(task_id=task_id, stage_type=stage, retry_count=0, characters_consumed=0)
        db.add(row)
    else:
        row.retry_count = (row.retry_count or 0) + 1
    row.status = StageStatus.processing
    row.error_message = None
    row.completed_at = None
    task.status = STAGE_STATUS[stage]
    task.error_message = None
    await db.commit()
    row_id = row.id
    logger.info("Task %s: running stage %s", task_id, stage.value)

    try:
        result = await RUNNERS[stage](db, task)
    except Exception as e:
        message = e.message if isinstance(e, AppError) else str(e)
        await db.rollback()
        task = await db.get(BookCreationTask, task_id, populate_existing=True)
        row = await db.get(BookCreationStage, row_id, populate_existing=True)
        row.status = StageStatus.failed
        row.error_message = message
        task.status = TaskStatus.failed
        task.error_message = message
        await db.commit()
        logger.warning("Task %s: stage %s failed: %s", task_id, stage.value, message)
        raise

    # pause/cancel may have landed while the stage ran
    await db.refresh(task, ["status"])
    interrupted = task.status in (TaskStatus.paused, TaskStatus.cancelled)

    row.status = StageStatus.completed
    row.input_data = result.input_data
    row.output_data = result.data
    row.characters_consumed = result.characters
    row.prompt_id = _prompt_for(task.prompt_config, _primary_prompt(stage))
    row.completed_at = utcnow()

    task.processed_data.update(result.data)
    task.total_characters_consumed = (task.total_characters_consumed or 0) + result.characters

    if stage == BookStage.title:
        # waits for select_title before the outline
        task.current_stage = BookStage.title
        status = TaskStatus.waiting_next_stage
    elif stage == BookStage.review:
        task.current_stage = BookStage.review
        task.completed_at = utcnow()
        status = TaskStatus.completed
    else:
        task.current_stage = STAGE_ORDER[STAGE_ORDER.index(stage) + 1]
        status = TaskStatus.waiting_next_stage
    if not interrupted:
        task.status = status
    await db.commit()
    logger.info("Task %s: stage %s completed (%s chars)", task_id, stage.value, result.characters)

    return {"stage": stage, "data": result.data, "characters_consumed": result.characters}


def _primary_prompt(stage: BookStage) -> GroupStageType:
    return {
        BookStage.idea: GroupStageType.idea,
        BookStage.title: GroupStageType.title,
        BookStage.outline: GroupStageType.outline_main,
        BookStage.content: GroupStageType.content,
        BookStage.review: GroupStageType.review,
    }[stage]


async def pause_task(db: AsyncSession, task_id: int, user) -> BookCreationTask:
    task = await get_task(db, task_id, user)
    if task.status in (TaskStatus.completed, TaskStatus.failed):
        raise DomainError("Completed or failed tasks cannot be paused")
    task.status = TaskStatus.paused
    await db.commit()
    logger.info("Task %s paused", task_id)
    return task


async def resume_task(db: AsyncSession, task_id: int, user) -> BookCreationTask:
    task = await get_task(db, task_id, user)
    if task.status != TaskStatus.paused:
        raise DomainError("Only paused tasks can be resumed")
    row = await _stage_row(db, task_id, task.current_stage)
    if row is not None and row.status == StageStatus.processing:
        task.status = STAGE_STATUS[task.current_stage]
    else:
        task.status = TaskStatus.waiting_next_stage
    await db.commit()
    logger.info("Task %s resumed", task_id)
    return task


async def cancel_task(db: AsyncSession, task_id: int, user) -> BookCreationTask:
    task = await get_task(db, task_id, user)
    if task.status == TaskStatus.completed:
        raise DomainError("Completed tasks cannot be cancelled")
    task.status = TaskStatus.cancelled
    await db.commit()
    logger.info("Task %s cancelled", task_id)
    return task


async def update_prompt_config(db: AsyncSession, task_id: int, user, config: Dict[str, Any]) -> BookCreationTask:
    task = await get_task(db, task_id, user)
    if task.prompt_group_id is not None:
        raise DomainError("Tasks that use a prompt group cannot change single prompts")
    task.prompt_config.update(_check_prompt_config(config))
    await db.commit()
    return task


async def select_title(db: AsyncSession, task_id: int, user, title: str,
                       synopsis: Optional[str] = None) -> BookCreationTask:
    task = await get_task(db, task_id, user)
    pd = task.processed_data
    if not pd.get("titles"):
        raise DomainError("Generate titles first")
    pd["selected_title"] = title
    pd["synopsis"] = synopsis or pd.get("synopsis") or ""
    task.current_stage = BookStage.outline
    task.status = TaskStatus.waiting_next_stage
    await db.commit()
    return task


async def optimize_stage(db: AsyncSession, task_id: int, user, stage: BookStage, feedback: str) -> dict:
    task = await get_task(db, task_id, user)
    if stage != BookStage.idea:
        raise DomainError("Only the idea stage can be optimized")
    row = await _stage_row(db, task_id, stage)
    if row is None or row.status != StageStatus.completed:
        raise DomainError("This stage has not been completed yet")

    values = {"original_idea": task.processed_data.get("brainstorm") or "", "feedback": feedback}
    brainstorm, chars = await _generate(db, _runner(task), GroupStageType.idea_optimize, values)

    task.processed_data["brainstorm"] = brainstorm
    task.total_characters_consumed = (task.total_characters_consumed or 0) + chars
    row.output_data = {"brainstorm": brainstorm}
    await db.commit()
    return {"stage": stage, "data": {"brainstorm": brainstorm}, "characters_consumed": chars}


async def get_progress(db: AsyncSession, task_id: int, user) -> dict:
    task = await get_task(db, task_id, user)
    done = await _completed_stages(db, task_id)
    return {
        "task_id": task.id,
        "status": task.status,
        "current_stage": task.current_stage,
        "overall_progress": len(done) * PROGRESS_PER_STAGE,
        "completed_stages": done,
        "total_characters_consumed": task.total_characters_consumed,
        "created_at": task.created_at,
        "updated_at": task.updated_at,
        "completed_at": task.completed_at,
    }


async def get_outline(db: AsyncSession, task_id: int, user) -> List[OutlineNodeRead]:
    await get_task(db, task_id, user)
    nodes = (await db.execute(
        select(OutlineNode)
        .where(OutlineNode.task_id == task_id)
        .order_by(OutlineNode.level, OutlineNode.order, OutlineNode.id)
        .execution_options(populate_existing=True)
    )).scalars().all()

    views = {n.id: OutlineNodeRead.model_validate(n) for n in nodes}
    roots: List[OutlineNodeRead] = []
    for n in nodes:
        parent = views.get(n.parent_id) if n.parent_id else None
        if parent is not None:
            parent.children.append(views[n.id])
        else:
            roots.append(views[n.id])
    return roots


async def update_outline_node(db: AsyncSession, task_id: int, node_id: int, user,
                              payload: OutlineNodeUpdate) -> OutlineNode:
    await get_task(db, task_id, user)
    node = await db.get(OutlineNode, node_id)
    if node is None or node.task_id != task_id:
        raise NotFoundError("Outline node not found")
    fields = payload.model_dump(exclude_unset=True)
    if "body" in fields and node.level != 3:
        raise DomainError("Only chapter nodes carry a body")
    for key, value in fields.items():
        setattr(node, key, value)
    await db.commit()
    return node


# ---------------------------
# Export
# ---------------------------
async def export_book(db: AsyncSession, task_id: int, user) -> Dict[str, Any]:
    """Manuscript of the chapters written so far, in reading order."""
    task = await get_task(db, task_id, user)
    pd = task.processed_data or {}
    titles = pd.get("titles") or []
    chapters = [
        {"title": c.title, "summary": c.content or "", "body": c.body}
        for c in await _ordered_chapters(db, task.id)
        if c.body
    ]
    return {
        "task_id": task.id,
        "title": pd.get("selected_title") or (titles[0] if titles else ""),
        "synopsis": pd.get("synopsis") or "",
        "chapters": chapters,
        "characters": sum(len(c["body"]) for c in chapters),
    }


def book_markdown(book: Dict[str, Any]) -> str:
    parts = [f"# {book['title'] or 'Untitled'}"]
    if book["synopsis"]:
        parts.append(book["synopsis"])
    for chapter in book["chapters"]:
        parts.append(f"## {chapter['title']}\n\n{chapter['body'].strip()}")
    return "\n\n".join(parts) + "\n"
