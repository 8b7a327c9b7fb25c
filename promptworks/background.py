"""Supervised fire-and-forget asyncio tasks.

Audit log writes and auto-started book stages run here so the request that
triggered them never waits. Failures are logged instead of vanishing, and
tasks are held until they finish so they are not garbage collected early.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)

_background_tasks: Set[asyncio.Task[Any]] = set()


def spawn(coro: Awaitable[Any], *, name: Optional[str] = None,
          on_error: Optional[Callable[[BaseException], None]] = None) -> asyncio.Task[Any]:
    """Create and supervise a background task.

    Args:
        coro: Awaitable coroutine to run in the background.
        name: Optional task name, used in log lines.
        on_error: Optional callback invoked if the task raises.
    """
    task = asyncio.create_task(coro, name=name)  # type: ignore[arg-type]
    _background_tasks.add(task)

    def _finished(t: asyncio.Task[Any]) -> None:
        _background_tasks.discard(t)
        try:
            t.result()
        except asyncio.CancelledError:
            logger.debug("Background task %s cancelled", name or t)
        except Exception as exc:  # noqa: BLE001
            if on_error:
                try:
                    on_error(exc)
                except Exception:  # noqa: BLE001
                    logger.exception("Error in on_error callback for task %s", name or t)
            logger.exception("Background task %s failed", name or t, exc_info=exc)

    task.add_done_callback(_finished)
    return task


def pending() -> int:
    return len(_background_tasks)


async def drain(timeout: Optional[float] = 10.0) -> None:
    """Wait for outstanding tasks, e.g. on shutdown."""
    tasks = [t for t in _background_tasks if not t.done()]
    if not tasks:
        return
    done, still_running = await asyncio.wait(tasks, timeout=timeout)
    if still_running:
        logger.warning("%d background task(s) still running after drain", len(still_running))


__all__ = ["spawn", "pending", "drain"]
