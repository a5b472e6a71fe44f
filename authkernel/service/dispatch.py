from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Set

from authkernel.logging import get_logger

logger = get_logger(__name__)


class BackgroundDispatcher:
    """Detached best-effort work: audit writes and outbound notifications.

    The caller never awaits the work; failures end up in the log as
    ``background_task_failed`` instead of in the caller's response.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, name: str, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.set_name(f"dispatch:{name}")
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finished(name, t))
        return task

    def submit_call(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> asyncio.Task:
        """Run a blocking callable (e.g. SMTP delivery) in a worker thread."""
        return self.submit(name, asyncio.to_thread(fn, *args, **kwargs))

    def _finished(self, name: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.debug("background_task_cancelled", task=name)
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "background_task_failed",
                task=name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        elif task.result() is False:
            logger.warning("background_task_unsuccessful", task=name)

    async def drain(self) -> None:
        """Wait for everything submitted so far (and anything it submits)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
