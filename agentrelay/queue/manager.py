from __future__ import annotations

import asyncio
import contextlib
from asyncio import Queue
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from ..core.config import Settings
from ..core.logging import get_logger
from ..schemas.tasks import TaskData

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..orchestration.tasks import TrackedJob, TrackedTaskRunner

logger = get_logger(name=__name__)

Job = Callable[[], Awaitable[Any]]


class TaskQueueManager:
    """In-process job queue.

    Every job runs in its own ``asyncio.Task``, so context variables set by one
    job (correlation id, execution context) are invisible to the next.
    """

    def __init__(self, *, runner: "TrackedTaskRunner | None" = None, max_concurrency: int = 4) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be positive")
        self._runner = runner
        self._queue: Queue[Job] = Queue()
        self._consumer_task: asyncio.Task[None] | None = None
        self._slots = asyncio.Semaphore(max_concurrency)
        self._running: set[asyncio.Task[None]] = set()

    async def enqueue(self, job: Job) -> None:
        await self._queue.put(job)
        logger.info("task_enqueued", queue_size=self._queue.qsize())

    async def enqueue_tracked(self, task_data: TaskData, job: "TrackedJob") -> None:
        """Queue ``job`` wrapped in the task lifecycle hooks and task events."""
        runner = self._runner
        if runner is None:
            raise RuntimeError("enqueue_tracked requires a TrackedTaskRunner")

        async def tracked() -> Any:
            return await runner.run(task_data, job)

        await self.enqueue(tracked)
        logger.info("tracked_task_enqueued", task_uuid=task_data.uuid, task_name=task_data.name)

    async def join(self) -> None:
        await self._queue.join()

    async def _consumer(self) -> None:
        logger.info("task_queue_started")
        while True:
            job = await self._queue.get()
            await self._slots.acquire()
            task = asyncio.create_task(self._execute(job))
            self._running.add(task)
            task.add_done_callback(self._running.discard)

    async def _execute(self, job: Job) -> None:
        try:
            await job()
        except Exception as exc:
            logger.exception("task_execution_failed", error=str(exc))
        finally:
            self._slots.release()
            self._queue.task_done()

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["TaskQueueManager"]:
        await self.start()
        try:
            yield self
        finally:
            await self.stop()

    async def start(self) -> None:
        if self._consumer_task is None or self._consumer_task.done():
            self._consumer_task = asyncio.create_task(self._consumer())

    async def stop(self) -> None:
        if self._consumer_task is not None:
            self._consumer_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer_task
            self._consumer_task = None
        running = list(self._running)
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)

    @classmethod
    def from_settings(cls, settings: Settings, *, runner: "TrackedTaskRunner | None" = None) -> "TaskQueueManager":
        return cls(runner=runner, max_concurrency=settings.queue.max_concurrency)


__all__ = ["Job", "TaskQueueManager"]
