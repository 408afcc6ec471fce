from __future__ import annotations

import asyncio
import time
import traceback
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import structlog

from ..core.correlation import CorrelationTracker
from ..core.logging import get_logger
from ..schemas.tasks import TaskData, TaskResult, TaskStatus
from ..services.broadcast import NotificationChannel
from .task_store import TaskLifecycleStore

logger = get_logger(name=__name__)

CANCELLED_TASK_ERROR = "cancelled"


@dataclass(slots=True)
class TrackedJobResult:
    """What a tracked job may return to report usage alongside its result."""

    result: dict[str, Any] | None = None
    tokens_input: int = 0
    tokens_output: int = 0
    tokens_total: int = 0
    cost: Decimal = field(default_factory=lambda: Decimal("0"))
    model_used: str = ""


TrackedJob = Callable[[], Awaitable[Any]]


class TrackedTaskRunner:
    """Runs a job between the task lifecycle hooks and the task's event topic.

    Hook and publish failures never affect the job; the job's own exception is
    recorded as a failed task and re-raised.
    """

    def __init__(
        self,
        store: TaskLifecycleStore,
        notifications: NotificationChannel,
        correlation: CorrelationTracker,
    ) -> None:
        self._store = store
        self._notifications = notifications
        self._correlation = correlation

    async def run(self, task_data: TaskData, job: TrackedJob) -> Any:
        correlation_id = task_data.context.get("correlation_id")
        with self._correlation.scope(correlation_id if isinstance(correlation_id, str) else None):
            with structlog.contextvars.bound_contextvars(task_uuid=task_data.uuid):
                return await self._run(task_data, job)

    async def _run(self, task_data: TaskData, job: TrackedJob) -> Any:
        await self._store.store_task_started(task_data)
        await self._notifications.publish_start(
            task_data.uuid,
            {"name": task_data.name, "type": task_data.type, "agent": task_data.agent_short_name},
        )
        started = time.perf_counter()
        try:
            value = await job()
        except asyncio.CancelledError:
            duration_ms = int((time.perf_counter() - started) * 1000)
            logger.warning("tracked_task_cancelled", task_uuid=task_data.uuid, duration_ms=duration_ms)
            await self._store.store_task_failed(
                TaskResult(
                    uuid=task_data.uuid,
                    status=TaskStatus.FAILED,
                    error_message=CANCELLED_TASK_ERROR,
                    duration_ms=duration_ms,
                )
            )
            await self._notifications.publish_error(
                task_data.uuid,
                {"error": CANCELLED_TASK_ERROR, "duration_ms": duration_ms},
            )
            raise
        except Exception as exc:
            duration_ms = int((time.perf_counter() - started) * 1000)
            await self._store.store_task_failed(
                TaskResult(
                    uuid=task_data.uuid,
                    status=TaskStatus.FAILED,
                    error_message=str(exc) or type(exc).__name__,
                    error_trace=traceback.format_exc(),
                    duration_ms=duration_ms,
                )
            )
            await self._notifications.publish_error(
                task_data.uuid,
                {"error": str(exc) or type(exc).__name__, "duration_ms": duration_ms},
            )
            raise

        duration_ms = int((time.perf_counter() - started) * 1000)
        outcome = _outcome_from_value(task_data.uuid, value, duration_ms)
        await self._store.store_task_completed(outcome)
        await self._notifications.publish_complete(
            task_data.uuid,
            {
                "duration_ms": duration_ms,
                "tokens_total": outcome.tokens_total,
                "cost": outcome.formatted_cost,
                "model": outcome.model_used or None,
            },
        )
        return value


def _outcome_from_value(task_uuid: str, value: Any, duration_ms: int) -> TaskResult:
    if isinstance(value, TrackedJobResult):
        return TaskResult(
            uuid=task_uuid,
            status=TaskStatus.COMPLETED,
            result=value.result,
            tokens_input=value.tokens_input,
            tokens_output=value.tokens_output,
            tokens_total=value.tokens_total,
            cost=value.cost,
            duration_ms=duration_ms,
            model_used=value.model_used,
        )
    result = dict(value) if isinstance(value, Mapping) else None
    if result is None and value is not None:
        result = {"value": value}
    return TaskResult(uuid=task_uuid, status=TaskStatus.COMPLETED, result=result, duration_ms=duration_ms)


__all__ = ["CANCELLED_TASK_ERROR", "TrackedJob", "TrackedJobResult", "TrackedTaskRunner"]
