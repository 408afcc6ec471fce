"""Lifecycle hooks the scheduler calls around every tracked AI task.

A record is created in ``processing`` when the task starts and updated in place
when it completes or fails. These hooks are telemetry: nothing raised while
persisting a record may reach the task pipeline, so every hook reports its
outcome as a boolean instead.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from decimal import Decimal
from typing import Any, Mapping, Protocol

from pydantic import ValidationError

from ..core.config import Settings
from ..core.exceptions import PayloadValidationError, TelemetryPersistenceError
from ..core.logging import get_logger
from ..core.metrics import record_task_event, record_telemetry_failure
from ..schemas.tasks import TaskData, TaskRecord, TaskResult, TaskStatus
from ..utils.asyncpg_helpers import PoolBackedRepository, asyncpg, create_pool_from_settings
from ..utils.json_encoding import decode_jsonb, encode_jsonb

logger = get_logger(name=__name__)

TELEMETRY_SINK = "task_record"


class TaskRecordRepository(Protocol):
    async def create(self, record: TaskRecord) -> None:
        ...

    async def find_by_uuid(self, uuid: str) -> TaskRecord | None:
        ...

    async def update(self, record: TaskRecord) -> None:
        ...


class InMemoryTaskRecordRepository:
    def __init__(self) -> None:
        self._records: dict[str, TaskRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, record: TaskRecord) -> None:
        async with self._lock:
            self._records[record.uuid] = replace(record)

    async def find_by_uuid(self, uuid: str) -> TaskRecord | None:
        async with self._lock:
            record = self._records.get(uuid)
            return replace(record) if record is not None else None

    async def update(self, record: TaskRecord) -> None:
        async with self._lock:
            if record.uuid not in self._records:
                raise TelemetryPersistenceError(f"task record {record.uuid} does not exist")
            self._records[record.uuid] = replace(record)

    def __len__(self) -> int:
        return len(self._records)


class PostgresTaskRecordRepository(PoolBackedRepository):
    _INSERT = """
        INSERT INTO ai_tasks(
            uuid,
            name,
            type,
            status,
            agent_class,
            method_name,
            arguments,
            context,
            started_at,
            created_at
        ) VALUES($1, $2, $3, $4, $5, $6, $7::jsonb, $8::jsonb, $9, $10)
    """

    _FETCH = """
        SELECT
            uuid,
            name,
            type,
            status,
            agent_class,
            method_name,
            arguments,
            context,
            result,
            error_message,
            error_trace,
            tokens_input,
            tokens_output,
            tokens_total,
            cost,
            duration_ms,
            model_used,
            started_at,
            completed_at,
            created_at,
            updated_at
        FROM ai_tasks
        WHERE uuid = $1
    """

    _UPDATE = """
        UPDATE ai_tasks
        SET status = $2,
            result = $3::jsonb,
            error_message = $4,
            error_trace = $5,
            tokens_input = $6,
            tokens_output = $7,
            tokens_total = $8,
            cost = $9,
            duration_ms = $10,
            model_used = $11,
            completed_at = $12,
            updated_at = $13
        WHERE uuid = $1
    """

    def __init__(self, pool: Any) -> None:
        if asyncpg is None:  # pragma: no cover - guarded by build_task_repository
            raise RuntimeError("asyncpg is required for PostgresTaskRecordRepository")
        super().__init__(pool)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PostgresTaskRecordRepository":
        return cls(create_pool_from_settings(settings))

    async def create(self, record: TaskRecord) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            await connection.execute(
                self._INSERT,
                record.uuid,
                record.name,
                record.type,
                record.status.value,
                record.agent_class,
                record.method_name,
                encode_jsonb(record.arguments),
                encode_jsonb(record.context),
                record.started_at,
                record.created_at,
            )

    async def find_by_uuid(self, uuid: str) -> TaskRecord | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            row = await connection.fetchrow(self._FETCH, uuid)
        if row is None:
            return None
        return self._row_to_record(row)

    async def update(self, record: TaskRecord) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            status = await connection.execute(
                self._UPDATE,
                record.uuid,
                record.status.value,
                encode_jsonb(record.result),
                record.error_message,
                record.error_trace,
                record.tokens_input,
                record.tokens_output,
                record.tokens_total,
                record.cost,
                record.duration_ms,
                record.model_used,
                record.completed_at,
                record.updated_at,
            )
        if status == "UPDATE 0":
            raise TelemetryPersistenceError(f"task record {record.uuid} does not exist")

    def _row_to_record(self, row: Any) -> TaskRecord:
        return TaskRecord(
            uuid=row["uuid"],
            name=row["name"],
            type=row["type"],
            agent_class=row["agent_class"],
            method_name=row["method_name"],
            status=TaskStatus(row["status"]),
            arguments=decode_jsonb(row["arguments"]) or {},
            context=decode_jsonb(row["context"]) or {},
            result=decode_jsonb(row["result"]),
            error_message=row["error_message"],
            error_trace=row["error_trace"],
            tokens_input=row["tokens_input"],
            tokens_output=row["tokens_output"],
            tokens_total=row["tokens_total"],
            cost=Decimal(row["cost"]),
            duration_ms=row["duration_ms"],
            model_used=row["model_used"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class TaskLifecycleStore:
    def __init__(self, repository: TaskRecordRepository, *, enabled: bool = True) -> None:
        self._repository = repository
        self._enabled = enabled

    @classmethod
    def from_settings(cls, settings: Settings) -> "TaskLifecycleStore":
        return cls(
            build_task_repository(settings),
            enabled=settings.telemetry.task_persistence_enabled,
        )

    @property
    def repository(self) -> TaskRecordRepository:
        return self._repository

    async def store_task_started(self, task_data: TaskData | Mapping[str, Any]) -> bool:
        if not self._enabled:
            return False
        try:
            data = _coerce(TaskData, task_data)
        except PayloadValidationError as exc:
            logger.warning("task_started_payload_invalid", error=str(exc))
            record_task_event("started", "invalid")
            return False
        try:
            await self._repository.create(TaskRecord.started(data))
        except Exception as exc:
            self._report_failure("started", data.uuid, exc)
            return False
        logger.info(
            "task_started_persisted",
            task_uuid=data.uuid,
            task_name=data.name,
            agent=data.agent_short_name,
        )
        record_task_event("started", "persisted")
        return True

    async def store_task_completed(self, task_result: TaskResult | Mapping[str, Any]) -> bool:
        return await self._store_outcome("completed", task_result)

    async def store_task_failed(self, task_result: TaskResult | Mapping[str, Any]) -> bool:
        return await self._store_outcome("failed", task_result)

    async def _store_outcome(self, event: str, task_result: TaskResult | Mapping[str, Any]) -> bool:
        if not self._enabled:
            return False
        try:
            outcome = _coerce(TaskResult, task_result)
        except PayloadValidationError as exc:
            logger.warning(f"task_{event}_payload_invalid", error=str(exc))
            record_task_event(event, "invalid")
            return False
        try:
            record = await self._repository.find_by_uuid(outcome.uuid)
            if record is None:
                logger.warning(f"task_not_found_for_{_EVENT_NOUNS[event]}", task_uuid=outcome.uuid)
                record_task_event(event, "missing")
                return False
            record.apply_outcome(outcome)
            if event == "completed":
                record.result = outcome.result
            else:
                record.status = TaskStatus.FAILED
                record.error_message = outcome.error_message
                record.error_trace = outcome.error_trace
            await self._repository.update(record)
        except Exception as exc:
            self._report_failure(event, outcome.uuid, exc)
            return False

        log = logger.info if event == "completed" else logger.error
        log(
            f"task_{event}_persisted",
            task_uuid=outcome.uuid,
            tokens_total=outcome.tokens_total,
            cost=outcome.formatted_cost,
            duration_seconds=outcome.duration_seconds,
            model=outcome.model_used or None,
            error_message=outcome.error_message if event == "failed" else None,
        )
        record_task_event(event, "persisted")
        return True

    def _report_failure(self, event: str, task_uuid: str, exc: Exception) -> None:
        logger.error(
            f"task_{event}_persist_failed",
            task_uuid=task_uuid,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        record_telemetry_failure(TELEMETRY_SINK)
        record_task_event(event, "failed")


_EVENT_NOUNS = {"completed": "completion", "failed": "failure"}


def _coerce(model: type[Any], payload: Any) -> Any:
    if isinstance(payload, model):
        return payload
    if not isinstance(payload, Mapping):
        raise PayloadValidationError(f"expected {model.__name__} or a mapping, got {type(payload).__name__}")
    try:
        return model.model_validate(dict(payload))
    except ValidationError as exc:
        raise PayloadValidationError(str(exc)) from exc


def build_task_repository(settings: Settings) -> TaskRecordRepository:
    if settings.environment == "test":
        logger.info("task_repository_in_memory", reason="test_environment")
        return InMemoryTaskRecordRepository()
    if asyncpg is None:
        logger.warning("asyncpg_not_available_task_repository")
        return InMemoryTaskRecordRepository()
    try:
        repository = PostgresTaskRecordRepository.from_settings(settings)
    except Exception as exc:  # pragma: no cover - connection issues
        logger.warning("task_repository_pool_failed", error=str(exc))
        return InMemoryTaskRecordRepository()
    logger.info("task_repository_postgres_enabled", environment=settings.environment)
    return repository


__all__ = [
    "InMemoryTaskRecordRepository",
    "PostgresTaskRecordRepository",
    "TaskLifecycleStore",
    "TaskRecordRepository",
    "build_task_repository",
]
