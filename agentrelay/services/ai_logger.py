from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Protocol
from uuid import UUID, uuid4

from ..core.config import Settings
from ..core.correlation import CorrelationTracker
from ..core.logging import get_logger
from ..core.metrics import record_telemetry_failure
from ..utils.asyncpg_helpers import PoolBackedRepository, asyncpg, create_pool_from_settings
from ..utils.json_encoding import encode_jsonb

logger = get_logger(name=__name__)

TELEMETRY_SINK = "ai_log"


class AiLogAction(str, Enum):
    QUERY = "query"
    TOOL_CALL = "tool_call"
    ERROR = "error"


@dataclass(slots=True)
class AiLogEntry:
    user_id: str
    action: AiLogAction
    input: str
    correlation_id: str
    output: str | None = None
    duration_ms: int = 0
    metadata: dict[str, Any] | None = None
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AiLogRepository(Protocol):
    async def add(self, entry: AiLogEntry) -> None:
        ...


class InMemoryAiLogRepository:
    def __init__(self) -> None:
        self.entries: list[AiLogEntry] = []
        self._lock = asyncio.Lock()

    async def add(self, entry: AiLogEntry) -> None:
        async with self._lock:
            self.entries.append(entry)


class PostgresAiLogRepository(PoolBackedRepository):
    _INSERT = """
        INSERT INTO ai_logs(
            id,
            user_id,
            action,
            input,
            output,
            duration_ms,
            correlation_id,
            metadata,
            created_at
        ) VALUES($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9)
    """

    def __init__(self, pool: Any) -> None:
        if asyncpg is None:  # pragma: no cover - guarded by build_ai_log_repository
            raise RuntimeError("asyncpg is required for PostgresAiLogRepository")
        super().__init__(pool)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PostgresAiLogRepository":
        return cls(create_pool_from_settings(settings))

    async def add(self, entry: AiLogEntry) -> None:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            await connection.execute(
                self._INSERT,
                entry.id,
                entry.user_id,
                entry.action.value,
                entry.input,
                entry.output,
                entry.duration_ms,
                entry.correlation_id,
                encode_jsonb(entry.metadata),
                entry.created_at,
            )


class AiLogService:
    """Persist one row per agent query, capability call, or agent error.

    Entries carry the current correlation id. A failed write is logged and
    counted, never raised to the caller.
    """

    def __init__(
        self,
        repository: AiLogRepository,
        correlation: CorrelationTracker,
        *,
        enabled: bool = True,
    ) -> None:
        self._repository = repository
        self._correlation = correlation
        self._enabled = enabled

    @property
    def repository(self) -> AiLogRepository:
        return self._repository

    @classmethod
    def from_settings(cls, settings: Settings, correlation: CorrelationTracker) -> "AiLogService":
        return cls(
            build_ai_log_repository(settings),
            correlation,
            enabled=settings.telemetry.ai_log_enabled,
        )

    async def log_query(
        self,
        user_id: Any,
        question: str,
        answer: str,
        duration_ms: int,
        metadata: Mapping[str, Any] | None = None,
    ) -> bool:
        return await self._write(
            AiLogAction.QUERY,
            user_id,
            input=question,
            output=answer,
            duration_ms=duration_ms,
            metadata=metadata,
        )

    async def log_tool_call(
        self,
        user_id: Any,
        tool_name: str,
        arguments: Mapping[str, Any],
        result: Any,
        duration_ms: int,
    ) -> bool:
        return await self._write(
            AiLogAction.TOOL_CALL,
            user_id,
            input=encode_jsonb({"tool": tool_name, "params": dict(arguments)}) or "",
            output=encode_jsonb(result),
            duration_ms=duration_ms,
            metadata={"tool_name": tool_name},
        )

    async def log_error(
        self,
        user_id: Any,
        question: str,
        error: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> bool:
        return await self._write(
            AiLogAction.ERROR,
            user_id,
            input=question,
            output=error,
            metadata=metadata,
        )

    async def _write(
        self,
        action: AiLogAction,
        user_id: Any,
        *,
        input: str,
        output: str | None,
        duration_ms: int = 0,
        metadata: Mapping[str, Any] | None = None,
    ) -> bool:
        if not self._enabled:
            return False
        entry = AiLogEntry(
            user_id=str(user_id),
            action=action,
            input=input,
            output=output,
            duration_ms=max(0, int(duration_ms)),
            correlation_id=self._correlation.get_or_generate(),
            metadata=dict(metadata) if metadata is not None else None,
        )
        try:
            await self._repository.add(entry)
        except Exception as exc:
            logger.error(
                "ai_log_persist_failed",
                action=action.value,
                user_id=entry.user_id,
                error=str(exc),
            )
            record_telemetry_failure(TELEMETRY_SINK)
            return False
        logger.debug("ai_log_persisted", action=action.value, user_id=entry.user_id, entry_id=str(entry.id))
        return True


def build_ai_log_repository(settings: Settings) -> AiLogRepository:
    if settings.environment == "test":
        logger.info("ai_log_repository_in_memory", reason="test_environment")
        return InMemoryAiLogRepository()
    if asyncpg is None:
        logger.warning("asyncpg_not_available_ai_log_repository")
        return InMemoryAiLogRepository()
    try:
        repository = PostgresAiLogRepository.from_settings(settings)
    except Exception as exc:  # pragma: no cover - connection issues
        logger.warning("ai_log_repository_pool_failed", error=str(exc))
        return InMemoryAiLogRepository()
    logger.info("ai_log_repository_postgres_enabled", environment=settings.environment)
    return repository


__all__ = [
    "AiLogAction",
    "AiLogEntry",
    "AiLogRepository",
    "AiLogService",
    "InMemoryAiLogRepository",
    "PostgresAiLogRepository",
    "build_ai_log_repository",
]
