from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskData(BaseModel):
    """Descriptor sent by the scheduler when an AI task starts."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    uuid: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    agent_class: str = Field(..., min_length=1)
    method_name: str = Field(..., min_length=1)
    arguments: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=_utcnow)

    @property
    def agent_short_name(self) -> str:
        return self.agent_class.replace("\\", ".").rsplit(".", 1)[-1]


class TaskResult(BaseModel):
    """Outcome sent by the scheduler when an AI task completes or fails."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    uuid: str = Field(..., min_length=1)
    status: TaskStatus
    result: dict[str, Any] | None = None
    error_message: str | None = None
    error_trace: str | None = None
    tokens_input: int = Field(0, ge=0)
    tokens_output: int = Field(0, ge=0)
    tokens_total: int = Field(0, ge=0)
    cost: Decimal = Field(Decimal("0"), ge=0)
    duration_ms: int = Field(0, ge=0)
    model_used: str = ""
    completed_at: datetime = Field(default_factory=_utcnow)

    @field_validator("status", mode="before")
    @classmethod
    def _lowercase_status(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def duration_seconds(self) -> float:
        return round(self.duration_ms / 1000, 2)

    @property
    def formatted_cost(self) -> str:
        return f"{self.cost:.4f}"


@dataclass(slots=True)
class TaskRecord:
    uuid: str
    name: str
    type: str
    agent_class: str
    method_name: str
    status: TaskStatus = TaskStatus.PROCESSING
    arguments: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    result: dict[str, Any] | None = None
    error_message: str | None = None
    error_trace: str | None = None
    tokens_input: int = 0
    tokens_output: int = 0
    tokens_total: int = 0
    cost: Decimal = Decimal("0")
    duration_ms: int = 0
    model_used: str = ""
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime | None = None

    @classmethod
    def started(cls, data: TaskData) -> "TaskRecord":
        return cls(
            uuid=data.uuid,
            name=data.name,
            type=data.type,
            agent_class=data.agent_class,
            method_name=data.method_name,
            status=TaskStatus.PROCESSING,
            arguments=dict(data.arguments),
            context=dict(data.context),
            started_at=data.started_at,
        )

    def apply_outcome(self, outcome: TaskResult) -> None:
        """Copy status, usage metrics and completion time from ``outcome``."""
        self.status = outcome.status
        self.tokens_input = outcome.tokens_input
        self.tokens_output = outcome.tokens_output
        self.tokens_total = outcome.tokens_total
        self.cost = outcome.cost
        self.duration_ms = outcome.duration_ms
        self.model_used = outcome.model_used
        self.completed_at = outcome.completed_at
        self.updated_at = _utcnow()


__all__ = ["TaskData", "TaskRecord", "TaskResult", "TaskStatus"]
