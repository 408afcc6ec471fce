from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class EventType(str, Enum):
    START = "start"
    CHUNK = "chunk"
    PROGRESS = "progress"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (EventType.COMPLETE, EventType.ERROR)


@dataclass(frozen=True, slots=True)
class HubUpdate:
    """One message for the pub/sub hub: JSON text on one or more topics."""

    topics: tuple[str, ...]
    data: str
    private: bool = False
    event_type: str | None = None


@dataclass(frozen=True, slots=True)
class PublishOutcome:
    """Result of a best-effort publish. ``error`` is set only when delivery failed."""

    delivered: bool
    topic: str
    event_type: str
    error: str | None = None

    def __bool__(self) -> bool:
        return self.delivered


__all__ = ["EventType", "HubUpdate", "PublishOutcome"]
