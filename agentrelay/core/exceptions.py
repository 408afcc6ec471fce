from __future__ import annotations


class ChatError(RuntimeError):
    """Base class for failures surfaced to the caller of an agent turn."""

    status_code: int = 500


class ContextInvalidError(ChatError):
    """Raised when no identity or tenant can be resolved for the turn."""

    status_code = 400

    def __init__(self, reason: str) -> None:
        super().__init__(f"Invalid user context: {reason}")
        self.reason = reason


class AgentExecutionError(ChatError):
    """Raised when the agent engine (or anything around it) fails; the cause is chained."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Agent execution failed: {reason}")
        self.reason = reason


class StreamingNotImplementedError(ChatError, NotImplementedError):
    """Raised by the token-streaming entry point, which has no contract yet."""

    status_code = 501


class ToolRoundsExhaustedError(RuntimeError):
    """Raised by the agent engine when the model keeps requesting tools past the round limit."""


class TelemetryPersistenceError(RuntimeError):
    """Raised when a task record or AI log entry cannot be written."""


class BroadcastDeliveryError(RuntimeError):
    """Raised by hub clients when an update cannot be delivered."""


class PayloadValidationError(ValueError):
    """Raised when collector input or a task payload is malformed."""


__all__ = [
    "ChatError",
    "ContextInvalidError",
    "AgentExecutionError",
    "StreamingNotImplementedError",
    "ToolRoundsExhaustedError",
    "TelemetryPersistenceError",
    "BroadcastDeliveryError",
    "PayloadValidationError",
]
