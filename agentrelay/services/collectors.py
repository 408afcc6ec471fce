from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from ..core.exceptions import PayloadValidationError
from ..core.logging import get_logger

logger = get_logger(name=__name__)

SUGGESTED_ACTIONS_KEY = "suggested_actions"
TABLE_DATA_KEY = "table_data"


def _require_tool_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise PayloadValidationError("tool name must be a non-empty string")
    return name


class ToolInvocationCollector:
    """Names of the capabilities invoked during one agent turn, first-seen order, no repeats.

    Call :meth:`reset` at the start of every turn; nothing else clears it.
    """

    def __init__(self) -> None:
        self._names: dict[str, None] = {}

    def add_tool_call(self, name: str) -> None:
        try:
            key = _require_tool_name(name)
        except PayloadValidationError as exc:
            logger.warning("tool_call_rejected", error=str(exc), tool=repr(name))
            return
        self._names.setdefault(key, None)

    def get_tools_used(self) -> list[str]:
        return list(self._names)

    def count(self) -> int:
        return len(self._names)

    def reset(self) -> None:
        self._names = {}


@dataclass(frozen=True, slots=True)
class ToolInvocationResult:
    capability_name: str
    result_payload: Mapping[str, Any]


class ToolResultCollector:
    """Full capability results for one turn, kept in call order including repeats."""

    def __init__(self) -> None:
        self._results: list[ToolInvocationResult] = []

    def add_tool_result(self, name: str, result: Mapping[str, Any]) -> None:
        try:
            key = _require_tool_name(name)
            if not isinstance(result, Mapping):
                raise PayloadValidationError("tool result must be a mapping")
        except PayloadValidationError as exc:
            logger.warning("tool_result_rejected", error=str(exc), tool=repr(name))
            return
        self._results.append(ToolInvocationResult(capability_name=key, result_payload=dict(result)))

    @property
    def results(self) -> list[ToolInvocationResult]:
        return list(self._results)

    def get_aggregated_metadata(self) -> dict[str, Any]:
        """Merge the turn's results into the metadata sent alongside the answer.

        ``suggested_actions`` concatenates every result's list in call order and is
        omitted when empty. ``table_data`` is taken from the first result that has
        one; a turn renders a single table, so later tables are dropped.
        """
        metadata: dict[str, Any] = {}
        suggested_actions: list[Any] = []
        table_data: Any = None
        for entry in self._results:
            payload = entry.result_payload
            actions = payload.get(SUGGESTED_ACTIONS_KEY)
            if isinstance(actions, (list, tuple)):
                suggested_actions.extend(actions)
            candidate = payload.get(TABLE_DATA_KEY)
            if candidate is None:
                continue
            if table_data is None:
                table_data = candidate
            else:
                logger.debug("tool_table_data_dropped", tool=entry.capability_name)

        if suggested_actions:
            metadata[SUGGESTED_ACTIONS_KEY] = suggested_actions
        if table_data is not None:
            metadata[TABLE_DATA_KEY] = table_data
        return metadata

    def count(self) -> int:
        return len(self._results)

    def reset(self) -> None:
        self._results = []


@dataclass
class TurnCollectors:
    """Both per-turn collectors, reset together."""

    invocations: ToolInvocationCollector = field(default_factory=ToolInvocationCollector)
    results: ToolResultCollector = field(default_factory=ToolResultCollector)

    def begin_turn(self) -> None:
        self.invocations.reset()
        self.results.reset()

    def record(self, name: str, result: Mapping[str, Any]) -> None:
        self.invocations.add_tool_call(name)
        self.results.add_tool_result(name, result)


__all__ = [
    "SUGGESTED_ACTIONS_KEY",
    "TABLE_DATA_KEY",
    "ToolInvocationCollector",
    "ToolInvocationResult",
    "ToolResultCollector",
    "TurnCollectors",
]
