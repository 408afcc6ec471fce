from __future__ import annotations

from typing import TYPE_CHECKING, Any, Mapping, Protocol, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from ..core.config import Settings
from ..core.exceptions import ToolRoundsExhaustedError
from ..core.logging import get_logger
from ..schemas.chat import AgentResult, TokenUsage
from ..utils.json_encoding import encode_json

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..tools.base import BoundCapability

try:  # pragma: no cover - optional heavy dependency
    from langchain_ollama import ChatOllama
except ModuleNotFoundError:  # pragma: no cover
    ChatOllama = None  # type: ignore[misc, assignment]

logger = get_logger(name=__name__)

DEFAULT_MAX_TOOL_ROUNDS = 4


def _build_base_url(host: str, port: int) -> str:
    base = host.rstrip("/")
    if ":" in base.rsplit("/", maxsplit=1)[-1]:
        return base
    return f"{base}:{port}"


def build_messages(system_prompt: str, question: str) -> list[BaseMessage]:
    return [SystemMessage(content=system_prompt), HumanMessage(content=question)]


class AgentEngine(Protocol):
    async def call(
        self,
        messages: Sequence[BaseMessage],
        *,
        capabilities: Sequence["BoundCapability"] = (),
    ) -> AgentResult:
        ...


def _usage_from_message(message: AIMessage) -> TokenUsage | None:
    usage = getattr(message, "usage_metadata", None)
    if usage:
        return TokenUsage(
            prompt_tokens=int(usage.get("input_tokens", 0) or 0),
            completion_tokens=int(usage.get("output_tokens", 0) or 0),
            total_tokens=int(usage.get("total_tokens", 0) or 0),
        )
    metadata = getattr(message, "response_metadata", None) or {}
    raw = metadata.get("token_usage")
    if isinstance(raw, Mapping):
        return TokenUsage(
            prompt_tokens=int(raw.get("prompt_tokens", 0) or 0),
            completion_tokens=int(raw.get("completion_tokens", 0) or 0),
            total_tokens=int(raw.get("total_tokens", 0) or 0),
        )
    return None


def _merge_usage(left: TokenUsage | None, right: TokenUsage | None) -> TokenUsage | None:
    if left is None:
        return right
    if right is None:
        return left
    return TokenUsage(
        prompt_tokens=left.prompt_tokens + right.prompt_tokens,
        completion_tokens=left.completion_tokens + right.completion_tokens,
        total_tokens=left.total_tokens + right.total_tokens,
    )


class ChatModelAgentEngine:
    """Runs one agent turn against a LangChain chat model.

    When capabilities are supplied and the model supports tool binding, tool
    calls requested by the model are executed and fed back until the model
    answers in plain text. A model still requesting tools after
    ``max_tool_rounds`` rounds fails the turn with :class:`ToolRoundsExhaustedError`.
    """

    def __init__(self, client: Any, *, model: str | None = None, max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS) -> None:
        self._client = client
        self._model = model
        self._max_tool_rounds = max_tool_rounds

    @classmethod
    def from_settings(cls, settings: Settings, *, client: Any | None = None) -> "ChatModelAgentEngine":
        if client is None:
            if ChatOllama is None:  # pragma: no cover - handled in runtime logs
                raise RuntimeError("langchain_ollama is not installed")
            base_url = _build_base_url(settings.ollama.host, settings.ollama.port)
            client = ChatOllama(
                model=settings.ollama.model,
                base_url=base_url,
                temperature=settings.ollama.temperature,
            )
        return cls(client, model=settings.ollama.model)

    async def call(
        self,
        messages: Sequence[BaseMessage],
        *,
        capabilities: Sequence["BoundCapability"] = (),
    ) -> AgentResult:
        history: list[BaseMessage] = list(messages)
        by_name = {capability.name: capability for capability in capabilities}
        client = self._client
        if by_name and hasattr(client, "bind_tools"):
            client = client.bind_tools([capability.as_tool_schema() for capability in capabilities])

        usage: TokenUsage | None = None
        rounds = 0
        while True:
            response: AIMessage = await client.ainvoke(history)
            usage = _merge_usage(usage, _usage_from_message(response))
            tool_calls = getattr(response, "tool_calls", None) or []
            if not tool_calls or not by_name:
                break
            if rounds >= self._max_tool_rounds:
                logger.error(
                    "agent_tool_rounds_exhausted",
                    max_tool_rounds=self._max_tool_rounds,
                    pending_tools=[tool_call.get("name") for tool_call in tool_calls],
                )
                raise ToolRoundsExhaustedError(
                    f"model still requested tools after {self._max_tool_rounds} tool rounds"
                )
            rounds += 1
            history.append(response)
            for tool_call in tool_calls:
                history.append(await self._run_tool_call(tool_call, by_name))

        metadata = dict(getattr(response, "response_metadata", None) or {})
        model = metadata.get("model") or metadata.get("model_name") or self._model
        return AgentResult(content=response.content, model=model, token_usage=usage, metadata=metadata)

    async def _run_tool_call(self, tool_call: Mapping[str, Any], by_name: Mapping[str, "BoundCapability"]) -> ToolMessage:
        name = tool_call.get("name", "")
        call_id = tool_call.get("id") or name
        capability = by_name.get(name)
        if capability is None:
            logger.warning("agent_unknown_tool_requested", tool=name)
            payload: Any = {"success": False, "error": f"Unknown tool: {name}"}
        else:
            payload = await capability(**dict(tool_call.get("args") or {}))
        return ToolMessage(content=encode_json(payload), tool_call_id=call_id, name=name)


__all__ = ["AgentEngine", "ChatModelAgentEngine", "build_messages"]
