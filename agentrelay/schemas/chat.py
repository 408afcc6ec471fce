from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

INVALID_AGENT_ANSWER = "The agent returned an invalid response."


class TokenUsage(BaseModel):
    prompt_tokens: int = Field(0, ge=0)
    completion_tokens: int = Field(0, ge=0)
    total_tokens: int = Field(0, ge=0)


class AgentResult(BaseModel):
    """What the agent engine hands back for one call."""

    content: Any = None
    model: str | None = None
    token_usage: TokenUsage | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ChatResponse(BaseModel):
    answer: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    tools_used: list[str] = Field(default_factory=list)
    proof_cards: list[dict[str, Any]] = Field(default_factory=list)
    duration_ms: int = Field(0, ge=0)
    message_id: str | None = None
    raw_response: dict[str, Any] = Field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"raw_response"})

    @classmethod
    def from_agent_response(
        cls,
        agent_response: Any,
        *,
        metadata: dict[str, Any] | None = None,
        duration_ms: int = 0,
        tools_used: list[str] | None = None,
        message_id: str | None = None,
    ) -> "ChatResponse":
        answer = agent_response if isinstance(agent_response, str) else INVALID_AGENT_ANSWER
        raw = dict(agent_response) if isinstance(agent_response, dict) else {"raw": agent_response}
        return cls(
            answer=answer,
            metadata=dict(metadata or {}),
            tools_used=list(tools_used or []),
            duration_ms=max(0, duration_ms),
            message_id=message_id,
            raw_response=raw,
        )


__all__ = ["AgentResult", "ChatResponse", "INVALID_AGENT_ANSWER", "TokenUsage"]
