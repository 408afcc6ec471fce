"""One agent turn: resolve tenant, render the prompt, call the engine, shape the answer."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from ..core.exceptions import AgentExecutionError, ChatError, ContextInvalidError, StreamingNotImplementedError
from ..core.execution_context import IdentityResolver
from ..core.logging import get_logger
from ..core.metrics import record_agent_turn
from ..schemas.chat import ChatResponse
from ..schemas.identity import Identity
from ..services.ai_logger import AiLogService
from ..services.collectors import SUGGESTED_ACTIONS_KEY, TABLE_DATA_KEY, TurnCollectors
from ..services.llm import AgentEngine, build_messages
from ..services.prompts import PromptRenderer
from ..tools.base import Capability
from ..tools.registry import CapabilityRegistry

logger = get_logger(name=__name__)

DEFAULT_CONTEXT = "general"


@dataclass(frozen=True)
class ChatProfile:
    """Binds a chat context to its prompt template, engine and capabilities."""

    name: str
    template: str
    engine: AgentEngine
    capabilities: tuple[Capability, ...] = field(default_factory=tuple)

    def describe_capabilities(self) -> list[dict[str, str]]:
        return [{"name": capability.name, "description": capability.description} for capability in self.capabilities]


def profiles_from_registry(
    registry: CapabilityRegistry,
    engine: AgentEngine,
    templates: Mapping[str, str],
    *,
    contexts: Iterable[str] = (DEFAULT_CONTEXT,),
) -> list[ChatProfile]:
    """One profile per context; a context without its own template uses ``general``."""
    names = list(dict.fromkeys([*contexts, *registry.contexts()]))
    return [
        ChatProfile(
            name=name,
            template=name if name in templates else DEFAULT_CONTEXT,
            engine=engine,
            capabilities=tuple(registry.for_context(name)),
        )
        for name in names
    ]


class ChatOrchestrator:
    def __init__(
        self,
        profiles: Iterable[ChatProfile],
        renderer: PromptRenderer,
        ai_log: AiLogService,
        *,
        default_context: str = DEFAULT_CONTEXT,
    ) -> None:
        self._profiles = {profile.name: profile for profile in profiles}
        self._renderer = renderer
        self._ai_log = ai_log
        self._default_context = default_context

    @property
    def contexts(self) -> list[str]:
        return list(self._profiles)

    async def process_question(
        self,
        question: str,
        identity: Identity,
        *,
        resolver: IdentityResolver,
        context: str | None = None,
        collectors: TurnCollectors | None = None,
        message_id: str | None = None,
    ) -> ChatResponse:
        """Run one turn for ``identity``.

        ``resolver`` is the one chosen at the request or job entry point; it
        supplies the tenant here and the identity seen by capabilities.
        ``collectors`` are reset before the turn starts.
        """
        context_name = context or self._default_context
        turn = collectors if collectors is not None else TurnCollectors()
        turn.begin_turn()
        started = time.perf_counter()

        try:
            tenant = resolver.resolve_tenant()
            if tenant is None:
                raise ContextInvalidError("no active tenant for this user")
            profile = self._profile(context_name)

            bound = [capability.bind(resolver, turn, ai_log=self._ai_log) for capability in profile.capabilities]
            system_prompt = self._renderer.render(
                profile.template,
                identity,
                tenant,
                profile.describe_capabilities(),
            )
            logger.info(
                "chat_prompt_rendered",
                user_id=identity.id,
                tenant_id=tenant.id,
                context=context_name,
                prompt_length=len(system_prompt),
            )

            result = await profile.engine.call(build_messages(system_prompt, question), capabilities=bound)
            duration_ms = int((time.perf_counter() - started) * 1000)

            tools_used = turn.invocations.get_tools_used()
            aggregated = turn.results.get_aggregated_metadata()
            metadata: dict[str, Any] = {
                "user_id": identity.id,
                "tenant_id": tenant.id,
                "context": context_name,
                "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds"),
                "model": result.model,
                "token_usage": result.token_usage.model_dump() if result.token_usage is not None else None,
                SUGGESTED_ACTIONS_KEY: aggregated.get(SUGGESTED_ACTIONS_KEY, []),
                TABLE_DATA_KEY: aggregated.get(TABLE_DATA_KEY),
            }
            response = ChatResponse.from_agent_response(
                result.content,
                metadata=metadata,
                duration_ms=duration_ms,
                tools_used=tools_used,
                message_id=message_id,
            )
        except ChatError as exc:
            self._finish_failed(context_name, started, "rejected" if isinstance(exc, ContextInvalidError) else "failed")
            await self._ai_log.log_error(identity.id, question, str(exc), {"context": context_name})
            raise
        except Exception as exc:
            logger.error(
                "chat_turn_failed",
                user_id=identity.id,
                context=context_name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self._finish_failed(context_name, started, "failed")
            await self._ai_log.log_error(identity.id, question, str(exc), {"context": context_name})
            raise AgentExecutionError(str(exc)) from exc

        await self._ai_log.log_query(
            identity.id,
            question,
            response.answer,
            duration_ms,
            {"context": context_name, "model": result.model, "tools_used": tools_used},
        )
        record_agent_turn(context_name, "success", duration_ms / 1000)
        logger.info(
            "chat_turn_completed",
            user_id=identity.id,
            context=context_name,
            duration_ms=duration_ms,
            tools_used=len(tools_used),
        )
        return response

    async def stream_question(self, *args: Any, **kwargs: Any) -> ChatResponse:
        """Token-level streaming has no contract yet; answers are chunked by ``ChatStreamWorker``."""
        raise StreamingNotImplementedError("Token streaming is not implemented")

    def _profile(self, context: str) -> ChatProfile:
        profile = self._profiles.get(context)
        if profile is None:
            allowed = ", ".join(self._profiles)
            raise ContextInvalidError(f'context "{context}" is not supported. Allowed contexts: {allowed}')
        return profile

    @staticmethod
    def _finish_failed(context: str, started: float, status: str) -> None:
        record_agent_turn(context, status, time.perf_counter() - started)


__all__ = ["ChatOrchestrator", "ChatProfile", "DEFAULT_CONTEXT", "profiles_from_registry"]
