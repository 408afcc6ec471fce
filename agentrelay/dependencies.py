from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from .core.config import Settings, get_settings
from .core.correlation import CorrelationTracker
from .core.execution_context import ExecutionContextCarrier
from .core.logging import configure_logging, get_logger
from .orchestration.chat import ChatOrchestrator, profiles_from_registry
from .orchestration.task_store import TaskLifecycleStore
from .orchestration.tasks import TrackedTaskRunner
from .orchestration.worker import ChatStreamWorker
from .queue.manager import TaskQueueManager
from .services.ai_logger import AiLogService
from .services.broadcast import (
    ChatStreamChannel,
    GenerationProgressChannel,
    MercureHub,
    NotificationChannel,
    PubSubHub,
)
from .services.llm import AgentEngine, ChatModelAgentEngine
from .services.prompts import TemplatePromptRenderer
from .tools.registry import CapabilityRegistry

logger = get_logger(name=__name__)


@dataclass
class AgentRelayRuntime:
    settings: Settings
    correlation: CorrelationTracker
    carrier: ExecutionContextCarrier
    hub: PubSubHub
    chat_channel: ChatStreamChannel
    generation_channel: GenerationProgressChannel
    notifications: NotificationChannel
    task_store: TaskLifecycleStore
    ai_log: AiLogService
    orchestrator: ChatOrchestrator
    worker: ChatStreamWorker
    queue: TaskQueueManager

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["AgentRelayRuntime"]:
        async with self.queue.lifecycle():
            try:
                yield self
            finally:
                await _close_quietly(self.task_store.repository)
                await _close_quietly(self.ai_log.repository)
                if isinstance(self.hub, MercureHub):
                    await self.hub.aclose()


async def _close_quietly(resource: Any) -> None:
    close = getattr(resource, "close", None)
    if close is None:
        return
    try:
        await close()
    except Exception as exc:  # pragma: no cover - shutdown best effort
        logger.warning("runtime_close_failed", resource=type(resource).__name__, error=str(exc))


def build_runtime(
    settings: Settings | None = None,
    *,
    engine: AgentEngine | None = None,
    registry: CapabilityRegistry | None = None,
    hub: PubSubHub | None = None,
) -> AgentRelayRuntime:
    settings = settings or get_settings()
    if settings.environment != "test":
        configure_logging(settings.observability.log_level, json_logs=settings.observability.json_logs)

    correlation = CorrelationTracker()
    carrier = ExecutionContextCarrier()
    hub = hub or MercureHub.from_settings(settings)
    chat_channel = ChatStreamChannel(hub)
    notifications = NotificationChannel(hub)
    task_store = TaskLifecycleStore.from_settings(settings)
    ai_log = AiLogService.from_settings(settings, correlation)

    engine = engine or ChatModelAgentEngine.from_settings(settings)
    registry = registry or CapabilityRegistry()
    orchestrator = ChatOrchestrator(
        profiles_from_registry(
            registry,
            engine,
            settings.chat.prompt_templates,
            contexts=(settings.chat.default_context,),
        ),
        TemplatePromptRenderer.from_settings(settings),
        ai_log,
        default_context=settings.chat.default_context,
    )
    worker = ChatStreamWorker.from_settings(
        settings,
        orchestrator,
        chat_channel,
        carrier=carrier,
        correlation=correlation,
    )
    queue = TaskQueueManager.from_settings(
        settings,
        runner=TrackedTaskRunner(task_store, notifications, correlation),
    )
    logger.info("runtime_built", environment=settings.environment, contexts=orchestrator.contexts)
    return AgentRelayRuntime(
        settings=settings,
        correlation=correlation,
        carrier=carrier,
        hub=hub,
        chat_channel=chat_channel,
        generation_channel=GenerationProgressChannel(hub),
        notifications=notifications,
        task_store=task_store,
        ai_log=ai_log,
        orchestrator=orchestrator,
        worker=worker,
        queue=queue,
    )


__all__ = ["AgentRelayRuntime", "build_runtime"]
