from __future__ import annotations

import asyncio
from typing import Any, Iterator
from uuid import uuid4

from pydantic import BaseModel, Field

from ..core.config import Settings
from ..core.correlation import CorrelationTracker
from ..core.exceptions import ChatError
from ..core.execution_context import ExecutionContextCarrier, select_identity_resolver
from ..core.logging import get_logger
from ..schemas.chat import ChatResponse
from ..schemas.identity import Identity, Tenant
from ..services.broadcast import ChatStreamChannel
from ..services.collectors import TurnCollectors
from .chat import DEFAULT_CONTEXT, ChatOrchestrator

logger = get_logger(name=__name__)

GENERIC_STREAM_ERROR = "Sorry, something went wrong while generating the answer."
CANCELLED_STREAM_ERROR = "The answer generation was cancelled."


class ChatStreamMessage(BaseModel):
    """Queued request to answer a question in the background and stream the answer."""

    question: str = Field(..., min_length=1)
    identity: Identity
    tenant: Tenant
    conversation_id: str = Field(..., min_length=1)
    context: str = DEFAULT_CONTEXT
    message_id: str = Field(default_factory=lambda: str(uuid4()))
    correlation_id: str | None = None


def iter_chunks(text: str, size: int) -> Iterator[str]:
    for start in range(0, len(text), size):
        yield text[start : start + size]


class ChatStreamWorker:
    """Answers a :class:`ChatStreamMessage` and streams it on the conversation topic.

    The job has no web session, so the identity and tenant copied into the
    message are installed on the carrier for the duration of the job.
    """

    def __init__(
        self,
        orchestrator: ChatOrchestrator,
        channel: ChatStreamChannel,
        *,
        carrier: ExecutionContextCarrier,
        correlation: CorrelationTracker,
        chunk_size: int = 50,
        chunk_delay_ms: int = 30,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self._orchestrator = orchestrator
        self._channel = channel
        self._carrier = carrier
        self._correlation = correlation
        self._chunk_size = chunk_size
        self._chunk_delay = max(0, chunk_delay_ms) / 1000

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        orchestrator: ChatOrchestrator,
        channel: ChatStreamChannel,
        *,
        carrier: ExecutionContextCarrier,
        correlation: CorrelationTracker,
    ) -> "ChatStreamWorker":
        return cls(
            orchestrator,
            channel,
            carrier=carrier,
            correlation=correlation,
            chunk_size=settings.chat.chunk_size,
            chunk_delay_ms=settings.chat.chunk_delay_ms,
        )

    async def handle(self, message: ChatStreamMessage) -> ChatResponse:
        with self._correlation.scope(message.correlation_id) as correlation_id:
            with self._carrier.scope(message.identity, message.tenant):
                logger.info(
                    "chat_stream_job_started",
                    conversation_id=message.conversation_id,
                    message_id=message.message_id,
                    context=message.context,
                    user_id=message.identity.id,
                    tenant_id=message.tenant.id,
                )
                return await self._run(message, correlation_id)

    async def _run(self, message: ChatStreamMessage, correlation_id: str) -> ChatResponse:
        conversation_id = message.conversation_id
        message_id = message.message_id
        collectors = TurnCollectors()
        await self._channel.publish_start(conversation_id, message_id, message.context)
        try:
            response = await self._orchestrator.process_question(
                message.question,
                message.identity,
                resolver=select_identity_resolver(carrier=self._carrier),
                context=message.context,
                collectors=collectors,
                message_id=message_id,
            )
            for chunk in iter_chunks(response.answer, self._chunk_size):
                await self._channel.publish_chunk(conversation_id, message_id, chunk)
                if self._chunk_delay:
                    await asyncio.sleep(self._chunk_delay)

            metadata: dict[str, Any] = {
                "user_id": message.identity.id,
                "tenant_id": message.tenant.id,
                "context": message.context,
                "duration_ms": response.duration_ms,
                "tools_used": response.tools_used,
                "answer_length": len(response.answer),
                "model": response.metadata.get("model"),
                "token_usage": response.metadata.get("token_usage"),
                "correlation_id": correlation_id,
            }
            metadata.update(collectors.results.get_aggregated_metadata())
            await self._channel.publish_complete(conversation_id, message_id, metadata)
        except asyncio.CancelledError:
            logger.warning("chat_stream_job_cancelled", conversation_id=conversation_id, message_id=message_id)
            await self._channel.publish_error(conversation_id, message_id, CANCELLED_STREAM_ERROR)
            raise
        except ChatError as exc:
            await self._channel.publish_error(conversation_id, message_id, str(exc))
            raise
        except Exception as exc:
            logger.error(
                "chat_stream_job_failed",
                conversation_id=conversation_id,
                message_id=message_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            await self._channel.publish_error(conversation_id, message_id, GENERIC_STREAM_ERROR)
            raise
        logger.info(
            "chat_stream_job_completed",
            conversation_id=conversation_id,
            message_id=message_id,
            answer_length=len(response.answer),
        )
        return response


__all__ = ["ChatStreamMessage", "ChatStreamWorker", "iter_chunks"]
