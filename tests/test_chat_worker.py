from __future__ import annotations

import pytest

from agentrelay.core.correlation import CorrelationTracker
from agentrelay.core.exceptions import AgentExecutionError, ContextInvalidError
from agentrelay.core.execution_context import ExecutionContextCarrier
from agentrelay.orchestration.chat import ChatOrchestrator, ChatProfile
from agentrelay.orchestration.worker import (
    GENERIC_STREAM_ERROR,
    ChatStreamMessage,
    ChatStreamWorker,
    iter_chunks,
)
from agentrelay.schemas.identity import Identity, Tenant
from agentrelay.services.ai_logger import AiLogService, InMemoryAiLogRepository
from agentrelay.services.broadcast import ChatStreamChannel
from agentrelay.services.prompts import TemplatePromptRenderer
from tests.helpers.stubs import RecordingHub, StubAgentEngine

ANSWER = "Stock is low for 3 products: bolts, nuts and washers."


def _worker(
    engine: StubAgentEngine,
    hub: RecordingHub,
    correlation: CorrelationTracker,
    carrier: ExecutionContextCarrier,
) -> ChatStreamWorker:
    orchestrator = ChatOrchestrator(
        [ChatProfile(name="general", template="general", engine=engine)],
        TemplatePromptRenderer({"general": "Help {user_name} of {tenant_name}."}),
        AiLogService(InMemoryAiLogRepository(), correlation),
    )
    return ChatStreamWorker(
        orchestrator,
        ChatStreamChannel(hub),
        carrier=carrier,
        correlation=correlation,
        chunk_size=20,
        chunk_delay_ms=0,
    )


def _message(identity: Identity, tenant: Tenant, **overrides: object) -> ChatStreamMessage:
    fields = {
        "question": "Which products are low on stock?",
        "identity": identity,
        "tenant": tenant,
        "conversation_id": "conv-7",
        "message_id": "msg-7",
        "correlation_id": "req_1_cafebabe",
    }
    fields.update(overrides)
    return ChatStreamMessage(**fields)


def test_iter_chunks_splits_by_size() -> None:
    assert list(iter_chunks("abcdefg", 3)) == ["abc", "def", "g"]
    assert list(iter_chunks("", 3)) == []


@pytest.mark.asyncio
async def test_streams_start_chunks_and_complete(
    identity: Identity, tenant: Tenant, hub: RecordingHub, correlation: CorrelationTracker
) -> None:
    carrier = ExecutionContextCarrier()
    worker = _worker(StubAgentEngine(ANSWER), hub, correlation, carrier)

    response = await worker.handle(_message(identity, tenant))

    assert response.answer == ANSWER
    events = hub.events("chat/conv-7")
    assert [event["type"] for event in events] == ["start", "chunk", "chunk", "chunk", "complete"]
    assert "".join(event["chunk"] for event in events if event["type"] == "chunk") == ANSWER
    assert all(event["messageId"] == "msg-7" for event in events)

    metadata = events[-1]["metadata"]
    assert metadata["user_id"] == 42
    assert metadata["tenant_id"] == 7
    assert metadata["answer_length"] == len(ANSWER)
    assert metadata["model"] == "stub-model"
    assert metadata["correlation_id"] == "req_1_cafebabe"
    assert metadata["tools_used"] == []


@pytest.mark.asyncio
async def test_context_is_cleared_after_job(
    identity: Identity, tenant: Tenant, hub: RecordingHub, correlation: CorrelationTracker
) -> None:
    carrier = ExecutionContextCarrier()
    worker = _worker(StubAgentEngine(ANSWER), hub, correlation, carrier)

    await worker.handle(_message(identity, tenant))

    assert carrier.has_context() is False
    assert correlation.get() is None


@pytest.mark.asyncio
async def test_agent_failure_publishes_error_and_reraises(
    identity: Identity, tenant: Tenant, hub: RecordingHub, correlation: CorrelationTracker
) -> None:
    carrier = ExecutionContextCarrier()
    worker = _worker(StubAgentEngine(error=TimeoutError("model timed out")), hub, correlation, carrier)

    with pytest.raises(AgentExecutionError):
        await worker.handle(_message(identity, tenant))

    events = hub.events("chat/conv-7")
    assert [event["type"] for event in events] == ["start", "error"]
    assert events[-1]["error"] == "Agent execution failed: model timed out"
    assert carrier.has_context() is False


@pytest.mark.asyncio
async def test_unknown_context_publishes_error(
    identity: Identity, tenant: Tenant, hub: RecordingHub, correlation: CorrelationTracker
) -> None:
    worker = _worker(StubAgentEngine(), hub, correlation, ExecutionContextCarrier())

    with pytest.raises(ContextInvalidError):
        await worker.handle(_message(identity, tenant, context="payroll"))

    assert hub.types("chat/conv-7") == ["start", "error"]


@pytest.mark.asyncio
async def test_unexpected_failure_publishes_generic_error(
    identity: Identity,
    tenant: Tenant,
    hub: RecordingHub,
    correlation: CorrelationTracker,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    worker = _worker(StubAgentEngine(ANSWER), hub, correlation, ExecutionContextCarrier())

    def broken_chunks(text: str, size: int):  # noqa: ANN202
        raise RuntimeError("chunker broke")

    monkeypatch.setattr("agentrelay.orchestration.worker.iter_chunks", broken_chunks)

    with pytest.raises(RuntimeError, match="chunker broke"):
        await worker.handle(_message(identity, tenant))

    events = hub.events("chat/conv-7")
    assert events[-1]["type"] == "error"
    assert events[-1]["error"] == GENERIC_STREAM_ERROR


@pytest.mark.asyncio
async def test_hub_outage_does_not_fail_the_job(
    identity: Identity, tenant: Tenant, correlation: CorrelationTracker
) -> None:
    worker = _worker(StubAgentEngine(ANSWER), RecordingHub(fail=True), correlation, ExecutionContextCarrier())

    response = await worker.handle(_message(identity, tenant))

    assert response.answer == ANSWER


def test_message_requires_question(identity: Identity, tenant: Tenant) -> None:
    with pytest.raises(ValueError):
        _message(identity, tenant, question="")
