from __future__ import annotations

from urllib.parse import parse_qs

import httpx
import pytest
from prometheus_client import REGISTRY
from structlog.testing import capture_logs

from agentrelay.core.exceptions import BroadcastDeliveryError
from agentrelay.core.security import CapabilityTokenIssuer, decode_capability_token
from agentrelay.schemas.events import EventType, HubUpdate
from agentrelay.services.broadcast import (
    ChatStreamChannel,
    GenerationProgressChannel,
    MercureHub,
    NotificationChannel,
)
from tests.helpers.stubs import RecordingHub

SECRET = "m" * 32
TASK_UUID = "3f2b8c1e-4a5d-4e6f-9a7b-1c2d3e4f5a6b"


def _fixed_clock() -> str:
    return "2026-10-17T09:30:00+00:00"


@pytest.mark.asyncio
async def test_chat_stream_happy_path(hub: RecordingHub) -> None:
    channel = ChatStreamChannel(hub, clock=_fixed_clock)

    await channel.publish_start("conv-1", "msg-1", "general")
    await channel.publish_chunk("conv-1", "msg-1", "Hello ")
    await channel.publish_chunk("conv-1", "msg-1", "world")
    outcome = await channel.publish_complete("conv-1", "msg-1", {"tools_used": []})

    assert outcome.delivered is True
    assert hub.types("chat/conv-1") == ["start", "chunk", "chunk", "complete"]
    start = hub.events("chat/conv-1")[0]
    assert start == {
        "type": "start",
        "messageId": "msg-1",
        "conversationId": "conv-1",
        "context": "general",
        "timestamp": "2026-10-17T09:30:00+00:00",
    }
    assert hub.events()[1]["chunk"] == "Hello "
    assert all(update.private is False for update in hub.updates)
    assert channel.stream_phase("chat/conv-1") is None


@pytest.mark.asyncio
async def test_hub_failure_returns_failed_outcome() -> None:
    channel = ChatStreamChannel(RecordingHub(fail=True))
    labels = {"channel": "chat", "event_type": "error", "outcome": "failed"}
    before = REGISTRY.get_sample_value("agentrelay_broadcast_events_total", labels) or 0.0

    with capture_logs() as logs:
        outcome = await channel.publish_error("conv-1", "msg-1", "boom")

    assert outcome.delivered is False
    assert not outcome
    assert "hub unavailable" in (outcome.error or "")
    assert "broadcast_publish_failed" in [entry["event"] for entry in logs]
    assert REGISTRY.get_sample_value("agentrelay_broadcast_events_total", labels) == before + 1


@pytest.mark.asyncio
async def test_unencodable_payload_is_a_failed_outcome(hub: RecordingHub) -> None:
    channel = GenerationProgressChannel(hub)
    data: dict[str, object] = {}
    data["self"] = data

    outcome = await channel.publish_progress(12, "personas", "working", data)

    assert outcome.delivered is False
    assert hub.updates == []


@pytest.mark.asyncio
async def test_out_of_order_event_is_warned_but_published(hub: RecordingHub) -> None:
    channel = ChatStreamChannel(hub)

    with capture_logs() as logs:
        outcome = await channel.publish_chunk("conv-2", "msg-2", "orphan")

    assert outcome.delivered is True
    warnings = [entry for entry in logs if entry["log_level"] == "warning"]
    assert warnings[0]["event"] == "broadcast_event_out_of_order"
    assert warnings[0]["previous"] is None


@pytest.mark.asyncio
async def test_error_is_allowed_at_any_time_and_ends_stream(hub: RecordingHub) -> None:
    channel = GenerationProgressChannel(hub)

    await channel.publish_start(12, "personas", "Starting")
    await channel.publish_progress(12, "personas", "2 of 3")
    with capture_logs() as logs:
        await channel.publish_error(12, "personas", "Generation failed", "timeout")

    assert not [entry for entry in logs if entry["event"] == "broadcast_event_out_of_order"]
    assert channel.stream_phase("generation/project/12") is None
    events = hub.events("generation/project/12")
    assert [event["type"] for event in events] == ["start", "progress", "error"]
    assert events[2]["technical"] == "timeout"
    assert all(event["projectId"] == 12 for event in events)


@pytest.mark.asyncio
async def test_task_events_are_public_and_typed(hub: RecordingHub) -> None:
    channel = NotificationChannel(hub)

    await channel.publish_start(TASK_UUID, {"name": "Generate personas"})
    await channel.publish_complete(TASK_UUID, {"duration_ms": 10})

    assert [update.event_type for update in hub.updates] == ["task.start", "task.complete"]
    assert all(update.private is False for update in hub.updates)
    event = hub.events(f"/task/{TASK_UUID}")[0]
    assert event["type"] == "start"
    assert event["taskUuid"] == TASK_UUID
    assert event["data"] == {"name": "Generate personas"}


@pytest.mark.asyncio
async def test_invalid_task_uuid_never_reaches_hub(hub: RecordingHub) -> None:
    channel = NotificationChannel(hub)

    outcome = await channel.publish_progress("not-a-uuid", {})

    assert outcome.delivered is False
    assert "Invalid UUID format" in (outcome.error or "")
    assert hub.updates == []


@pytest.mark.asyncio
async def test_user_notifications_are_private(hub: RecordingHub) -> None:
    channel = NotificationChannel(hub)

    await channel.publish_user_notification(42, "personas.generated", {"count": 3})

    update = hub.updates[0]
    assert update.topics == ("/user/42",)
    assert update.private is True
    assert update.event_type == "personas.generated"
    assert hub.events()[0]["userId"] == 42


@pytest.mark.asyncio
async def test_mercure_hub_posts_form_with_publisher_token() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, text="urn:uuid:1")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    hub = MercureHub("http://hub.test/.well-known/mercure", CapabilityTokenIssuer(SECRET), client=client)

    await hub.publish(HubUpdate(topics=("/user/42",), data='{"type":"x"}', private=True, event_type="x"))
    await hub.aclose()

    request = captured[0]
    form = parse_qs(request.content.decode())
    assert form == {"topic": ["/user/42"], "data": ['{"type":"x"}'], "private": ["on"], "type": ["x"]}
    token = request.headers["Authorization"].removeprefix("Bearer ")
    assert decode_capability_token(token, SECRET) == {"mercure": {"publish": ["/user/42"]}}


@pytest.mark.asyncio
async def test_mercure_hub_raises_delivery_error_on_http_failure() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(401)))
    hub = MercureHub("http://hub.test/.well-known/mercure", CapabilityTokenIssuer(SECRET), client=client)

    with pytest.raises(BroadcastDeliveryError):
        await hub.publish(HubUpdate(topics=("chat/1",), data="{}"))
    await hub.aclose()


@pytest.mark.asyncio
async def test_channel_over_failing_mercure_hub_does_not_raise() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    hub = MercureHub("http://hub.test/.well-known/mercure", CapabilityTokenIssuer(SECRET), client=client)
    channel = ChatStreamChannel(hub)

    outcome = await channel.publish_start("conv-9", "msg-9", "general")

    assert outcome.delivered is False
    assert outcome.event_type == EventType.START.value
    await hub.aclose()
