"""Typed real-time events pushed to browsers through the Mercure hub.

Every event is a JSON object ``{"type": ..., <fields>, "timestamp": ...}`` where
``type`` is one of start, chunk, progress, complete or error. Publishing is
best-effort: encoding and hub failures are logged and counted, and the caller
gets a :class:`PublishOutcome` back instead of an exception.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Protocol

import httpx

from ..core.config import Settings
from ..core.exceptions import BroadcastDeliveryError
from ..core.logging import get_logger
from ..core.metrics import record_broadcast
from ..core.security import CapabilityTokenIssuer
from ..schemas.events import EventType, HubUpdate, PublishOutcome
from ..utils.json_encoding import encode_json

logger = get_logger(name=__name__)

TASK_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

_STREAM_BODY = frozenset({EventType.PROGRESS, EventType.CHUNK, EventType.COMPLETE})
_ALLOWED_AFTER: dict[EventType | None, frozenset[EventType]] = {
    None: frozenset({EventType.START}),
    EventType.START: _STREAM_BODY,
    EventType.PROGRESS: _STREAM_BODY,
    EventType.CHUNK: _STREAM_BODY,
}


class PubSubHub(Protocol):
    async def publish(self, update: HubUpdate) -> None:
        ...


class MercureHub:
    """Publish updates to a Mercure hub over HTTP with a per-update publisher token."""

    def __init__(
        self,
        hub_url: str,
        token_issuer: CapabilityTokenIssuer,
        *,
        timeout_seconds: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._hub_url = hub_url
        self._token_issuer = token_issuer
        self._timeout = timeout_seconds
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings, *, client: httpx.AsyncClient | None = None) -> "MercureHub":
        return cls(
            settings.mercure.hub_url,
            CapabilityTokenIssuer.from_settings(settings),
            timeout_seconds=settings.mercure.publish_timeout_seconds,
            client=client,
        )

    async def publish(self, update: HubUpdate) -> None:
        form: dict[str, Any] = {"topic": list(update.topics), "data": update.data}
        if update.private:
            form["private"] = "on"
        if update.event_type:
            form["type"] = update.event_type
        token = self._token_issuer.issue_publisher_token(update.topics)
        headers = {"Authorization": f"Bearer {token}"}
        try:
            if self._client is not None:
                response = await self._client.post(self._hub_url, data=form, headers=headers, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self._hub_url, data=form, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise BroadcastDeliveryError(f"hub rejected update for {', '.join(update.topics)}: {exc}") from exc

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class BroadcastChannel:
    """Shared publish path for the event channels.

    Tracks the phase of each topic's stream so that out-of-order events are
    visible in logs. They are still delivered; a terminal event ends the stream.
    """

    channel_name = "broadcast"

    def __init__(self, hub: PubSubHub, *, clock: Callable[[], str] | None = None) -> None:
        self._hub = hub
        self._clock = clock or _utc_timestamp
        self._phases: dict[str, EventType] = {}

    def stream_phase(self, topic: str) -> EventType | None:
        return self._phases.get(topic)

    def _event(self, event_type: EventType | str, **fields: Any) -> dict[str, Any]:
        kind = event_type.value if isinstance(event_type, EventType) else event_type
        return {"type": kind, **fields, "timestamp": self._clock()}

    async def _publish(
        self,
        topic: str,
        data: Mapping[str, Any],
        *,
        private: bool = False,
        event_type: str | None = None,
        track: EventType | None = None,
    ) -> PublishOutcome:
        kind = str(data.get("type", event_type or "message"))
        if track is not None:
            self._advance(topic, track)
        try:
            body = encode_json(dict(data))
            await self._hub.publish(
                HubUpdate(topics=(topic,), data=body, private=private, event_type=event_type)
            )
        except Exception as exc:
            logger.error(
                "broadcast_publish_failed",
                channel=self.channel_name,
                topic=topic,
                event_type=kind,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            record_broadcast(self.channel_name, kind, delivered=False)
            return PublishOutcome(delivered=False, topic=topic, event_type=kind, error=str(exc))
        logger.debug("broadcast_published", channel=self.channel_name, topic=topic, event_type=kind)
        record_broadcast(self.channel_name, kind, delivered=True)
        return PublishOutcome(delivered=True, topic=topic, event_type=kind)

    def _advance(self, topic: str, event: EventType) -> None:
        previous = self._phases.get(topic)
        if event is not EventType.ERROR and event not in _ALLOWED_AFTER[previous]:
            logger.warning(
                "broadcast_event_out_of_order",
                channel=self.channel_name,
                topic=topic,
                previous=previous.value if previous is not None else None,
                event_type=event.value,
            )
        if event.is_terminal:
            self._phases.pop(topic, None)
        else:
            self._phases[topic] = event


class ChatStreamChannel(BroadcastChannel):
    """Streams one chat answer to the browser on ``chat/{conversation_id}``."""

    channel_name = "chat"

    @staticmethod
    def topic_for(conversation_id: str) -> str:
        return f"chat/{conversation_id}"

    async def publish_start(self, conversation_id: str, message_id: str, context: str) -> PublishOutcome:
        outcome = await self._send(
            conversation_id,
            EventType.START,
            messageId=message_id,
            conversationId=conversation_id,
            context=context,
        )
        logger.info("chat_stream_started", conversation_id=conversation_id, message_id=message_id, context=context)
        return outcome

    async def publish_progress(
        self, conversation_id: str, message_id: str, message: str, data: Mapping[str, Any] | None = None
    ) -> PublishOutcome:
        return await self._send(
            conversation_id,
            EventType.PROGRESS,
            messageId=message_id,
            message=message,
            data=dict(data or {}),
        )

    async def publish_chunk(self, conversation_id: str, message_id: str, chunk: str) -> PublishOutcome:
        outcome = await self._send(conversation_id, EventType.CHUNK, messageId=message_id, chunk=chunk)
        logger.debug(
            "chat_stream_chunk",
            conversation_id=conversation_id,
            message_id=message_id,
            chunk_length=len(chunk),
        )
        return outcome

    async def publish_complete(
        self, conversation_id: str, message_id: str, metadata: Mapping[str, Any]
    ) -> PublishOutcome:
        outcome = await self._send(conversation_id, EventType.COMPLETE, messageId=message_id, metadata=dict(metadata))
        logger.info("chat_stream_completed", conversation_id=conversation_id, message_id=message_id)
        return outcome

    async def publish_error(self, conversation_id: str, message_id: str, error: str) -> PublishOutcome:
        outcome = await self._send(conversation_id, EventType.ERROR, messageId=message_id, error=error)
        logger.error("chat_stream_error", conversation_id=conversation_id, message_id=message_id, error=error)
        return outcome

    async def _send(self, conversation_id: str, event: EventType, **fields: Any) -> PublishOutcome:
        topic = self.topic_for(conversation_id)
        return await self._publish(topic, self._event(event, **fields), track=event)


class GenerationProgressChannel(BroadcastChannel):
    """Stage-by-stage progress of a long content generation on ``generation/project/{id}``."""

    channel_name = "generation"

    @staticmethod
    def topic_for(project_id: int | str) -> str:
        return f"generation/project/{project_id}"

    async def publish_start(self, project_id: int | str, stage: str, message: str) -> PublishOutcome:
        outcome = await self._send(project_id, EventType.START, stage=stage, message=message)
        logger.info("generation_started", project_id=project_id, stage=stage)
        return outcome

    async def publish_progress(
        self, project_id: int | str, stage: str, message: str, data: Mapping[str, Any] | None = None
    ) -> PublishOutcome:
        outcome = await self._send(project_id, EventType.PROGRESS, stage=stage, message=message, data=dict(data or {}))
        logger.info("generation_progress", project_id=project_id, stage=stage)
        return outcome

    async def publish_chunk(self, project_id: int | str, stage: str, chunk: str) -> PublishOutcome:
        return await self._send(project_id, EventType.CHUNK, stage=stage, chunk=chunk)

    async def publish_complete(
        self, project_id: int | str, stage: str, message: str, metadata: Mapping[str, Any] | None = None
    ) -> PublishOutcome:
        outcome = await self._send(
            project_id, EventType.COMPLETE, stage=stage, message=message, metadata=dict(metadata or {})
        )
        logger.info("generation_completed", project_id=project_id, stage=stage)
        return outcome

    async def publish_error(
        self, project_id: int | str, stage: str, message: str, technical: str = ""
    ) -> PublishOutcome:
        outcome = await self._send(project_id, EventType.ERROR, stage=stage, message=message, technical=technical)
        logger.error("generation_error", project_id=project_id, stage=stage, error_message=message, technical=technical)
        return outcome

    async def _send(self, project_id: int | str, event: EventType, **fields: Any) -> PublishOutcome:
        topic = self.topic_for(project_id)
        return await self._publish(topic, self._event(event, projectId=project_id, **fields), track=event)


class NotificationChannel(BroadcastChannel):
    """User notifications on ``/user/{id}`` (private) and task events on ``/task/{uuid}`` (public)."""

    channel_name = "notification"

    @staticmethod
    def user_topic(user_id: int | str) -> str:
        return f"/user/{user_id}"

    @staticmethod
    def task_topic(task_uuid: str) -> str:
        return f"/task/{task_uuid}"

    async def publish_user_notification(
        self, user_id: int | str, notification_type: str, data: Mapping[str, Any]
    ) -> PublishOutcome:
        topic = self.user_topic(user_id)
        payload = self._event(notification_type, userId=user_id, data=dict(data))
        outcome = await self._publish(topic, payload, private=True, event_type=notification_type)
        if outcome.delivered:
            logger.info("user_notification_published", user_id=user_id, notification_type=notification_type)
        return outcome

    async def publish_start(self, task_uuid: str, data: Mapping[str, Any] | None = None) -> PublishOutcome:
        return await self.publish_task_event(task_uuid, EventType.START, data)

    async def publish_progress(self, task_uuid: str, data: Mapping[str, Any] | None = None) -> PublishOutcome:
        return await self.publish_task_event(task_uuid, EventType.PROGRESS, data)

    async def publish_chunk(self, task_uuid: str, data: Mapping[str, Any] | None = None) -> PublishOutcome:
        return await self.publish_task_event(task_uuid, EventType.CHUNK, data)

    async def publish_complete(self, task_uuid: str, data: Mapping[str, Any] | None = None) -> PublishOutcome:
        return await self.publish_task_event(task_uuid, EventType.COMPLETE, data)

    async def publish_error(self, task_uuid: str, data: Mapping[str, Any] | None = None) -> PublishOutcome:
        return await self.publish_task_event(task_uuid, EventType.ERROR, data)

    async def publish_task_event(
        self, task_uuid: str, event: EventType, data: Mapping[str, Any] | None = None
    ) -> PublishOutcome:
        topic = self.task_topic(task_uuid)
        sse_type = f"task.{event.value}"
        if not isinstance(task_uuid, str) or not TASK_UUID_PATTERN.match(task_uuid):
            logger.warning("task_event_invalid_uuid", task_uuid=repr(task_uuid), event_type=event.value)
            record_broadcast(self.channel_name, event.value, delivered=False)
            return PublishOutcome(
                delivered=False,
                topic=topic,
                event_type=event.value,
                error=f"Invalid UUID format: {task_uuid}",
            )
        payload = self._event(event, event=sse_type, taskUuid=task_uuid, data=dict(data or {}))
        outcome = await self._publish(topic, payload, event_type=sse_type, track=event)
        if outcome.delivered:
            logger.info("task_event_published", task_uuid=task_uuid, event_type=sse_type)
        return outcome


__all__ = [
    "BroadcastChannel",
    "ChatStreamChannel",
    "GenerationProgressChannel",
    "MercureHub",
    "NotificationChannel",
    "PubSubHub",
    "TASK_UUID_PATTERN",
]
