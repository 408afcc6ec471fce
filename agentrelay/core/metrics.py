from __future__ import annotations

from prometheus_client import Counter, Histogram

BROADCAST_EVENTS_TOTAL = Counter(
    "agentrelay_broadcast_events_total",
    "Broadcast events handed to the pub/sub hub grouped by outcome",
    labelnames=("channel", "event_type", "outcome"),
)

TASK_LIFECYCLE_EVENTS_TOTAL = Counter(
    "agentrelay_task_lifecycle_events_total",
    "Task lifecycle hook invocations (started/completed/failed) grouped by outcome",
    labelnames=("event", "outcome"),
)

AGENT_TURNS_TOTAL = Counter(
    "agentrelay_agent_turns_total",
    "Agent turns processed by chat context and status",
    labelnames=("context", "status"),
)

AGENT_TURN_LATENCY_SECONDS = Histogram(
    "agentrelay_agent_turn_latency_seconds",
    "End-to-end latency of one agent turn",
    labelnames=("context",),
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, float("inf")),
)

TELEMETRY_FAILURES_TOTAL = Counter(
    "agentrelay_telemetry_failures_total",
    "Telemetry writes that failed and were dropped",
    labelnames=("sink",),
)


def record_broadcast(channel: str, event_type: str, *, delivered: bool) -> None:
    BROADCAST_EVENTS_TOTAL.labels(
        channel=channel,
        event_type=event_type,
        outcome="delivered" if delivered else "failed",
    ).inc()


def record_task_event(event: str, outcome: str) -> None:
    TASK_LIFECYCLE_EVENTS_TOTAL.labels(event=event, outcome=outcome).inc()


def record_agent_turn(context: str, status: str, duration_seconds: float | None = None) -> None:
    AGENT_TURNS_TOTAL.labels(context=context, status=status).inc()
    if duration_seconds is not None:
        AGENT_TURN_LATENCY_SECONDS.labels(context=context).observe(max(0.0, duration_seconds))


def record_telemetry_failure(sink: str) -> None:
    TELEMETRY_FAILURES_TOTAL.labels(sink=sink).inc()


__all__ = [
    "BROADCAST_EVENTS_TOTAL",
    "TASK_LIFECYCLE_EVENTS_TOTAL",
    "AGENT_TURNS_TOTAL",
    "AGENT_TURN_LATENCY_SECONDS",
    "TELEMETRY_FAILURES_TOTAL",
    "record_broadcast",
    "record_task_event",
    "record_agent_turn",
    "record_telemetry_failure",
]
