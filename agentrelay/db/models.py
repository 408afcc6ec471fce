from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID

metadata = MetaData()

ai_tasks = Table(
    "ai_tasks",
    metadata,
    Column("id", BigInteger, primary_key=True, autoincrement=True),
    Column("uuid", String(length=64), nullable=False, unique=True),
    Column("name", String(length=255), nullable=False),
    Column("type", String(length=100), nullable=False),
    Column("status", String(length=32), nullable=False, server_default="processing"),
    Column("agent_class", String(length=255), nullable=False),
    Column("method_name", String(length=255), nullable=False),
    Column("arguments", JSONB(astext_type=Text()), nullable=False, server_default=text("'{}'::jsonb")),
    Column("context", JSONB(astext_type=Text()), nullable=False, server_default=text("'{}'::jsonb")),
    Column("result", JSONB(astext_type=Text()), nullable=True),
    Column("error_message", Text(), nullable=True),
    Column("error_trace", Text(), nullable=True),
    Column("tokens_input", Integer(), nullable=False, server_default="0"),
    Column("tokens_output", Integer(), nullable=False, server_default="0"),
    Column("tokens_total", Integer(), nullable=False, server_default="0"),
    Column("cost", Numeric(10, 4), nullable=False, server_default="0"),
    Column("duration_ms", Integer(), nullable=False, server_default="0"),
    Column("model_used", String(length=100), nullable=False, server_default=""),
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=True),
)
Index("ix_ai_tasks_status", ai_tasks.c.status)
Index("ix_ai_tasks_started_at", ai_tasks.c.started_at)

ai_logs = Table(
    "ai_logs",
    metadata,
    Column("id", UUID(as_uuid=True), primary_key=True),
    Column("user_id", String(length=64), nullable=False),
    Column("action", String(length=50), nullable=False),
    Column("input", Text(), nullable=False),
    Column("output", Text(), nullable=True),
    Column("duration_ms", Integer(), nullable=False, server_default="0"),
    Column("correlation_id", String(length=64), nullable=False),
    Column("metadata", JSONB(astext_type=Text()), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
Index("ix_ai_logs_user_created", ai_logs.c.user_id, ai_logs.c.created_at)
Index("ix_ai_logs_correlation", ai_logs.c.correlation_id)
