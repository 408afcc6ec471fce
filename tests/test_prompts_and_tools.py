from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping

import pytest
from pydantic import BaseModel, Field
from structlog.testing import capture_logs

from agentrelay.core.correlation import CorrelationTracker
from agentrelay.core.execution_context import (
    ExecutionContextCarrier,
    StaticSession,
    select_identity_resolver,
)
from agentrelay.schemas.identity import Identity, Tenant
from agentrelay.services.ai_logger import AiLogAction, AiLogService, InMemoryAiLogRepository
from agentrelay.services.collectors import TurnCollectors
from agentrelay.services.prompts import TemplatePromptRenderer, format_tools
from agentrelay.tools.base import Capability, tool_name_from_class
from agentrelay.tools.registry import CapabilityRegistry


class StockAlertArgs(BaseModel):
    limit: int = Field(default=5, ge=1, le=50)


class GetStockAlertsTool(Capability):
    description = "List products below their reorder point"
    args_model = StockAlertArgs

    async def execute(self, identity: Identity, tenant: Tenant, **kwargs: Any) -> Mapping[str, Any]:
        return {
            "success": True,
            "tenant": tenant.name,
            "limit": kwargs["limit"],
            "suggested_actions": [{"label": "Reorder"}],
        }


class BrokenTool(Capability):
    async def execute(self, identity: Identity, tenant: Tenant, **kwargs: Any) -> Mapping[str, Any]:
        raise RuntimeError("warehouse API timed out")


def _clock() -> datetime:
    return datetime(2026, 10, 17, 9, 30, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("class_name", "expected"),
    [
        ("GetStockAlertsTool", "get_stock_alerts"),
        ("SearchInvoicesTool", "search_invoices"),
        ("Lookup", "lookup"),
    ],
)
def test_tool_name_from_class(class_name: str, expected: str) -> None:
    assert tool_name_from_class(class_name) == expected


def test_subclass_metadata_defaults() -> None:
    assert GetStockAlertsTool.name == "get_stock_alerts"
    assert BrokenTool.description == "Tool: BrokenTool"
    schema = GetStockAlertsTool().as_tool_schema()
    assert schema["function"]["name"] == "get_stock_alerts"
    assert "limit" in schema["function"]["parameters"]["properties"]


def test_renderer_fills_placeholders(identity: Identity, tenant: Tenant) -> None:
    renderer = TemplatePromptRenderer(
        {"general": "Hi {user_name} ({user_id}) of {tenant_name}/{tenant_id} at {timestamp}.\n{tools}"},
        now=_clock,
    )

    prompt = renderer.render(
        "general", identity, tenant, [{"name": "get_stock_alerts", "description": "Stock alerts"}]
    )

    assert prompt == (
        "Hi Ana (42) of North Division/7 at 2026-10-17T09:30:00+00:00.\n- get_stock_alerts: Stock alerts"
    )


def test_renderer_without_tenant_and_unknown_template(identity: Identity) -> None:
    renderer = TemplatePromptRenderer({"general": "Tenant: {tenant_name}. Tools:\n{tools}"})

    with capture_logs() as logs:
        prompt = renderer.render("inventory", identity, None, [])

    assert prompt == "Tenant: Not set. Tools:\n- none"
    assert logs[0]["event"] == "prompt_template_fallback"


def test_renderer_without_general_template_raises(identity: Identity) -> None:
    renderer = TemplatePromptRenderer({"sales": "{user_name}"})

    with pytest.raises(KeyError):
        renderer.render("inventory", identity, None, [])


def test_format_tools_without_description() -> None:
    assert format_tools([{"name": "a"}, {"name": "b", "description": "B"}]) == "- a\n- b: B"


@pytest.mark.asyncio
async def test_bound_capability_records_results(identity: Identity, tenant: Tenant) -> None:
    collectors = TurnCollectors()
    resolver = select_identity_resolver(session=StaticSession(identity, tenant))
    bound = GetStockAlertsTool().bind(resolver, collectors)

    result = await bound(limit=3)
    await bound()

    assert result == {
        "success": True,
        "tenant": "North Division",
        "limit": 3,
        "suggested_actions": [{"label": "Reorder"}],
    }
    assert collectors.invocations.get_tools_used() == ["get_stock_alerts"]
    assert collectors.results.count() == 2
    assert collectors.results.get_aggregated_metadata()["suggested_actions"] == [
        {"label": "Reorder"},
        {"label": "Reorder"},
    ]


@pytest.mark.asyncio
async def test_bound_capability_without_context_returns_error() -> None:
    collectors = TurnCollectors()
    resolver = select_identity_resolver(carrier=ExecutionContextCarrier())
    bound = GetStockAlertsTool().bind(resolver, collectors)

    with capture_logs() as logs:
        result = await bound(limit=3)

    assert result["success"] is False
    assert logs[0]["event"] == "capability_context_missing"
    assert collectors.invocations.get_tools_used() == ["get_stock_alerts"]


@pytest.mark.asyncio
async def test_bound_capability_uses_carrier_inside_scope(identity: Identity, tenant: Tenant) -> None:
    carrier = ExecutionContextCarrier()
    bound = GetStockAlertsTool().bind(select_identity_resolver(carrier=carrier), TurnCollectors())

    with carrier.scope(identity, tenant):
        result = await bound()

    assert result["tenant"] == "North Division"
    assert carrier.has_context() is False


@pytest.mark.asyncio
async def test_invalid_arguments_and_failures_become_error_results(identity: Identity, tenant: Tenant) -> None:
    collectors = TurnCollectors()
    resolver = select_identity_resolver(session=StaticSession(identity, tenant))

    invalid = await GetStockAlertsTool().bind(resolver, collectors)(limit=500)
    failed = await BrokenTool().bind(resolver, collectors)()

    assert invalid["success"] is False
    assert invalid["error"].startswith("Invalid arguments")
    assert failed == {"success": False, "error": "warehouse API timed out"}
    assert collectors.invocations.get_tools_used() == ["get_stock_alerts", "broken"]


@pytest.mark.asyncio
async def test_bound_capability_writes_tool_call_log(
    identity: Identity, tenant: Tenant, correlation: CorrelationTracker
) -> None:
    repository = InMemoryAiLogRepository()
    ai_log = AiLogService(repository, correlation)
    resolver = select_identity_resolver(session=StaticSession(identity, tenant))

    await GetStockAlertsTool().bind(resolver, TurnCollectors(), ai_log=ai_log)(limit=2)

    entry = repository.entries[0]
    assert entry.action is AiLogAction.TOOL_CALL
    assert entry.user_id == "42"
    assert entry.metadata == {"tool_name": "get_stock_alerts"}


def test_registry_groups_capabilities_by_context() -> None:
    registry = CapabilityRegistry()
    stock = GetStockAlertsTool()
    registry.register(stock, "inventory", "general")
    registry.register_all([BrokenTool()], "general")

    assert registry.contexts() == ["inventory", "general"]
    assert [capability.name for capability in registry.for_context("general")] == ["get_stock_alerts", "broken"]
    assert registry.for_context("inventory") == [stock]
    assert registry.for_context("sales") == []
    with pytest.raises(ValueError):
        registry.register(stock)
