from __future__ import annotations

from structlog.testing import capture_logs

from agentrelay.services.collectors import ToolInvocationCollector, ToolResultCollector, TurnCollectors


def test_tool_calls_are_unique_in_first_seen_order() -> None:
    collector = ToolInvocationCollector()
    for name in ["get_stocks", "get_operations", "get_stocks", "get_stock_alerts", "get_operations"]:
        collector.add_tool_call(name)

    assert collector.get_tools_used() == ["get_stocks", "get_operations", "get_stock_alerts"]
    assert collector.count() == 3


def test_invalid_tool_name_is_logged_and_ignored() -> None:
    collector = ToolInvocationCollector()
    with capture_logs() as logs:
        collector.add_tool_call("")

    assert collector.count() == 0
    assert logs[0]["event"] == "tool_call_rejected"
    assert logs[0]["log_level"] == "warning"


def test_reset_matches_fresh_collectors() -> None:
    invocations = ToolInvocationCollector()
    invocations.add_tool_call("a")
    invocations.reset()
    results = ToolResultCollector()
    results.add_tool_result("a", {"suggested_actions": ["x"], "table_data": {"rows": []}})
    results.reset()

    assert invocations.get_tools_used() == ToolInvocationCollector().get_tools_used()
    assert results.count() == 0
    assert results.get_aggregated_metadata() == {}


def test_aggregates_actions_in_call_order_and_first_table() -> None:
    collector = ToolResultCollector()
    collector.add_tool_result("a", {"suggested_actions": ["x"]})
    collector.add_tool_result("b", {"suggested_actions": ["y"], "table_data": {"headers": ["h"], "rows": [[1]]}})

    assert collector.get_aggregated_metadata() == {
        "suggested_actions": ["x", "y"],
        "table_data": {"headers": ["h"], "rows": [[1]]},
    }


def test_later_tables_are_dropped() -> None:
    collector = ToolResultCollector()
    collector.add_tool_result("a", {"table_data": {"rows": [[1]]}})
    collector.add_tool_result("b", {"table_data": {"rows": [[2]]}})

    with capture_logs() as logs:
        metadata = collector.get_aggregated_metadata()

    assert metadata == {"table_data": {"rows": [[1]]}}
    assert [entry["event"] for entry in logs] == ["tool_table_data_dropped"]


def test_repeated_results_are_kept_and_aggregation_is_idempotent() -> None:
    collector = ToolResultCollector()
    collector.add_tool_result("a", {"suggested_actions": ["x"]})
    collector.add_tool_result("a", {"suggested_actions": ["x"], "other": 1})

    first = collector.get_aggregated_metadata()
    second = collector.get_aggregated_metadata()

    assert collector.count() == 2
    assert first == second == {"suggested_actions": ["x", "x"]}


def test_empty_or_missing_actions_omit_key() -> None:
    collector = ToolResultCollector()
    collector.add_tool_result("a", {"suggested_actions": []})
    collector.add_tool_result("b", {"success": True})

    assert "suggested_actions" not in collector.get_aggregated_metadata()


def test_non_mapping_result_is_rejected() -> None:
    collector = ToolResultCollector()
    with capture_logs() as logs:
        collector.add_tool_result("a", ["not", "a", "mapping"])  # type: ignore[arg-type]

    assert collector.count() == 0
    assert logs[0]["event"] == "tool_result_rejected"


def test_turn_collectors_record_and_begin_turn() -> None:
    turn = TurnCollectors()
    turn.record("get_stocks", {"suggested_actions": ["reorder"]})
    turn.record("get_stocks", {})

    assert turn.invocations.get_tools_used() == ["get_stocks"]
    assert turn.results.count() == 2

    turn.begin_turn()
    assert turn.invocations.count() == 0
    assert turn.results.count() == 0
