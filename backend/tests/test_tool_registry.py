import threading

import pytest

from agent.tool_orchestration.errors import ToolExecutionError
from agent.tool_orchestration.registry import ToolRegistry, ToolSpec
from agent.tool_orchestration.types import (
    BatchMode,
    BatchRequest,
    BatchToolCall,
    ExecutionContext,
    RiskLevel,
    ToolCategory,
    ToolMetadata,
    ToolResult,
)

SPLIT_PARAMETERS = {
    "type": "object",
    "properties": {
        "sequenceId": {"type": "string"},
        "clipId": {"type": "string"},
        "splitTime": {"type": "number"},
        "mode": {"type": "string", "enum": ["ripple", "overwrite"]},
    },
    "required": ["sequenceId", "clipId", "splitTime"],
}


def _context():
    return ExecutionContext(project_id="proj-1", sequence_id="seq-1")


def _build_registry(parallel_workers: int = 4) -> ToolRegistry:
    registry = ToolRegistry(parallel_workers=parallel_workers)

    registry.register(
        ToolSpec(
            name="split_clip",
            description="Split a clip",
            handler=lambda args, context: {"split": args["splitTime"]},
            category=ToolCategory.CLIP,
            parameters=SPLIT_PARAMETERS,
            metadata=ToolMetadata(supports_undo=True, affects_timeline=True),
        )
    )
    registry.register(
        ToolSpec(
            name="soft_fail",
            description="Reports failure",
            handler=lambda args, context: ToolResult(success=False, error="nothing to do"),
        )
    )

    def boom(args, context):
        raise RuntimeError("disk full")

    registry.register(ToolSpec(name="boom", description="Raises", handler=boom))
    registry.register(
        ToolSpec(
            name="delete_clips_in_range",
            description="Delete clips",
            handler=lambda args, context: {"deleted": 2},
            category=ToolCategory.TIMELINE,
            metadata=ToolMetadata(risk_level=RiskLevel.HIGH, parallelizable=False),
        )
    )
    return registry


def test_validate_args_reports_unknown_tool():
    result = _build_registry().validate_args("ripple_delete", {})

    assert result.valid is False
    assert result.errors == ["Tool 'ripple_delete' not found"]


def test_validate_args_reports_each_missing_field():
    result = _build_registry().validate_args("split_clip", {"sequenceId": "seq-1"})

    assert result.valid is False
    assert set(result.errors) == {
        "Missing required field: clipId",
        "Missing required field: splitTime",
    }


def test_validate_args_reports_type_and_enum_errors():
    result = _build_registry().validate_args(
        "split_clip",
        {"sequenceId": "seq-1", "clipId": 7, "splitTime": 3, "mode": "insert"},
    )

    assert result.valid is False
    assert "Parameter 'clipId' must be a string, got int" in result.errors
    assert "Parameter 'mode' must be one of: ripple, overwrite" in result.errors


def test_execute_unknown_tool_is_a_soft_failure():
    result = _build_registry().execute("ripple_delete", {}, _context())

    assert result.success is False
    assert "not found" in result.error


def test_execute_invalid_args_is_a_soft_failure():
    result = _build_registry().execute("split_clip", {"sequenceId": "seq-1"}, _context())

    assert result.success is False
    assert "Missing required field: clipId" in result.error


def test_execute_propagates_tool_failure():
    with pytest.raises(ToolExecutionError) as exc_info:
        _build_registry().execute("boom", {}, _context())

    assert exc_info.value.tool_name == "boom"
    assert isinstance(exc_info.value.__cause__, RuntimeError)


def test_execute_wraps_plain_values_and_sets_undoable():
    result = _build_registry().execute(
        "split_clip",
        {"sequenceId": "seq-1", "clipId": "c1", "splitTime": 15},
        _context(),
    )

    assert result.success is True
    assert result.data == {"split": 15}
    assert result.undoable is True
    assert result.duration >= 0


def test_execute_passes_context_through_unmodified():
    registry = ToolRegistry()
    seen = []
    registry.register(
        ToolSpec(name="probe", description="", handler=lambda args, context: seen.append(context))
    )
    context = _context()

    registry.execute("probe", {}, context)

    assert seen[0] is context


def test_sequential_batch_stops_at_first_failure():
    request = BatchRequest(
        tools=[
            BatchToolCall(name="split_clip", args={"sequenceId": "s", "clipId": "c", "splitTime": 1}),
            BatchToolCall(name="soft_fail"),
            BatchToolCall(name="split_clip", args={"sequenceId": "s", "clipId": "c", "splitTime": 2}),
        ],
        mode=BatchMode.SEQUENTIAL,
        stop_on_error=True,
    )

    batch = _build_registry().execute_batch(request, _context())

    assert len(batch.results) == 2
    assert batch.success is False
    assert batch.failure_count == 1


def test_two_step_batch_with_failing_first_step():
    request = BatchRequest(
        tools=[BatchToolCall(name="soft_fail"), BatchToolCall(name="split_clip")],
        stop_on_error=True,
    )

    batch = _build_registry().execute_batch(request, _context())

    assert len(batch.results) == 1
    assert batch.success is False


def test_batch_without_stop_on_error_runs_every_step():
    request = BatchRequest(
        tools=[
            BatchToolCall(name="soft_fail"),
            BatchToolCall(name="boom"),
            BatchToolCall(name="ripple_delete"),
            BatchToolCall(name="split_clip", args={"sequenceId": "s", "clipId": "c", "splitTime": 2}),
        ],
        stop_on_error=False,
    )

    batch = _build_registry().execute_batch(request, _context())

    assert len(batch.results) == 4
    assert batch.success_count + batch.failure_count == 4
    assert batch.success_count == 1
    assert batch.errors[1].startswith("boom: boom: RuntimeError")


def test_parallel_batch_runs_calls_concurrently_and_keeps_order():
    registry = ToolRegistry(parallel_workers=2)
    barrier = threading.Barrier(2, timeout=5)

    def wait_for_sibling(args, context):
        barrier.wait()
        return args["label"]

    for name in ("left", "right"):
        registry.register(ToolSpec(name=name, description="", handler=wait_for_sibling))

    batch = registry.execute_batch(
        BatchRequest(
            tools=[
                BatchToolCall(name="left", args={"label": "L"}),
                BatchToolCall(name="right", args={"label": "R"}),
            ],
            mode=BatchMode.PARALLEL,
        ),
        _context(),
    )

    assert batch.success is True
    assert [entry.result.data for entry in batch.results] == ["L", "R"]
    assert [entry.tool for entry in batch.results] == ["left", "right"]


def test_parallel_batch_failure_does_not_cancel_siblings():
    request = BatchRequest(
        tools=[
            BatchToolCall(name="boom"),
            BatchToolCall(name="split_clip", args={"sequenceId": "s", "clipId": "c", "splitTime": 2}),
        ],
        mode=BatchMode.PARALLEL,
        stop_on_error=True,
    )

    batch = _build_registry().execute_batch(request, _context())

    assert len(batch.results) == 2
    assert batch.results[1].result.success is True
    assert batch.success is False


def test_capability_queries():
    registry = _build_registry()

    assert registry.has_tool("split_clip")
    assert not registry.has_tool("ripple_delete")
    assert [tool.name for tool in registry.get_available_tools(ToolCategory.CLIP)] == ["split_clip"]
    assert set(registry.get_tools_by_category()) == {"clip", "utility", "timeline"}
    low = {tool.name for tool in registry.get_tools_by_risk(RiskLevel.LOW)}
    assert "delete_clips_in_range" not in low
    assert "delete_clips_in_range" in {
        tool.name for tool in registry.get_tools_by_risk(RiskLevel.HIGH)
    }

    definition = registry.get_tool_definition("split_clip")
    assert definition.required == ["sequenceId", "clipId", "splitTime"]
    assert registry.get_tool_definition("ripple_delete") is None


def test_approval_and_batch_mode_helpers():
    registry = _build_registry()

    assert registry.requires_approval("delete_clips_in_range") is True
    assert registry.requires_approval("split_clip") is False
    assert registry.requires_approval("split_clip", RiskLevel.CRITICAL) is True
    assert registry.plan_batch_mode(
        [BatchToolCall(name="split_clip"), BatchToolCall(name="soft_fail")]
    ) == BatchMode.PARALLEL
    assert registry.plan_batch_mode(
        [BatchToolCall(name="split_clip"), BatchToolCall(name="delete_clips_in_range")]
    ) == BatchMode.SEQUENTIAL


def test_tool_decorator_registers_function():
    registry = ToolRegistry()

    @registry.tool(category=ToolCategory.AUDIO)
    def mute_track(args, context):
        """Mute a track."""
        return True

    assert registry.has_tool("mute_track")
    exported = registry.to_openai_tools()
    assert exported[0]["function"]["name"] == "mute_track"
    assert exported[0]["function"]["description"] == "Mute a track."
    assert registry.execute("mute_track", {}, _context()).data is True
