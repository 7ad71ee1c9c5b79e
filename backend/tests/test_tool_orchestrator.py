import logging

from agent.tool_orchestration.backends import InMemoryCallRecorder, ScriptedBackend, ScriptedResponse
from agent.tool_orchestration.config import OrchestrationSettings
from agent.tool_orchestration.orchestrator import ToolOrchestrator
from agent.tool_orchestration.registry import ToolRegistry, ToolSpec
from agent.tool_orchestration.types import (
    CallOutcome,
    ExecutionContext,
    Intent,
    Plan,
    RiskLevel,
    Thought,
    ToolCallRequest,
    ToolMetadata,
    ToolResult,
    WorkflowPhase,
    WorkflowStepStatus,
)

SPLIT_PARAMETERS = {
    "type": "object",
    "properties": {"splitTime": {"type": "number"}},
    "required": ["sequenceId", "clipId", "splitTime"],
}


class _ToolLog:
    def __init__(self):
        self.calls = []

    def handler(self, name, result=None):
        def run(args, context):
            self.calls.append((name, args))
            return result if result is not None else {"ok": name}

        return run


def _build_registry(log: _ToolLog) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(
        ToolSpec(
            name="split_clip",
            description="Split a clip",
            handler=log.handler("split_clip"),
            parameters=SPLIT_PARAMETERS,
            metadata=ToolMetadata(supports_undo=True),
        )
    )
    registry.register(
        ToolSpec(name="add_marker", description="Add a marker", handler=log.handler("add_marker"))
    )
    registry.register(
        ToolSpec(
            name="locked_track",
            description="Always fails",
            handler=log.handler("locked_track", ToolResult(success=False, error="track is locked")),
        )
    )
    registry.register(
        ToolSpec(
            name="delete_clips_in_range",
            description="Delete clips",
            handler=log.handler("delete_clips_in_range"),
            metadata=ToolMetadata(risk_level=RiskLevel.HIGH),
        )
    )
    return registry


def _orchestrator(settings=None, approval_handler=None):
    log = _ToolLog()
    recorder = InMemoryCallRecorder()
    backend = ScriptedBackend(recorders=[recorder])
    orchestrator = ToolOrchestrator(
        _build_registry(log),
        backend,
        settings=settings or OrchestrationSettings(),
        approval_handler=approval_handler,
    )
    return orchestrator, backend, log, recorder


def _script_plan(backend, *steps):
    backend.set_structured_response(
        ScriptedResponse(structured={"understanding": "edit", "approach": "tools"}), Thought
    )
    backend.set_structured_response(
        ScriptedResponse(structured={"goal": "edit", "steps": list(steps)}), Plan
    )


def _step(step_id, tool, **args):
    return {"id": step_id, "tool": tool, "args": args}


def _selection_intent(utterance):
    return Intent(
        utterance=utterance,
        context=ExecutionContext(
            sequence_id="seq-1",
            selected_clip_ids=("clip-1",),
            selected_track_ids=("track-1",),
        ),
    )


def test_fast_path_request_runs_to_completion():
    orchestrator, _, log, recorder = _orchestrator()

    result = orchestrator.run(_selection_intent("Split the selected clip at 00:15"))

    assert result.phase == WorkflowPhase.COMPLETE
    assert result.success is True
    assert result.batch.success is True
    assert log.calls[0][0] == "split_clip"
    assert log.calls[0][1]["splitTime"] == 15
    assert recorder.calls == []
    state = orchestrator.state.get_state()
    assert state.phase_history == [
        WorkflowPhase.IDLE,
        WorkflowPhase.ANALYZING,
        WorkflowPhase.PLANNING,
        WorkflowPhase.EXECUTING,
        WorkflowPhase.VERIFYING,
        WorkflowPhase.COMPLETE,
    ]
    assert orchestrator.state.progress == 100


def test_failing_step_stops_plan_and_fails_run():
    orchestrator, backend, log, _ = _orchestrator()
    _script_plan(backend, _step("s1", "locked_track"), _step("s2", "add_marker"))

    result = orchestrator.run(Intent(utterance="mark the locked track"))

    assert result.phase == WorkflowPhase.FAILED
    assert len(result.batch.results) == 1
    assert result.batch.success is False
    assert "track is locked" in result.message
    assert [name for name, _ in log.calls] == ["locked_track"]
    steps = orchestrator.state.get_state().steps
    assert steps[0].status == WorkflowStepStatus.FAILED
    assert steps[1].status == WorkflowStepStatus.PENDING


def test_generation_error_fails_run_with_message():
    orchestrator, backend, _, _ = _orchestrator()
    backend.set_structured_response(ScriptedResponse(error=RuntimeError("503 upstream")), Thought)

    result = orchestrator.run(Intent(utterance="make it cinematic"))

    assert result.phase == WorkflowPhase.FAILED
    assert "503 upstream" in result.message
    assert orchestrator.state.get_state().error == result.message


def test_invalid_generated_plan_fails_run():
    orchestrator, backend, log, _ = _orchestrator()
    _script_plan(backend, _step("s1", "ripple_delete"))

    result = orchestrator.run(Intent(utterance="ripple it"))

    assert result.phase == WorkflowPhase.FAILED
    assert "ripple_delete" in result.message
    assert log.calls == []


def test_clarification_completes_without_executing():
    orchestrator, backend, log, _ = _orchestrator()
    backend.set_structured_response(
        ScriptedResponse(
            structured={
                "understanding": "unclear",
                "needs_more_info": True,
                "clarification_question": "Which clip should I trim?",
            }
        ),
        Thought,
    )

    result = orchestrator.run(Intent(utterance="trim it"))

    assert result.message == "Which clip should I trim?"
    assert result.plan is None
    assert log.calls == []
    assert orchestrator.state.is_active is False


def test_rejected_plan_is_cancelled():
    seen = []

    def reject(plan):
        seen.append(plan)
        return False

    orchestrator, backend, log, _ = _orchestrator(approval_handler=reject)
    _script_plan(backend, _step("s1", "delete_clips_in_range", startTime=1, endTime=2))

    result = orchestrator.run(Intent(utterance="delete the first second"))

    assert result.phase == WorkflowPhase.CANCELLED
    assert seen[0].requires_approval is True
    assert log.calls == []


def test_approved_plan_executes():
    orchestrator, backend, log, _ = _orchestrator(approval_handler=lambda plan: True)
    _script_plan(backend, _step("s1", "delete_clips_in_range", startTime=1, endTime=2))

    result = orchestrator.run(Intent(utterance="delete the first second"))

    assert result.phase == WorkflowPhase.COMPLETE
    assert [name for name, _ in log.calls] == ["delete_clips_in_range"]


def test_plan_waits_for_approval_without_handler():
    orchestrator, backend, log, _ = _orchestrator()
    _script_plan(backend, _step("s1", "delete_clips_in_range", startTime=1, endTime=2))

    waiting = orchestrator.run(Intent(utterance="delete the first second"))

    assert waiting.awaiting_approval is True
    assert waiting.phase == WorkflowPhase.PLANNING
    assert orchestrator.pending_plan is not None
    assert log.calls == []

    refused = orchestrator.run(Intent(utterance="something else"))
    assert refused.warnings == ["Workflow already active"]

    result = orchestrator.execute_approved_plan()
    assert result.phase == WorkflowPhase.COMPLETE
    assert orchestrator.pending_plan is None
    assert [name for name, _ in log.calls] == ["delete_clips_in_range"]


def test_pending_plan_can_be_rejected_or_cancelled():
    orchestrator, backend, log, _ = _orchestrator()
    _script_plan(backend, _step("s1", "delete_clips_in_range"))

    orchestrator.run(Intent(utterance="delete everything"))
    rejected = orchestrator.reject_pending_plan()
    assert rejected.phase == WorkflowPhase.CANCELLED

    orchestrator.run(Intent(utterance="delete everything"))
    assert orchestrator.cancel() is True
    assert orchestrator.state.phase == WorkflowPhase.CANCELLED
    assert orchestrator.execute_approved_plan().warnings == ["Nothing to approve"]
    assert log.calls == []


def test_repeated_plan_steps_trip_the_doom_loop():
    orchestrator, backend, log, _ = _orchestrator(
        settings=OrchestrationSettings(doom_loop_threshold=3)
    )
    _script_plan(
        backend,
        _step("s1", "add_marker", at=5),
        _step("s2", "add_marker", at=5),
        _step("s3", "add_marker", at=5),
    )

    result = orchestrator.run(Intent(utterance="add a marker at 5"))

    assert result.phase == WorkflowPhase.FAILED
    assert result.doom_loop_tripped is True
    assert "add_marker" in result.message
    assert len(log.calls) == 2


def test_parallel_execution_runs_plan_as_one_batch():
    orchestrator, backend, log, _ = _orchestrator(
        settings=OrchestrationSettings(parallel_execution=True)
    )
    _script_plan(backend, _step("s1", "add_marker", at=1), _step("s2", "add_marker", at=2))

    result = orchestrator.run(Intent(utterance="add two markers"))

    assert result.phase == WorkflowPhase.COMPLETE
    assert len(result.batch.results) == 2
    assert sorted(args["at"] for _, args in log.calls) == [1, 2]


def test_cancel_is_observed_between_steps():
    log = _ToolLog()
    registry = _build_registry(log)
    backend = ScriptedBackend()
    orchestrator = ToolOrchestrator(registry, backend, settings=OrchestrationSettings())

    def cancel_after_first(args, context):
        log.calls.append(("cancelling_marker", args))
        orchestrator.cancel()
        return True

    registry.register(ToolSpec(name="cancelling_marker", description="", handler=cancel_after_first))
    _script_plan(backend, _step("s1", "cancelling_marker"), _step("s2", "add_marker"))

    result = orchestrator.run(Intent(utterance="add markers"))

    assert result.phase == WorkflowPhase.CANCELLED
    assert [name for name, _ in log.calls] == ["cancelling_marker"]


def test_tool_loop_executes_calls_and_feeds_results_back():
    orchestrator, backend, log, recorder = _orchestrator()
    backend.set_tools_response(
        ScriptedResponse(
            tool_calls=[
                ToolCallRequest(
                    id="call_1",
                    name="split_clip",
                    args={"sequenceId": "seq-1", "clipId": "clip-1", "splitTime": 4},
                )
            ]
        ),
        ScriptedResponse(content="Split the clip at 4 seconds."),
    )

    result = orchestrator.run_tool_loop(_selection_intent("split it at 4 seconds please"))

    assert result.phase == WorkflowPhase.COMPLETE
    assert result.message == "Split the clip at 4 seconds."
    assert [name for name, _ in log.calls] == ["split_clip"]
    second_turn = recorder.calls[1].messages
    assert second_turn[-2].role == "assistant"
    assert second_turn[-2].tool_calls[0].id == "call_1"
    assert second_turn[-1].role == "tool"
    assert second_turn[-1].tool_call_id == "call_1"
    assert '"success": true' in second_turn[-1].content


def test_tool_loop_trips_doom_loop_and_aborts_stream():
    orchestrator, backend, log, recorder = _orchestrator(
        settings=OrchestrationSettings(doom_loop_threshold=3)
    )
    backend.set_tools_response(
        ScriptedResponse(tool_calls=[ToolCallRequest(id="c", name="add_marker", args={"at": 1})])
    )

    result = orchestrator.run_tool_loop(Intent(utterance="add a marker"))

    assert result.phase == WorkflowPhase.FAILED
    assert result.doom_loop_tripped is True
    assert len(log.calls) == 2
    assert recorder.last().outcome == CallOutcome.ABORTED
    assert backend.is_generating is False


def test_tool_loop_error_event_fails_run():
    orchestrator, backend, _, _ = _orchestrator()
    backend.set_tools_response(ScriptedResponse(error=RuntimeError("rate limited")))

    result = orchestrator.run_tool_loop(Intent(utterance="anything"))

    assert result.phase == WorkflowPhase.FAILED
    assert "rate limited" in result.message


def test_tool_loop_stops_at_max_iterations():
    orchestrator, backend, log, _ = _orchestrator(
        settings=OrchestrationSettings(max_iterations=2, doom_loop_threshold=5)
    )
    backend.set_tools_response(
        ScriptedResponse(tool_calls=[ToolCallRequest(id="c", name="add_marker", args={"at": 1})])
    )

    result = orchestrator.run_tool_loop(Intent(utterance="add markers forever"))

    assert result.phase == WorkflowPhase.FAILED
    assert "2 iterations" in result.message
    assert len(log.calls) == 2


def test_payload_logging_is_truncated(caplog):
    orchestrator, _, _, _ = _orchestrator(
        settings=OrchestrationSettings(log_payloads=True, log_max_chars=10)
    )

    with caplog.at_level(logging.INFO, logger="agent.tool_orchestration.orchestrator"):
        orchestrator.run(_selection_intent("Split the selected clip at 00:15"))

    messages = [record.getMessage() for record in caplog.records]
    assert "Orchestrator user_message: Split the ... [truncated]" in messages
