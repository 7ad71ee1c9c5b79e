"""Orchestration loop.

This module drives a request end to end:
1. Starts a workflow run for the intent
2. Builds a plan (fast path or generative)
3. Gates risky plans on approval
4. Executes plan steps with doom-loop protection
5. Verifies the outcome and closes the run

``run_tool_loop`` is the alternative function-calling mode where the backend
picks tools turn by turn instead of producing a plan up front.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Sequence

from pydantic import BaseModel, Field

from .backends.base import GenerativeBackend
from .config import OrchestrationSettings
from .doom_loop import DoomLoopDetector
from .errors import GenerationError, PlanValidationError, ToolExecutionError
from .planner import PlanBuilder, PlanOutcome, PlanSource
from .prompts import TOOL_LOOP_SYSTEM_PROMPT, build_context_prompt
from .registry import ToolRegistry
from .types import (
    BatchEntry,
    BatchMode,
    BatchRequest,
    BatchResult,
    BatchToolCall,
    ErrorEvent,
    ExecutionContext,
    Intent,
    LLMMessage,
    Plan,
    TextEvent,
    Thought,
    ToolCallEvent,
    ToolCallRequest,
    ToolResult,
    WorkflowPhase,
    WorkflowStep,
    WorkflowStepStatus,
)
from .workflow import WorkflowStateMachine

logger = logging.getLogger(__name__)

ApprovalHandler = Callable[[Plan], bool]

DOOM_LOOP_MESSAGE = (
    "Stopped because '{tool}' was requested {count} times in a row with the same "
    "arguments. Try rephrasing the request or making the edit manually."
)


class OrchestrationResult(BaseModel):
    """Result of one orchestration run."""

    workflow_id: str | None = None
    phase: WorkflowPhase = WorkflowPhase.IDLE
    source: PlanSource | None = None
    thought: Thought | None = None
    plan: Plan | None = None
    batch: BatchResult | None = None
    message: str = ""
    warnings: list[str] = Field(default_factory=list)
    trace: list[dict[str, Any]] = Field(default_factory=list)
    awaiting_approval: bool = False
    doom_loop_tripped: bool = False

    @property
    def success(self) -> bool:
        return self.phase == WorkflowPhase.COMPLETE


class _PendingPlan(BaseModel):
    intent: Intent
    outcome: PlanOutcome


class ToolOrchestrator:
    """Runs intents through planning and tool execution."""

    def __init__(
        self,
        registry: ToolRegistry,
        backend: GenerativeBackend,
        settings: OrchestrationSettings | None = None,
        approval_handler: ApprovalHandler | None = None,
        state_machine: WorkflowStateMachine | None = None,
        planner: PlanBuilder | None = None,
    ):
        self.registry = registry
        self.backend = backend
        self.settings = settings or OrchestrationSettings()
        self.approval_handler = approval_handler
        self.state = state_machine or WorkflowStateMachine()
        self.planner = planner or PlanBuilder(backend, registry, settings=self.settings)
        self.doom_loop = DoomLoopDetector(self.settings.doom_loop_threshold)
        self._cancelled = False
        self._pending: _PendingPlan | None = None

    # -- public API -------------------------------------------------------

    @property
    def pending_plan(self) -> Plan | None:
        return self._pending.outcome.plan if self._pending else None

    def cancel(self) -> bool:
        """Request cancellation of the active run.

        Cancellation is cooperative: it is observed between plan steps and
        between stream events. A plan waiting for approval is cancelled
        immediately.
        """
        if self._pending is not None:
            self._pending = None
            return self.state.cancel_workflow()
        if not self.state.is_active:
            return False
        self._cancelled = True
        self.backend.abort()
        logger.info("Cancellation requested for workflow %s", self.state.workflow_id)
        return True

    def run(
        self,
        intent: Intent,
        history: Sequence[LLMMessage] | None = None,
    ) -> OrchestrationResult:
        """Plan and execute ``intent``.

        Args:
            intent: User request and editor context
            history: Prior conversation turns, oldest first

        Returns:
            OrchestrationResult describing the final phase. Failures are
            reported on the result rather than raised.
        """
        refused = self._begin(intent)
        if refused is not None:
            return refused
        _log_payload(self.settings, "user_message", intent.utterance)

        try:
            outcome = self.planner.build(
                intent,
                history,
                on_planning=lambda: self.state.transition_to(WorkflowPhase.PLANNING),
            )
        except GenerationError as exc:
            return self._fail(f"Generation failed: {exc.message}")
        except PlanValidationError as exc:
            return self._fail(str(exc))

        if self._cancelled:
            return self._cancel(outcome=outcome)

        if outcome.plan is None:
            question = outcome.thought.clarification_question or "Could you clarify the request?"
            self.state.complete_workflow()
            return self._result(question, outcome=outcome)

        _log_payload(self.settings, "plan", outcome.plan.model_dump(mode="json"))

        if outcome.plan.requires_approval:
            if self.approval_handler is None:
                self._pending = _PendingPlan(intent=intent, outcome=outcome)
                logger.info("Plan for workflow %s awaiting approval", self.state.workflow_id)
                return self._result(
                    "The plan includes risky steps and needs approval.",
                    outcome=outcome,
                    awaiting_approval=True,
                )
            if not self.approval_handler(outcome.plan):
                self.state.cancel_workflow()
                return self._result("Plan rejected.", outcome=outcome)

        return self._execute(intent, outcome)

    def execute_approved_plan(self) -> OrchestrationResult:
        """Continue a run that stopped for approval."""
        pending = self._pending
        if pending is None:
            return self._result("No plan is awaiting approval.", warnings=["Nothing to approve"])
        self._pending = None
        if self._cancelled:
            return self._cancel(outcome=pending.outcome)
        return self._execute(pending.intent, pending.outcome)

    def reject_pending_plan(self) -> OrchestrationResult:
        pending = self._pending
        if pending is None:
            return self._result("No plan is awaiting approval.", warnings=["Nothing to reject"])
        self._pending = None
        self.state.cancel_workflow()
        return self._result("Plan rejected.", outcome=pending.outcome)

    def run_tool_loop(
        self,
        intent: Intent,
        history: Sequence[LLMMessage] | None = None,
    ) -> OrchestrationResult:
        """Let the backend call tools turn by turn until it stops asking.

        Each tool call is checked by the doom-loop detector as it arrives. A
        trip aborts the stream and fails the run with a user-facing message.
        """
        refused = self._begin(intent)
        if refused is not None:
            return refused
        _log_payload(self.settings, "user_message", intent.utterance)

        self.state.transition_to(WorkflowPhase.PLANNING)
        self.state.transition_to(WorkflowPhase.EXECUTING)

        system = TOOL_LOOP_SYSTEM_PROMPT
        context_prompt = build_context_prompt(intent.context)
        if context_prompt:
            system = f"{system}\n{context_prompt}"
        messages: list[LLMMessage] = [
            LLMMessage(role="system", content=system),
            *(history or []),
            LLMMessage(role="user", content=intent.utterance),
        ]
        tools = self.registry.to_openai_tools()
        entries: list[BatchEntry] = []
        trace: list[dict[str, Any]] = []
        final_content = ""

        for iteration in range(self.settings.max_iterations):
            logger.debug(
                "Tool loop iteration %s/%s", iteration + 1, self.settings.max_iterations
            )
            if self._cancelled:
                return self._cancel(batch=BatchResult(results=entries), trace=trace)

            text_parts: list[str] = []
            calls: list[ToolCallEvent] = []
            stream_error: str | None = None
            tripped: ToolCallEvent | None = None

            with self.backend.generate_with_tools(messages, tools) as handle:
                for event in handle:
                    if self._cancelled:
                        handle.abort()
                        break
                    if isinstance(event, TextEvent):
                        text_parts.append(event.content)
                    elif isinstance(event, ToolCallEvent):
                        if self.doom_loop.check(event.name, event.args):
                            tripped = event
                            handle.abort()
                            break
                        calls.append(event)
                    elif isinstance(event, ErrorEvent):
                        stream_error = event.error
                        break

            batch = BatchResult(results=entries)
            if stream_error is not None:
                return self._fail(
                    f"Generation failed: {stream_error}", batch=batch, trace=trace
                )
            if tripped is not None:
                return self._trip(tripped.name, batch=batch, trace=trace)
            if self._cancelled:
                return self._cancel(batch=batch, trace=trace)

            content = "".join(text_parts)
            _log_payload(self.settings, "assistant_message", content)
            if not calls:
                final_content = content
                break

            messages.append(
                LLMMessage(
                    role="assistant",
                    content=content,
                    tool_calls=[
                        ToolCallRequest(id=call.id, name=call.name, args=call.args)
                        for call in calls
                    ],
                )
            )
            for call in calls:
                self.state.add_step(
                    WorkflowStep(
                        id=call.id,
                        name=call.name,
                        tool=call.name,
                        status=WorkflowStepStatus.IN_PROGRESS,
                    )
                )
                result = self._execute_call(call.name, call.args, intent.context)
                self._record_step(call.id, result)
                entries.append(BatchEntry(tool=call.name, result=result))
                trace.append(
                    {
                        "iteration": iteration,
                        "tool": call.name,
                        "args": call.args,
                        "result": result.model_dump(mode="json"),
                    }
                )
                messages.append(
                    LLMMessage(
                        role="tool",
                        tool_call_id=call.id,
                        content=json.dumps(result.model_dump(mode="json"), default=str),
                    )
                )
        else:
            logger.warning("Tool loop reached max iterations")
            return self._fail(
                f"Stopped after {self.settings.max_iterations} iterations without finishing.",
                batch=BatchResult(results=entries),
                trace=trace,
            )

        batch = BatchResult(results=entries)
        self.state.transition_to(WorkflowPhase.VERIFYING)
        self.state.transition_to(WorkflowPhase.COMPLETE)
        return self._result(
            final_content or "Done.",
            batch=batch,
            trace=trace,
            warnings=batch.errors,
        )

    # -- plan execution ---------------------------------------------------

    def _execute(self, intent: Intent, outcome: PlanOutcome) -> OrchestrationResult:
        plan = outcome.plan
        assert plan is not None
        context = intent.context

        self.state.transition_to(WorkflowPhase.EXECUTING)
        for step in plan.steps:
            self.state.add_step(
                WorkflowStep(id=step.id, name=step.description or step.tool, tool=step.tool)
            )

        calls = [BatchToolCall(name=step.tool, args=step.args) for step in plan.steps]
        use_parallel = (
            self.settings.parallel_execution
            and self.registry.plan_batch_mode(calls) == BatchMode.PARALLEL
        )
        if use_parallel:
            return self._execute_parallel(outcome, context, calls)

        entries: list[BatchEntry] = []
        trace: list[dict[str, Any]] = []
        for step in plan.steps:
            if self._cancelled:
                return self._cancel(outcome=outcome, batch=BatchResult(results=entries), trace=trace)
            if self.doom_loop.check(step.tool, step.args):
                return self._trip(
                    step.tool, outcome=outcome, batch=BatchResult(results=entries), trace=trace
                )

            self.state.update_step(step.id, status=WorkflowStepStatus.IN_PROGRESS)
            result = self._execute_call(step.tool, step.args, context)
            self._record_step(step.id, result)
            entries.append(BatchEntry(tool=step.tool, result=result))
            trace.append(
                {
                    "step": step.id,
                    "tool": step.tool,
                    "args": step.args,
                    "result": result.model_dump(mode="json"),
                }
            )
            if not result.success and self.settings.stop_on_error:
                logger.warning("Stopping plan after failed step %s", step.id)
                break

        return self._verify(outcome, BatchResult(results=entries), trace)

    def _execute_parallel(
        self,
        outcome: PlanOutcome,
        context: ExecutionContext,
        calls: list[BatchToolCall],
    ) -> OrchestrationResult:
        plan = outcome.plan
        assert plan is not None
        for step in plan.steps:
            if self.doom_loop.check(step.tool, step.args):
                return self._trip(step.tool, outcome=outcome)
        for step in plan.steps:
            self.state.update_step(step.id, status=WorkflowStepStatus.IN_PROGRESS)

        batch = self.registry.execute_batch(
            BatchRequest(
                tools=calls,
                mode=BatchMode.PARALLEL,
                stop_on_error=self.settings.stop_on_error,
            ),
            context,
        )
        trace = []
        for step, entry in zip(plan.steps, batch.results):
            self._record_step(step.id, entry.result)
            trace.append(
                {
                    "step": step.id,
                    "tool": step.tool,
                    "args": step.args,
                    "result": entry.result.model_dump(mode="json"),
                }
            )
        return self._verify(outcome, batch, trace)

    def _verify(
        self,
        outcome: PlanOutcome,
        batch: BatchResult,
        trace: list[dict[str, Any]],
    ) -> OrchestrationResult:
        plan = outcome.plan
        assert plan is not None
        if self._cancelled:
            return self._cancel(outcome=outcome, batch=batch, trace=trace)

        if not batch.success or len(batch.results) != len(plan.steps):
            errors = batch.errors
            return self._fail(
                errors[0] if errors else "Plan did not finish",
                outcome=outcome,
                batch=batch,
                trace=trace,
                warnings=errors,
            )

        self.state.transition_to(WorkflowPhase.VERIFYING)
        self.state.transition_to(WorkflowPhase.COMPLETE)
        return self._result(
            f"Completed: {plan.goal}",
            outcome=outcome,
            batch=batch,
            trace=trace,
        )

    def _execute_call(
        self,
        name: str,
        args: dict[str, Any],
        context: ExecutionContext,
    ) -> ToolResult:
        _log_payload(self.settings, f"tool_call {name}", args)
        try:
            result = self.registry.execute(name, args, context)
        except ToolExecutionError as exc:
            logger.exception("Tool %s failed", name)
            result = ToolResult(success=False, error=exc.message)
        _log_payload(self.settings, f"tool_result {name}", result.model_dump(mode="json"))
        return result

    def _record_step(self, step_id: str, result: ToolResult) -> None:
        if result.success:
            self.state.update_step(step_id, status=WorkflowStepStatus.COMPLETED)
        else:
            self.state.update_step(step_id, status=WorkflowStepStatus.FAILED, error=result.error)

    # -- run bookkeeping --------------------------------------------------

    def _begin(self, intent: Intent) -> OrchestrationResult | None:
        if not self.state.start(intent):
            return self._result(
                "Another request is still running.",
                warnings=["Workflow already active"],
            )
        self._cancelled = False
        self._pending = None
        self.doom_loop.reset()
        return None

    def _trip(self, tool: str, **kwargs: Any) -> OrchestrationResult:
        message = DOOM_LOOP_MESSAGE.format(tool=tool, count=self.doom_loop.threshold)
        logger.warning("Doom loop detected on %s", tool)
        return self._fail(message, doom_loop_tripped=True, **kwargs)

    def _fail(self, message: str, **kwargs: Any) -> OrchestrationResult:
        logger.warning("Workflow %s failed: %s", self.state.workflow_id, message)
        self.state.fail_workflow(message)
        return self._result(message, **kwargs)

    def _cancel(self, **kwargs: Any) -> OrchestrationResult:
        self.state.cancel_workflow()
        self._cancelled = False
        return self._result("Cancelled.", **kwargs)

    def _result(
        self,
        message: str,
        outcome: PlanOutcome | None = None,
        **kwargs: Any,
    ) -> OrchestrationResult:
        snapshot = self.state.get_state()
        if outcome is not None:
            kwargs.setdefault("source", outcome.source)
            kwargs.setdefault("thought", outcome.thought)
            kwargs.setdefault("plan", outcome.plan)
        return OrchestrationResult(
            workflow_id=snapshot.workflow_id,
            phase=snapshot.phase,
            message=message,
            **kwargs,
        )


def _log_payload(settings: OrchestrationSettings, label: str, payload: Any) -> None:
    if not settings.log_payloads:
        return
    if isinstance(payload, str):
        message = payload
    else:
        try:
            message = json.dumps(payload, default=str, ensure_ascii=True)
        except TypeError:
            message = str(payload)
    limit = settings.log_max_chars
    if limit > 0 and len(message) > limit:
        message = f"{message[:limit]}... [truncated]"
    logger.info("Orchestrator %s: %s", label, message)
