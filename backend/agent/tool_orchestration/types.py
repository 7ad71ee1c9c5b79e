"""Types for the tool-orchestration core.

This module defines the contracts shared by the planner, the tool registry,
the generative backends and the workflow state machine: intents, thoughts,
plans, tool metadata and results, batch requests, workflow bookkeeping and
backend stream events.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


def risk_rank(level: RiskLevel | str) -> int:
    return _RISK_ORDER.index(RiskLevel(level))


def max_risk(*levels: RiskLevel | str) -> RiskLevel:
    if not levels:
        return RiskLevel.LOW
    return max((RiskLevel(level) for level in levels), key=risk_rank)


class ToolCategory(str, Enum):
    TIMELINE = "timeline"
    CLIP = "clip"
    TRACK = "track"
    EFFECT = "effect"
    TRANSITION = "transition"
    AUDIO = "audio"
    CAPTION = "caption"
    EXPORT = "export"
    PROJECT = "project"
    ANALYSIS = "analysis"
    UTILITY = "utility"


# ---------------------------------------------------------------------------
# Intent and planning
# ---------------------------------------------------------------------------


class ExecutionContext(BaseModel):
    """Ambient addressing info passed unmodified to every tool call."""

    model_config = ConfigDict(frozen=True)

    project_id: str | None = None
    session_id: str | None = None
    sequence_id: str | None = None
    selected_clip_ids: tuple[str, ...] = ()
    selected_track_ids: tuple[str, ...] = ()
    playhead_position: float | None = Field(
        default=None,
        description="Playhead position in seconds",
    )
    timeline_duration: float | None = Field(
        default=None,
        description="Sequence duration in seconds",
    )


class Intent(BaseModel):
    """A raw user utterance together with the editor context it was typed in."""

    model_config = ConfigDict(frozen=True)

    utterance: str
    context: ExecutionContext = Field(default_factory=ExecutionContext)


class Thought(BaseModel):
    """The analysis step produced once per attempt before planning."""

    understanding: str = Field(description="What the user is asking for")
    requirements: list[str] = Field(default_factory=list)
    uncertainties: list[str] = Field(default_factory=list)
    approach: str = Field(default="", description="How the request will be satisfied")
    needs_more_info: bool = Field(
        default=False,
        description="True when the request cannot be planned without clarification",
    )
    clarification_question: str | None = None


class PlanStep(BaseModel):
    """One proposed tool invocation."""

    id: str = Field(description="Unique step identifier")
    description: str = Field(default="", description="Human-readable description")
    tool: str = Field(description="Name of the tool to execute")
    args: dict[str, Any] = Field(default_factory=dict, description="Arguments for the tool")
    risk_level: RiskLevel = Field(default=RiskLevel.LOW)
    estimated_duration: float = Field(default=0.0, ge=0.0, description="Estimated duration in ms")
    needs_approval: bool = Field(
        default=False,
        description="Set from tool metadata when the tool always needs confirmation",
    )

    @property
    def requires_approval(self) -> bool:
        return self.needs_approval or risk_rank(self.risk_level) >= risk_rank(RiskLevel.HIGH)


class Plan(BaseModel):
    """An ordered set of tool invocations proposed to satisfy an intent."""

    goal: str = Field(description="The overall goal of the plan")
    steps: list[PlanStep] = Field(default_factory=list)
    estimated_total_duration: float | None = Field(
        default=None,
        description="Total estimated duration in ms (defaults to the sum of steps)",
    )
    rollback_strategy: str = Field(default="Use the standard undo stack")

    @model_validator(mode="after")
    def _fill_total_duration(self) -> "Plan":
        if self.estimated_total_duration is None:
            self.estimated_total_duration = sum(step.estimated_duration for step in self.steps)
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def requires_approval(self) -> bool:
        return any(step.requires_approval for step in self.steps)

    @property
    def risk_level(self) -> RiskLevel:
        return max_risk(*(step.risk_level for step in self.steps))


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class ToolMetadata(BaseModel):
    needs_approval: bool = False
    risk_level: RiskLevel = RiskLevel.LOW
    supports_undo: bool = False
    parallelizable: bool = True
    affects_timeline: bool = False
    warning_message: str | None = None
    estimated_duration: float | None = Field(default=None, description="Estimated duration in ms")


class ToolInfo(BaseModel):
    name: str
    description: str
    category: ToolCategory
    metadata: ToolMetadata = Field(default_factory=ToolMetadata)


class ToolDefinition(ToolInfo):
    parameters: dict[str, Any] = Field(default_factory=dict, description="JSON Schema")
    required: list[str] = Field(default_factory=list)


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


class ToolResult(BaseModel):
    success: bool
    data: Any = None
    error: str | None = None
    duration: float = Field(default=0.0, description="Wall time in ms")
    undoable: bool = False


class BatchMode(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class BatchToolCall(BaseModel):
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class BatchRequest(BaseModel):
    tools: list[BatchToolCall] = Field(default_factory=list)
    mode: BatchMode = BatchMode.SEQUENTIAL
    stop_on_error: bool = True


class BatchEntry(BaseModel):
    tool: str
    result: ToolResult


class BatchResult(BaseModel):
    """Aggregate of a batch run; counts and success derive from ``results``."""

    results: list[BatchEntry] = Field(default_factory=list)
    total_duration: float = 0.0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success_count(self) -> int:
        return sum(1 for entry in self.results if entry.result.success)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def failure_count(self) -> int:
        return len(self.results) - self.success_count

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success(self) -> bool:
        return self.failure_count == 0

    @property
    def errors(self) -> list[str]:
        return [
            f"{entry.tool}: {entry.result.error}"
            for entry in self.results
            if not entry.result.success
        ]


# ---------------------------------------------------------------------------
# Workflow bookkeeping
# ---------------------------------------------------------------------------


class WorkflowPhase(str, Enum):
    IDLE = "idle"
    ANALYZING = "analyzing"
    PLANNING = "planning"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_PHASES = frozenset({WorkflowPhase.COMPLETE, WorkflowPhase.FAILED, WorkflowPhase.CANCELLED})


class WorkflowStepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowStep(BaseModel):
    """UI-facing progress entry. Distinct from PlanStep."""

    id: str
    name: str
    status: WorkflowStepStatus = WorkflowStepStatus.PENDING
    tool: str | None = None
    error: str | None = None


class WorkflowRun(BaseModel):
    workflow_id: str | None = None
    intent: Intent | None = None
    phase: WorkflowPhase = WorkflowPhase.IDLE
    phase_history: list[WorkflowPhase] = Field(default_factory=list)
    steps: list[WorkflowStep] = Field(default_factory=list)
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


# ---------------------------------------------------------------------------
# Generative backend contracts
# ---------------------------------------------------------------------------


class ToolCallRequest(BaseModel):
    id: str
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class LLMMessage(BaseModel):
    role: Literal["system", "user", "assistant", "tool"]
    content: str | None = ""
    tool_call_id: str | None = None
    tool_calls: list[ToolCallRequest] | None = None


class TextEvent(BaseModel):
    type: Literal["text"] = "text"
    content: str


class ToolCallEvent(BaseModel):
    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    error: str


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"


StreamEvent = Annotated[
    Union[TextEvent, ToolCallEvent, ErrorEvent, DoneEvent],
    Field(discriminator="type"),
]


class FinishReason(str, Enum):
    STOP = "stop"
    TOOL_CALL = "tool_call"
    LENGTH = "length"


class CompletionResult(BaseModel):
    content: str = ""
    finish_reason: FinishReason = FinishReason.STOP
    tool_calls: list[ToolCallRequest] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_finish_reason(self) -> "CompletionResult":
        has_calls = bool(self.tool_calls)
        if has_calls != (self.finish_reason == FinishReason.TOOL_CALL):
            raise ValueError(
                "finish_reason must be 'tool_call' exactly when tool_calls is non-empty"
            )
        return self

    @classmethod
    def from_parts(
        cls,
        content: str | None,
        tool_calls: list[ToolCallRequest] | None = None,
        truncated: bool = False,
    ) -> "CompletionResult":
        if tool_calls:
            reason = FinishReason.TOOL_CALL
        elif truncated:
            reason = FinishReason.LENGTH
        else:
            reason = FinishReason.STOP
        return cls(content=content or "", finish_reason=reason, tool_calls=tool_calls or [])


class CallKind(str, Enum):
    STREAM = "stream"
    TOOLS = "tools"
    STRUCTURED = "structured"
    COMPLETE = "complete"


class CallOutcome(str, Enum):
    PENDING = "pending"
    OK = "ok"
    ERROR = "error"
    ABORTED = "aborted"


class GenerationCall(BaseModel):
    """Observable record of one backend call; ``outcome`` is filled in on exit."""

    kind: CallKind
    messages: list[LLMMessage] = Field(default_factory=list)
    tools: list[str] | None = None
    schema_name: str | None = None
    outcome: CallOutcome = CallOutcome.PENDING
    error: str | None = None
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None
