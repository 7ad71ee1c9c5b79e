"""Tool Orchestration Core.

Turns a natural-language editing request into a validated, risk-gated
sequence of tool calls by:
1. Tracking the request through workflow phases
2. Answering unambiguous commands on a deterministic fast path
3. Asking a generative backend for an analysis and a plan otherwise
4. Executing plan steps, sequentially or as a parallel batch
5. Stopping runaway repetition with a doom-loop detector

Usage:
    from agent.tool_orchestration import (
        ExecutionContext,
        Intent,
        OpenRouterBackend,
        ToolOrchestrator,
        ToolRegistry,
    )

    registry = ToolRegistry()

    @registry.tool("split_clip", parameters={...})
    def split_clip(args, context):
        ...

    orchestrator = ToolOrchestrator(registry, OpenRouterBackend())
    result = orchestrator.run(
        Intent(
            utterance="Split the selected clip at 00:15",
            context=ExecutionContext(
                sequence_id="seq-1",
                selected_clip_ids=("clip-1",),
                selected_track_ids=("track-1",),
            ),
        )
    )
"""

from .backends import (
    GenerativeBackend,
    InMemoryCallRecorder,
    OpenRouterBackend,
    ScriptedBackend,
    ScriptedResponse,
    StreamHandle,
    StreamItem,
)
from .config import OrchestrationSettings
from .doom_loop import DoomLoopDetector, canonicalize_args
from .errors import (
    ConfigurationError,
    GenerationError,
    OrchestrationError,
    PlanValidationError,
    ToolExecutionError,
    ToolNotFoundError,
    ValidationError,
)
from .fast_path import FastPathMatch, FastPathMatcher, FastPathStrategy
from .orchestrator import OrchestrationResult, ToolOrchestrator
from .planner import PlanBuilder, PlanOutcome, PlanSource
from .registry import ToolRegistry, ToolSpec
from .types import (
    BatchMode,
    BatchRequest,
    BatchResult,
    BatchToolCall,
    CompletionResult,
    ExecutionContext,
    FinishReason,
    Intent,
    LLMMessage,
    Plan,
    PlanStep,
    RiskLevel,
    Thought,
    ToolCategory,
    ToolMetadata,
    ToolResult,
    WorkflowPhase,
    WorkflowRun,
    WorkflowStep,
    WorkflowStepStatus,
)
from .workflow import VALID_TRANSITIONS, WorkflowStateMachine

__all__ = [
    # Orchestration
    "ToolOrchestrator",
    "OrchestrationResult",
    "PlanBuilder",
    "PlanOutcome",
    "PlanSource",
    "FastPathMatcher",
    "FastPathMatch",
    "FastPathStrategy",
    "DoomLoopDetector",
    "canonicalize_args",
    "WorkflowStateMachine",
    "VALID_TRANSITIONS",
    # Tools
    "ToolRegistry",
    "ToolSpec",
    # Backends
    "GenerativeBackend",
    "OpenRouterBackend",
    "ScriptedBackend",
    "ScriptedResponse",
    "StreamHandle",
    "StreamItem",
    "InMemoryCallRecorder",
    # Config
    "OrchestrationSettings",
    # Errors
    "OrchestrationError",
    "ConfigurationError",
    "ValidationError",
    "PlanValidationError",
    "ToolNotFoundError",
    "ToolExecutionError",
    "GenerationError",
    # Types
    "BatchMode",
    "BatchRequest",
    "BatchResult",
    "BatchToolCall",
    "CompletionResult",
    "ExecutionContext",
    "FinishReason",
    "Intent",
    "LLMMessage",
    "Plan",
    "PlanStep",
    "RiskLevel",
    "Thought",
    "ToolCategory",
    "ToolMetadata",
    "ToolResult",
    "WorkflowPhase",
    "WorkflowRun",
    "WorkflowStep",
    "WorkflowStepStatus",
]
