"""Tool registry and executor.

Tools are registered with a JSON-schema parameter description, a handler and
risk metadata. The registry answers capability queries for the planner and the
fast path, validates arguments, and runs single calls or batches.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable

from .config import PARALLEL_WORKERS
from .errors import ToolExecutionError, ToolNotFoundError
from .types import (
    BatchEntry,
    BatchMode,
    BatchRequest,
    BatchResult,
    BatchToolCall,
    ExecutionContext,
    RiskLevel,
    ToolCategory,
    ToolDefinition,
    ToolInfo,
    ToolMetadata,
    ToolResult,
    ValidationResult,
    max_risk,
    risk_rank,
)

logger = logging.getLogger(__name__)

# Handlers return either a ToolResult or a plain value that becomes ``data``.
ToolHandler = Callable[[dict[str, Any], ExecutionContext], Any]

_JSON_TYPE_NAMES = {
    "string": "a string",
    "number": "a number",
    "integer": "an integer",
    "boolean": "a boolean",
    "array": "an array",
    "object": "an object",
}


@dataclass
class ToolSpec:
    name: str
    description: str
    handler: ToolHandler
    category: ToolCategory = ToolCategory.UTILITY
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    metadata: ToolMetadata = field(default_factory=ToolMetadata)

    @property
    def required(self) -> list[str]:
        return list(self.parameters.get("required") or [])


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


def _type_error(name: str, value: Any, schema: dict[str, Any]) -> str | None:
    expected = schema.get("type")
    if expected == "string":
        ok = isinstance(value, str)
    elif expected == "number":
        ok = isinstance(value, (int, float)) and not isinstance(value, bool)
    elif expected == "integer":
        ok = (
            isinstance(value, int) and not isinstance(value, bool)
        ) or (isinstance(value, float) and value.is_integer())
    elif expected == "boolean":
        ok = isinstance(value, bool)
    elif expected == "array":
        ok = isinstance(value, (list, tuple))
    elif expected == "object":
        ok = isinstance(value, dict)
    else:
        ok = True

    if not ok:
        return (
            f"Parameter '{name}' must be {_JSON_TYPE_NAMES[expected]}, "
            f"got {type(value).__name__}"
        )

    allowed = schema.get("enum")
    if allowed and value not in allowed:
        return f"Parameter '{name}' must be one of: {', '.join(str(v) for v in allowed)}"
    return None


class ToolRegistry:
    """Catalog of executable tools."""

    def __init__(self, parallel_workers: int = PARALLEL_WORKERS):
        self._tools: dict[str, ToolSpec] = {}
        self.parallel_workers = max(1, parallel_workers)

    # -- registration -----------------------------------------------------

    def register(self, spec: ToolSpec) -> None:
        self._tools[spec.name] = spec
        logger.debug("Registered tool: %s (%s)", spec.name, spec.category.value)

    def register_many(self, specs: Iterable[ToolSpec]) -> None:
        for spec in specs:
            self.register(spec)

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def clear(self) -> None:
        self._tools.clear()

    def tool(
        self,
        name: str | None = None,
        *,
        description: str = "",
        category: ToolCategory = ToolCategory.UTILITY,
        parameters: dict[str, Any] | None = None,
        metadata: ToolMetadata | None = None,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator that registers a function as a tool."""

        def decorator(func: ToolHandler) -> ToolHandler:
            self.register(
                ToolSpec(
                    name=name or func.__name__,
                    description=description or (func.__doc__ or "").strip(),
                    handler=func,
                    category=category,
                    parameters=parameters
                    or {"type": "object", "properties": {}, "required": []},
                    metadata=metadata or ToolMetadata(),
                )
            )
            return func

        return decorator

    # -- queries ----------------------------------------------------------

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def get_spec(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def get_tool_definition(self, name: str) -> ToolDefinition | None:
        spec = self._tools.get(name)
        if spec is None:
            return None
        return ToolDefinition(
            name=spec.name,
            description=spec.description,
            category=spec.category,
            metadata=spec.metadata,
            parameters=spec.parameters,
            required=spec.required,
        )

    def get_available_tools(self, category: ToolCategory | str | None = None) -> list[ToolInfo]:
        wanted = ToolCategory(category) if category is not None else None
        return [
            self._to_info(spec)
            for spec in self._tools.values()
            if wanted is None or spec.category == wanted
        ]

    def get_tools_by_category(self) -> dict[str, list[ToolInfo]]:
        grouped: dict[str, list[ToolInfo]] = {}
        for spec in self._tools.values():
            grouped.setdefault(spec.category.value, []).append(self._to_info(spec))
        return grouped

    def get_tools_by_risk(self, max_level: RiskLevel | str) -> list[ToolInfo]:
        """Return tools whose risk is at or below ``max_level``."""
        ceiling = risk_rank(max_level)
        return [
            self._to_info(spec)
            for spec in self._tools.values()
            if risk_rank(spec.metadata.risk_level) <= ceiling
        ]

    def get_metadata(self, name: str) -> ToolMetadata | None:
        spec = self._tools.get(name)
        return spec.metadata if spec else None

    def risk_for(self, name: str) -> RiskLevel:
        spec = self._tools.get(name)
        return spec.metadata.risk_level if spec else RiskLevel.LOW

    def requires_approval(self, name: str, risk: RiskLevel | str | None = None) -> bool:
        """Whether a call to ``name`` at ``risk`` must pass the approval gate."""
        spec = self._tools.get(name)
        if spec is not None and spec.metadata.needs_approval:
            return True
        level = max_risk(risk or RiskLevel.LOW, self.risk_for(name))
        return risk_rank(level) >= risk_rank(RiskLevel.HIGH)

    def plan_batch_mode(self, calls: Iterable[BatchToolCall]) -> BatchMode:
        """Pick the batch mode a caller should request for ``calls``.

        Any unknown or non-parallelizable tool forces sequential execution.
        """
        calls = list(calls)
        if len(calls) < 2:
            return BatchMode.SEQUENTIAL
        for call in calls:
            spec = self._tools.get(call.name)
            if spec is None or not spec.metadata.parallelizable:
                return BatchMode.SEQUENTIAL
        return BatchMode.PARALLEL

    def to_openai_tools(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": spec.name,
                    "description": spec.description,
                    "parameters": spec.parameters,
                },
            }
            for spec in self._tools.values()
        ]

    # -- validation -------------------------------------------------------

    def validate_args(self, name: str, args: dict[str, Any] | None) -> ValidationResult:
        spec = self._tools.get(name)
        if spec is None:
            return ValidationResult(valid=False, errors=[str(ToolNotFoundError(name))])
        if not isinstance(args, dict):
            return ValidationResult(valid=False, errors=["Arguments must be an object"])

        errors: list[str] = []
        for required in spec.required:
            if args.get(required) is None:
                errors.append(f"Missing required field: {required}")

        properties = spec.parameters.get("properties") or {}
        for key, value in args.items():
            prop_schema = properties.get(key)
            if not prop_schema or value is None:
                continue
            error = _type_error(key, value, prop_schema)
            if error:
                errors.append(error)

        return ValidationResult(valid=not errors, errors=errors)

    # -- execution --------------------------------------------------------

    def execute(
        self,
        name: str,
        args: dict[str, Any],
        context: ExecutionContext,
    ) -> ToolResult:
        """Execute a single tool.

        Args:
            name: Registered tool name
            args: Tool arguments
            context: Execution context passed through to the handler

        Returns:
            ToolResult. Unknown tools and invalid arguments are reported as
            ``success=False`` results.

        Raises:
            ToolExecutionError: If the tool handler itself raises.
        """
        start = time.perf_counter()
        spec = self._tools.get(name)
        if spec is None:
            logger.warning("Requested unknown tool: %s", name)
            return ToolResult(
                success=False,
                error=str(ToolNotFoundError(name)),
                duration=_elapsed_ms(start),
            )

        validation = self.validate_args(name, args)
        if not validation.valid:
            logger.warning("Invalid arguments for %s: %s", name, validation.errors)
            return ToolResult(
                success=False,
                error=f"Invalid arguments: {'; '.join(validation.errors)}",
                duration=_elapsed_ms(start),
            )

        try:
            outcome = spec.handler(dict(args), context)
        except ToolExecutionError:
            raise
        except Exception as exc:
            raise ToolExecutionError(name, f"{type(exc).__name__}: {exc}") from exc

        duration = _elapsed_ms(start)
        if isinstance(outcome, ToolResult):
            return outcome.model_copy(
                update={
                    "duration": duration,
                    "undoable": outcome.success and spec.metadata.supports_undo,
                }
            )
        return ToolResult(
            success=True,
            data=outcome,
            duration=duration,
            undoable=spec.metadata.supports_undo,
        )

    def execute_batch(self, request: BatchRequest, context: ExecutionContext) -> BatchResult:
        """Execute several tool calls as a unit.

        Sequential mode honors ``stop_on_error`` by not issuing further calls
        after the first failure. Parallel mode dispatches every call up front,
        so ``stop_on_error`` cannot retract anything; failures only show up in
        the aggregate.
        """
        start = time.perf_counter()

        if request.mode == BatchMode.PARALLEL:
            for call in request.tools:
                spec = self._tools.get(call.name)
                if spec is not None and not spec.metadata.parallelizable:
                    logger.warning(
                        "Tool %s is not parallelizable but was sent in a parallel batch",
                        call.name,
                    )
            entries = self._run_parallel(request.tools, context)
        else:
            entries = []
            for call in request.tools:
                result = self._execute_in_batch(call, context)
                entries.append(BatchEntry(tool=call.name, result=result))
                if not result.success and request.stop_on_error:
                    logger.warning("Stopping batch after failure in %s", call.name)
                    break

        batch = BatchResult(results=entries, total_duration=_elapsed_ms(start))
        logger.info(
            "Batch finished: mode=%s success=%s failed=%s",
            request.mode.value,
            batch.success_count,
            batch.failure_count,
        )
        return batch

    def _run_parallel(
        self,
        calls: list[BatchToolCall],
        context: ExecutionContext,
    ) -> list[BatchEntry]:
        if not calls:
            return []

        results: dict[int, ToolResult] = {}
        workers = min(self.parallel_workers, len(calls))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(self._execute_in_batch, call, context): index
                for index, call in enumerate(calls)
            }
            for future in as_completed(futures):
                results[futures[future]] = future.result()

        return [
            BatchEntry(tool=call.name, result=results[index])
            for index, call in enumerate(calls)
        ]

    def _execute_in_batch(self, call: BatchToolCall, context: ExecutionContext) -> ToolResult:
        start = time.perf_counter()
        try:
            return self.execute(call.name, call.args, context)
        except ToolExecutionError as exc:
            logger.exception("Tool execution failed inside batch: %s", call.name)
            return ToolResult(success=False, error=exc.message, duration=_elapsed_ms(start))

    # -- helpers ----------------------------------------------------------

    @staticmethod
    def _to_info(spec: ToolSpec) -> ToolInfo:
        return ToolInfo(
            name=spec.name,
            description=spec.description,
            category=spec.category,
            metadata=spec.metadata,
        )
