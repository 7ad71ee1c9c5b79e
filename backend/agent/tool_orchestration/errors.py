"""Error taxonomy for the tool-orchestration core.

Only conditions that callers are expected to handle as exceptions live here.
Invalid workflow transitions and doom-loop trips are reported through return
values instead.
"""

from __future__ import annotations

from typing import Any


class OrchestrationError(Exception):
    """Base class for orchestration errors."""

    code = "ORCHESTRATION_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "error_code": self.code,
            "type": type(self).__name__,
            "details": self.details,
        }


class ConfigurationError(OrchestrationError):
    """Raised when a component is constructed with invalid settings."""

    code = "CONFIG_ERROR"

    def __init__(self, message: str, invalid_field: str):
        self.invalid_field = invalid_field
        super().__init__(message, {"invalid_field": invalid_field})


class ValidationError(OrchestrationError):
    """Raised when arguments or a plan fail validation before execution."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = list(errors or [])
        super().__init__(message, {"errors": self.errors})

    def __str__(self) -> str:
        if not self.errors:
            return self.message
        return f"{self.message}: {'; '.join(self.errors)}"


class PlanValidationError(ValidationError):
    """Raised when a generated plan references unknown tools or bad args."""

    code = "PLAN_VALIDATION_ERROR"


class ToolNotFoundError(OrchestrationError):
    """An unregistered tool was requested.

    The registry reports this as a failed ToolResult rather than raising it;
    the class exists so the message and code stay consistent.
    """

    code = "TOOL_NOT_FOUND"

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Tool '{tool_name}' not found", {"tool": tool_name})


class ToolExecutionError(OrchestrationError):
    """A registered tool failed while running."""

    code = "TOOL_EXECUTION_ERROR"

    def __init__(self, tool_name: str, message: str, details: dict[str, Any] | None = None):
        self.tool_name = tool_name
        super().__init__(f"{tool_name}: {message}", {"tool": tool_name, **(details or {})})


class GenerationError(OrchestrationError):
    """The generative backend failed or returned an unusable value."""

    code = "GENERATION_ERROR"

    def __init__(self, message: str, kind: str | None = None, details: dict[str, Any] | None = None):
        self.kind = kind
        super().__init__(message, {"kind": kind, **(details or {})})
