from __future__ import annotations

import logging
import os
from typing import Callable, TypeVar

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "TOOL_ORCHESTRATION_"

N = TypeVar("N", int, float)


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)


def _env_number(name: str, default: N, cast: Callable[[str], N]) -> N:
    # Import must not fail on a bad value; from_env() reports it properly.
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None:
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s%s=%r, using %s", ENV_PREFIX, name, raw, default)
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes"}


MODEL = _env("MODEL", "google/gemini-3-pro-preview")
OPENROUTER_BASE_URL = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
FAST_PATH_MIN_CONFIDENCE = _env_number("FAST_PATH_MIN_CONFIDENCE", 0.85, float)
DOOM_LOOP_THRESHOLD = _env_number("DOOM_LOOP_THRESHOLD", 3, int)
MAX_ITERATIONS = _env_number("MAX_ITERATIONS", 10, int)
MAX_PLAN_STEPS = _env_number("MAX_PLAN_STEPS", 20, int)
PARALLEL_WORKERS = _env_number("PARALLEL_WORKERS", 4, int)
PARALLEL_EXECUTION = _env_bool("PARALLEL_EXECUTION")
STOP_ON_ERROR = _env_bool("STOP_ON_ERROR", True)
LOG_PAYLOADS = _env_bool("LOG_PAYLOADS")
LOG_MAX_CHARS = _env_number("LOG_MAX_CHARS", 2000, int)


class OrchestrationSettings(BaseModel):
    """Tunables for the planner, executor and orchestration loop."""

    model: str = Field(default=MODEL, description="Model id sent to the generative backend")
    openrouter_base_url: str = Field(default=OPENROUTER_BASE_URL)
    fast_path_min_confidence: float = Field(default=FAST_PATH_MIN_CONFIDENCE, ge=0.0, le=1.0)
    doom_loop_threshold: int = Field(
        default=DOOM_LOOP_THRESHOLD,
        ge=2,
        description="Identical consecutive tool calls that trip the doom-loop detector",
    )
    max_iterations: int = Field(
        default=MAX_ITERATIONS,
        ge=1,
        description="Upper bound on backend turns in the function-calling loop",
    )
    max_plan_steps: int = Field(default=MAX_PLAN_STEPS, ge=1)
    parallel_workers: int = Field(default=PARALLEL_WORKERS, ge=1)
    parallel_execution: bool = Field(
        default=PARALLEL_EXECUTION,
        description="Run a plan as one parallel batch when every tool allows it",
    )
    stop_on_error: bool = Field(default=STOP_ON_ERROR)
    log_payloads: bool = Field(default=LOG_PAYLOADS)
    log_max_chars: int = Field(default=LOG_MAX_CHARS, ge=0)

    @classmethod
    def from_env(cls) -> "OrchestrationSettings":
        """Build settings from the current environment.

        Unlike the module-level defaults, which are read once at import time,
        this re-reads every variable.

        Raises:
            ConfigurationError: If a variable is malformed or out of range.
        """
        values: dict[str, object] = {}
        for field_name in cls.model_fields:
            raw = os.getenv(f"{ENV_PREFIX}{field_name.upper()}")
            if raw is not None:
                values[field_name] = raw
        base_url = os.getenv("OPENROUTER_BASE_URL")
        if base_url:
            values["openrouter_base_url"] = base_url

        try:
            return cls.model_validate(values)
        except PydanticValidationError as exc:
            first = exc.errors()[0]
            field = str(first["loc"][0]) if first.get("loc") else "settings"
            raise ConfigurationError(
                f"Invalid orchestration setting '{field}': {first['msg']}",
                invalid_field=field,
            ) from exc
