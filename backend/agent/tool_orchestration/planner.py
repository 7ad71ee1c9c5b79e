"""Plan building: fast path first, generative analysis and planning otherwise."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Sequence

from pydantic import BaseModel

from .backends.base import GenerativeBackend
from .config import OrchestrationSettings
from .errors import PlanValidationError
from .fast_path import FastPathMatcher, FastPathStrategy
from .prompts import THINKER_SYSTEM_PROMPT, build_context_prompt, build_planner_prompt
from .registry import ToolRegistry
from .types import Intent, LLMMessage, Plan, PlanStep, Thought, max_risk

logger = logging.getLogger(__name__)


class PlanSource(str, Enum):
    FAST_PATH = "fast_path"
    GENERATIVE = "generative"


class PlanOutcome(BaseModel):
    source: PlanSource
    thought: Thought
    plan: Plan | None = None
    strategy: FastPathStrategy | None = None
    confidence: float | None = None

    @property
    def needs_clarification(self) -> bool:
        return self.plan is None and self.thought.needs_more_info


class PlanBuilder:
    """Turns an intent into a validated plan."""

    def __init__(
        self,
        backend: GenerativeBackend,
        registry: ToolRegistry,
        fast_path: FastPathMatcher | None = None,
        settings: OrchestrationSettings | None = None,
    ):
        self.backend = backend
        self.registry = registry
        self.settings = settings or OrchestrationSettings()
        self.fast_path = fast_path or FastPathMatcher(self.settings.fast_path_min_confidence)

    def build(
        self,
        intent: Intent,
        history: Sequence[LLMMessage] | None = None,
        on_planning: Callable[[], object] | None = None,
    ) -> PlanOutcome:
        """Produce a plan for ``intent``.

        Args:
            intent: The user request and editor context
            history: Prior conversation turns, oldest first
            on_planning: Called once analysis is done and planning starts

        Returns:
            PlanOutcome. ``plan`` is None when the analysis asks for clarification.

        Raises:
            GenerationError: If the backend fails during analysis or planning.
            PlanValidationError: If the generated plan cannot be executed.
        """
        match = self.fast_path.match(intent.utterance, intent.context, self.registry)
        if match is not None:
            if on_planning is not None:
                on_planning()
            return PlanOutcome(
                source=PlanSource.FAST_PATH,
                thought=match.thought,
                plan=match.plan,
                strategy=match.strategy,
                confidence=match.confidence,
            )

        thought = self.think(intent, history)
        if thought.needs_more_info:
            logger.info("Planner needs clarification: %s", thought.clarification_question)
            return PlanOutcome(source=PlanSource.GENERATIVE, thought=thought)

        if on_planning is not None:
            on_planning()
        plan = self.plan(thought, intent, history)
        return PlanOutcome(source=PlanSource.GENERATIVE, thought=thought, plan=plan)

    def think(self, intent: Intent, history: Sequence[LLMMessage] | None = None) -> Thought:
        system = THINKER_SYSTEM_PROMPT
        context_prompt = build_context_prompt(intent.context)
        if context_prompt:
            system = f"{system}\n{context_prompt}"
        messages = [
            LLMMessage(role="system", content=system),
            *(history or []),
            LLMMessage(role="user", content=intent.utterance),
        ]
        return self.backend.generate_structured(messages, Thought)

    def plan(
        self,
        thought: Thought,
        intent: Intent,
        history: Sequence[LLMMessage] | None = None,
    ) -> Plan:
        system = build_planner_prompt(thought, self.registry)
        context_prompt = build_context_prompt(intent.context)
        if context_prompt:
            system = f"{system}\n\n{context_prompt}"
        messages = [
            LLMMessage(role="system", content=system),
            *(history or []),
            LLMMessage(role="user", content=intent.utterance),
        ]
        raw_plan = self.backend.generate_structured(messages, Plan)
        return self.finalize_plan(raw_plan)

    def finalize_plan(self, plan: Plan) -> Plan:
        """Check a plan against the registry and apply tool metadata.

        Step risk is raised to the tool's declared risk when that is higher;
        approval flags and missing durations come from tool metadata.

        Raises:
            PlanValidationError: If the plan is empty or too long, repeats a
                step id, names an unknown tool, or passes invalid arguments.
        """
        errors: list[str] = []
        if not plan.steps:
            errors.append("Plan has no steps")
        if len(plan.steps) > self.settings.max_plan_steps:
            errors.append(
                f"Plan has {len(plan.steps)} steps; the limit is {self.settings.max_plan_steps}"
            )

        seen: set[str] = set()
        for step in plan.steps:
            if step.id in seen:
                errors.append(f"Duplicate step id: {step.id}")
            seen.add(step.id)
            validation = self.registry.validate_args(step.tool, step.args)
            errors.extend(f"Step {step.id}: {error}" for error in validation.errors)

        if errors:
            raise PlanValidationError("Generated plan is not executable", errors)

        steps: list[PlanStep] = []
        for step in plan.steps:
            metadata = self.registry.get_metadata(step.tool)
            steps.append(
                step.model_copy(
                    update={
                        "risk_level": max_risk(step.risk_level, metadata.risk_level),
                        "needs_approval": step.needs_approval or metadata.needs_approval,
                        "estimated_duration": step.estimated_duration
                        or (metadata.estimated_duration or 0.0),
                    }
                )
            )

        finalized = Plan(
            goal=plan.goal,
            steps=steps,
            rollback_strategy=plan.rollback_strategy,
        )
        logger.info(
            "Plan finalized: %s step(s), risk=%s, requires_approval=%s",
            len(finalized.steps),
            finalized.risk_level.value,
            finalized.requires_approval,
        )
        return finalized
