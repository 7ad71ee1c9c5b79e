"""System prompts for the analysis, planning and tool-calling phases."""

from __future__ import annotations

import json

from .registry import ToolRegistry
from .types import ExecutionContext, Thought

THINKER_SYSTEM_PROMPT = """You are the analysis stage of a video editing assistant. Read the user's request and the editor context, then describe what they want before anything is planned.

## Output

Return JSON with:
- `understanding`: one or two sentences restating the request in concrete editing terms
- `requirements`: what must be true for the edit to succeed (selected clip, a time, a track)
- `uncertainties`: anything ambiguous in the request
- `approach`: how the edit should be carried out with the available tools
- `needs_more_info`: true only when the request cannot be planned without asking the user
- `clarification_question`: the single question to ask when `needs_more_info` is true

## Guidelines

- Times in the request are seconds unless a unit or timecode says otherwise. `MM:SS` and `HH:MM:SS` are timecodes.
- "Selected clip" refers to the clip ids in the context. Do not invent ids.
- Prefer asking over guessing when the target of a destructive edit is unclear.
"""

PLANNER_SYSTEM_PROMPT = """You are the planning stage of a video editing assistant. Turn the analysis into an ordered list of tool calls.

## Output

Return JSON with:
- `goal`: the overall outcome
- `steps`: ordered tool calls, each with `id`, `description`, `tool`, `args`, `risk_level` (low, medium, high, critical) and `estimated_duration` in milliseconds
- `rollback_strategy`: how to undo the plan

## Rules

- Only use tools from the list below, with arguments that match their schemas exactly.
- Step ids must be unique.
- Use the fewest steps that satisfy the request.
- Mark deletions and anything that removes media as `high` risk.
"""

TOOL_LOOP_SYSTEM_PROMPT = """You are a video editing assistant with direct access to editing tools.

Call tools to carry out the user's request. Use the ids from the editor context; never invent clip or track ids. After the edit is done, reply with a short summary and no further tool calls. Never repeat an identical tool call that already succeeded.
"""


def build_context_prompt(context: ExecutionContext) -> str:
    """Describe the editor context for the model.

    Args:
        context: Current selection, playhead and sequence

    Returns:
        Context section, or an empty string when nothing is known
    """
    parts = []
    if context.project_id:
        parts.append(f"- Project: {context.project_id}")
    if context.sequence_id:
        parts.append(f"- Sequence: {context.sequence_id}")
    if context.selected_clip_ids:
        parts.append(f"- Selected clips: {', '.join(context.selected_clip_ids)}")
    if context.selected_track_ids:
        parts.append(f"- Selected tracks: {', '.join(context.selected_track_ids)}")
    if context.playhead_position is not None:
        parts.append(f"- Playhead: {context.playhead_position:.3f}s")
    if context.timeline_duration is not None:
        parts.append(f"- Sequence duration: {context.timeline_duration:.3f}s")

    if parts:
        return "## Editor Context\n" + "\n".join(parts)
    return ""


def build_tools_prompt(registry: ToolRegistry) -> str:
    lines = []
    for tool in registry.get_available_tools():
        definition = registry.get_tool_definition(tool.name)
        schema = json.dumps(definition.parameters if definition else {}, sort_keys=True)
        flags = [f"risk={tool.metadata.risk_level.value}"]
        if tool.metadata.needs_approval:
            flags.append("needs approval")
        lines.append(f"- `{tool.name}` ({', '.join(flags)}): {tool.description}\n  args: {schema}")
    if not lines:
        return "## Available Tools\n(none)"
    return "## Available Tools\n" + "\n".join(lines)


def build_planner_prompt(thought: Thought, registry: ToolRegistry) -> str:
    analysis = json.dumps(thought.model_dump(), ensure_ascii=False, indent=2)
    return f"{PLANNER_SYSTEM_PROMPT}\n{build_tools_prompt(registry)}\n\n## Analysis\n{analysis}"
