"""Deterministic fast path for unambiguous editing commands.

A small, fixed-priority set of patterns (split, trim, move, add caption,
delete range) is tried against the utterance. A match produces a one-step
plan without calling the generative backend. Anything uncertain returns
``None`` so the request falls through to the generative planner: a false
positive could run a destructive edit with no reasoning and no confirmation.
"""

from __future__ import annotations

import logging
import math
import re
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel

from .config import FAST_PATH_MIN_CONFIDENCE
from .registry import ToolRegistry
from .types import ExecutionContext, Plan, PlanStep, Thought

logger = logging.getLogger(__name__)

DEFAULT_STEP_DURATION = 150.0


class FastPathStrategy(str, Enum):
    SPLIT = "split"
    TRIM = "trim"
    MOVE = "move"
    ADD_CAPTION = "add_caption"
    DELETE_RANGE = "delete_range"


class FastPathMatch(BaseModel):
    strategy: FastPathStrategy
    confidence: float
    thought: Thought
    plan: Plan


# ---------------------------------------------------------------------------
# Time expressions
# ---------------------------------------------------------------------------

_SECOND_UNITS = r"seconds?|secs?|s|초"
_MINUTE_UNITS = r"minutes?|mins?|m|분"
_NO_LETTER = r"(?![A-Za-z])"

_TIMECODE_RE = re.compile(r"(?<![\d:.])\d{1,2}:\d{1,2}(?::\d{1,2})?(?:\.\d+)?(?![\d:])")
_KOREAN_COMPOSITE_RE = re.compile(r"(\d+)\s*분\s*(\d+(?:\.\d+)?)\s*초?")
_SECONDS_RE = re.compile(rf"(\d+(?:\.\d+)?)\s*(?:{_SECOND_UNITS}){_NO_LETTER}", re.IGNORECASE)
_MINUTES_RE = re.compile(rf"(\d+(?:\.\d+)?)\s*(?:{_MINUTE_UNITS}){_NO_LETTER}", re.IGNORECASE)

_TIME_TOKEN = (
    r"[0-9:.]+(?:\s*(?:seconds?|secs?|sec|s|minutes?|mins?|min|m|초|분))?"
)
_RANGE_RE = re.compile(
    rf"(?:from|between|구간|부터)?\s*({_TIME_TOKEN})\s*(?:to|and|~|-|까지)\s*({_TIME_TOKEN})",
    re.IGNORECASE,
)
_TRIM_TARGET_RE = re.compile(rf"({_TIME_TOKEN})\s*(?:까지|to\b)", re.IGNORECASE)
# Double and curly quotes are tried first so an apostrophe inside them is kept.
_QUOTED_RES = (
    re.compile(r'"([^"]+)"'),
    re.compile(r"“([^”]+)”"),
    re.compile(r"'([^']+)'"),
)

_PURE_TIMECODE_RE = re.compile(r"^\d{1,2}:\d{1,2}(?::\d{1,2})?(?:\.\d+)?$")
_PURE_MINUTES_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(?:m|min|mins|minute|minutes|분)$")
_PURE_SECONDS_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(?:s|sec|secs|second|seconds|초)$")
_PURE_KOREAN_RE = re.compile(r"^(\d+)\s*분\s*(\d+(?:\.\d+)?)?\s*초?$")


def parse_time_value(raw: str) -> float | None:
    """Parse one time token into seconds.

    Two-part timecodes are ``MM:SS`` and three-part ones ``HH:MM:SS``.
    """
    value = raw.strip().lower()
    if not value:
        return None

    if _PURE_TIMECODE_RE.match(value):
        parts = [float(part) for part in value.split(":")]
        if any(part >= 60 for part in parts[1:]):
            return None
        if len(parts) == 2:
            return parts[0] * 60 + parts[1]
        return parts[0] * 3600 + parts[1] * 60 + parts[2]

    match = _PURE_MINUTES_RE.match(value)
    if match:
        return float(match.group(1)) * 60
    match = _PURE_SECONDS_RE.match(value)
    if match:
        return float(match.group(1))
    match = _PURE_KOREAN_RE.match(value)
    if match:
        seconds = float(match.group(2)) if match.group(2) else 0.0
        return float(match.group(1)) * 60 + seconds

    try:
        return float(value)
    except ValueError:
        return None


def parse_all_times(text: str) -> list[float]:
    """Return every distinct time expression in ``text``, in reading order."""
    found: list[tuple[int, float]] = []
    claimed: list[tuple[int, int]] = []

    def overlaps(span: tuple[int, int]) -> bool:
        return any(span[0] < end and start < span[1] for start, end in claimed)

    def collect(pattern: re.Pattern[str], convert: Callable[[re.Match[str]], float | None]) -> None:
        for match in pattern.finditer(text):
            span = match.span()
            if overlaps(span):
                continue
            claimed.append(span)
            value = convert(match)
            if value is not None and math.isfinite(value) and value >= 0:
                found.append((span[0], value))

    # More specific forms claim their spans first.
    collect(_TIMECODE_RE, lambda m: parse_time_value(m.group(0)))
    collect(
        _KOREAN_COMPOSITE_RE,
        lambda m: float(m.group(1)) * 60 + float(m.group(2)),
    )
    collect(_SECONDS_RE, lambda m: float(m.group(1)))
    collect(_MINUTES_RE, lambda m: float(m.group(1)) * 60)

    values: list[float] = []
    seen: set[str] = set()
    for _, value in sorted(found, key=lambda item: item[0]):
        key = f"{value:.3f}"
        if key in seen:
            continue
        seen.add(key)
        values.append(value)
    return values


def parse_first_time(text: str) -> float | None:
    values = parse_all_times(text)
    return values[0] if values else None


def _has_unit(token: str) -> bool:
    return ":" in token or bool(re.search(r"[^\d\s.]", token))


def parse_time_range(text: str, require_units: bool = False) -> tuple[float, float] | None:
    """Find a ``(start, end)`` pair in ``text``.

    With ``require_units`` both ends must carry a unit or be a timecode, so
    "clips 2 and 3" is not read as a range.
    """
    match = _RANGE_RE.search(text)
    if match and (
        not require_units or (_has_unit(match.group(1)) and _has_unit(match.group(2)))
    ):
        start = parse_time_value(match.group(1))
        end = parse_time_value(match.group(2))
        if start is not None and end is not None:
            return start, end

    values = parse_all_times(text)
    if len(values) >= 2:
        return values[0], values[1]
    return None


def _parse_trim_target(text: str) -> float | None:
    match = _TRIM_TARGET_RE.search(text)
    if match:
        value = parse_time_value(match.group(1))
        if value is not None:
            return value
    return parse_first_time(text)


def _find_quoted(text: str) -> re.Match[str] | None:
    for pattern in _QUOTED_RES:
        match = pattern.search(text)
        if match:
            return match
    return None


def _parse_quoted_text(text: str) -> str | None:
    match = _find_quoted(text)
    if not match:
        return None
    value = match.group(1).strip()
    return value or None


def _strip_quoted(text: str) -> str:
    match = _find_quoted(text)
    if not match:
        return text
    return f"{text[:match.start()]} {text[match.end():]}"


# ---------------------------------------------------------------------------
# Matcher
# ---------------------------------------------------------------------------

_SPLIT_RE = re.compile(r"(\bsplit\b|\bcut\b(?!\s*out)|분할|쪼개)", re.IGNORECASE)
_PLAYHEAD_RE = re.compile(r"(playhead|재생헤드|현재\s*위치)", re.IGNORECASE)
_TRIM_RE = re.compile(r"(\btrim\b|컷편집|트림|잘라|까지)", re.IGNORECASE)
_MOVE_RE = re.compile(r"(\bmove\b|\bshift\b|옮기|이동)", re.IGNORECASE)
_CAPTION_RE = re.compile(r"(caption|subtitle|자막)", re.IGNORECASE)
_DELETE_RE = re.compile(r"(delete|remove|cut\s*out|삭제)", re.IGNORECASE)

_NEGATION_RE = re.compile(r"(\b(?:do\s+not|never|not)\b|n['’]t\b|말|하지\s*마)", re.IGNORECASE)
# Offsets from the clip's current position rather than absolute times.
_RELATIVE_RE = re.compile(
    r"(\b(?:later|earlier|forwards?|back|backwards?|by|off)\b"
    r"|\bfrom\s+the\s+(?:start|end|beginning)\b|앞으로|뒤로|만큼)",
    re.IGNORECASE,
)
_EXPLICIT_RANGE_RE = re.compile(
    r"(\b(?:from|between)\b.+\b(?:to|and|until)\b|부터.+까지)", re.IGNORECASE
)

_CONFIDENCE = {
    FastPathStrategy.SPLIT: 0.97,
    FastPathStrategy.TRIM: 0.95,
    FastPathStrategy.MOVE: 0.95,
    FastPathStrategy.ADD_CAPTION: 0.96,
    FastPathStrategy.DELETE_RANGE: 0.94,
}

_TOOLS = {
    FastPathStrategy.SPLIT: "split_clip",
    FastPathStrategy.TRIM: "trim_clip",
    FastPathStrategy.MOVE: "move_clip",
    FastPathStrategy.ADD_CAPTION: "add_caption",
    FastPathStrategy.DELETE_RANGE: "delete_clips_in_range",
}

# (strategy, args) or None
_Candidate = tuple[FastPathStrategy, dict[str, Any]] | None


def _single_selection(context: ExecutionContext) -> tuple[str, str] | None:
    if len(context.selected_clip_ids) != 1 or len(context.selected_track_ids) != 1:
        return None
    return context.selected_clip_ids[0], context.selected_track_ids[0]


def _match_split(text: str, context: ExecutionContext) -> _Candidate:
    # "cut from X to Y" names a range, not a split point.
    if not _SPLIT_RE.search(text) or _EXPLICIT_RANGE_RE.search(text):
        return None
    selection = _single_selection(context)
    if selection is None:
        return None

    split_time = parse_first_time(text)
    if split_time is None and _PLAYHEAD_RE.search(text):
        split_time = context.playhead_position
    if split_time is None:
        return None

    clip_id, track_id = selection
    return FastPathStrategy.SPLIT, {
        "sequenceId": context.sequence_id,
        "trackId": track_id,
        "clipId": clip_id,
        "splitTime": split_time,
    }


def _match_trim(text: str, context: ExecutionContext) -> _Candidate:
    if not _TRIM_RE.search(text) or _RELATIVE_RE.search(text):
        return None
    selection = _single_selection(context)
    if selection is None:
        return None

    end_time = _parse_trim_target(text)
    if end_time is None:
        return None

    clip_id, track_id = selection
    return FastPathStrategy.TRIM, {
        "sequenceId": context.sequence_id,
        "trackId": track_id,
        "clipId": clip_id,
        "newSourceOut": end_time,
    }


def _match_move(text: str, context: ExecutionContext) -> _Candidate:
    if not _MOVE_RE.search(text) or _RELATIVE_RE.search(text):
        return None
    selection = _single_selection(context)
    if selection is None:
        return None

    new_timeline_in = parse_first_time(text)
    if new_timeline_in is None:
        return None

    clip_id, track_id = selection
    return FastPathStrategy.MOVE, {
        "sequenceId": context.sequence_id,
        "trackId": track_id,
        "clipId": clip_id,
        "newTimelineIn": new_timeline_in,
    }


def _match_add_caption(text: str, context: ExecutionContext) -> _Candidate:
    if not _CAPTION_RE.search(text):
        return None
    caption = _parse_quoted_text(text)
    if not caption:
        return None

    # Drop the quoted caption so digits inside it are not read as times.
    remainder = _strip_quoted(text)
    time_range = parse_time_range(remainder)
    if time_range is None or time_range[1] <= time_range[0]:
        return None

    return FastPathStrategy.ADD_CAPTION, {
        "sequenceId": context.sequence_id,
        "text": caption,
        "startTime": time_range[0],
        "endTime": time_range[1],
    }


def _match_delete_range(text: str, context: ExecutionContext) -> _Candidate:
    if not _DELETE_RE.search(text):
        return None
    time_range = parse_time_range(text, require_units=True)
    if time_range is None or time_range[1] <= time_range[0]:
        return None

    args: dict[str, Any] = {
        "sequenceId": context.sequence_id,
        "startTime": time_range[0],
        "endTime": time_range[1],
    }
    if len(context.selected_track_ids) == 1:
        args["trackId"] = context.selected_track_ids[0]
    return FastPathStrategy.DELETE_RANGE, args


_MATCHERS: list[Callable[[str, ExecutionContext], _Candidate]] = [
    _match_split,
    _match_trim,
    _match_move,
    _match_add_caption,
    _match_delete_range,
]


class FastPathMatcher:
    """Matches a closed set of commands without generative reasoning."""

    def __init__(self, min_confidence: float = FAST_PATH_MIN_CONFIDENCE):
        self.min_confidence = min_confidence

    def match(
        self,
        utterance: str,
        context: ExecutionContext,
        registry: ToolRegistry,
        min_confidence: float | None = None,
    ) -> FastPathMatch | None:
        """Try to answer ``utterance`` with a single-step plan.

        Args:
            utterance: Raw user request
            context: Current selection and playhead
            registry: Tool catalog used to confirm the tool exists and its
                arguments validate
            min_confidence: Overrides the matcher's threshold for this call

        Returns:
            FastPathMatch, or None when nothing matches confidently. Never raises.
        """
        threshold = self.min_confidence if min_confidence is None else min_confidence
        try:
            return self._match(utterance, context, registry, threshold)
        except Exception:
            logger.exception("Fast path matcher failed; falling back to planner")
            return None

    def _match(
        self,
        utterance: str,
        context: ExecutionContext,
        registry: ToolRegistry,
        threshold: float,
    ) -> FastPathMatch | None:
        if not isinstance(utterance, str):
            return None
        text = utterance.strip()
        if not text or context is None or not context.sequence_id:
            return None
        if _NEGATION_RE.search(_strip_quoted(text)):
            return None

        for matcher in _MATCHERS:
            candidate = matcher(text, context)
            if candidate is None:
                continue
            strategy, args = candidate
            if _CONFIDENCE[strategy] < threshold:
                continue
            result = _build_match(strategy, args, registry)
            if result is not None:
                logger.info(
                    "Fast path matched %s (confidence=%.2f)",
                    strategy.value,
                    result.confidence,
                )
                return result
        return None


def _build_match(
    strategy: FastPathStrategy,
    args: dict[str, Any],
    registry: ToolRegistry,
) -> FastPathMatch | None:
    tool = _TOOLS[strategy]
    if not registry.has_tool(tool):
        return None
    validation = registry.validate_args(tool, args)
    if not validation.valid:
        logger.debug("Fast path %s rejected: %s", strategy.value, validation.errors)
        return None

    metadata = registry.get_metadata(tool)
    label = strategy.value.replace("_", " ")
    step = PlanStep(
        id=f"fastpath-{strategy.value}",
        description=f"Fast-path {label} action",
        tool=tool,
        args=args,
        risk_level=metadata.risk_level,
        estimated_duration=metadata.estimated_duration or DEFAULT_STEP_DURATION,
        needs_approval=metadata.needs_approval,
    )
    return FastPathMatch(
        strategy=strategy,
        confidence=_CONFIDENCE[strategy],
        thought=Thought(
            understanding=f"Apply {label} through the deterministic fast path",
            approach="Execute a schema-validated command directly",
        ),
        plan=Plan(
            goal=f"Execute {label}",
            steps=[step],
            rollback_strategy="Use the standard undo stack for this operation",
        ),
    )
