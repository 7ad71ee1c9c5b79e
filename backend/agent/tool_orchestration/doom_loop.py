"""Circuit breaker for repeated identical tool invocations."""

from __future__ import annotations

import json
from collections import deque
from collections.abc import Mapping
from typing import Any

from .errors import ConfigurationError

DEFAULT_HISTORY_SIZE = 50


def _normalize(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _normalize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_normalize(item) for item in value), key=repr)
    # 1 and 1.0 are the same argument; json.dumps would spell them differently.
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def canonicalize_args(args: Any) -> str:
    """Serialize tool arguments so that key order never affects equality.

    Nested mappings are normalized recursively; sequences keep their order.
    """
    return json.dumps(
        _normalize(args if args is not None else {}),
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


class DoomLoopDetector:
    """Detects an agent repeating the same tool call back to back.

    ``check`` records a call and reports whether the most recent ``threshold``
    calls are identical in tool name and canonical arguments. Any differing
    call starts a new run of length one; there is no memory of earlier runs.
    """

    def __init__(self, threshold: int = 3, history_size: int = DEFAULT_HISTORY_SIZE):
        if not isinstance(threshold, int) or isinstance(threshold, bool) or threshold < 2:
            raise ConfigurationError(
                f"Doom-loop threshold must be an integer >= 2, got {threshold!r}",
                invalid_field="threshold",
            )
        self.threshold = threshold
        self._history: deque[tuple[str, str]] = deque(maxlen=max(history_size, threshold))
        self._call_count = 0

    @property
    def call_count(self) -> int:
        return self._call_count

    @property
    def history(self) -> list[tuple[str, str]]:
        return list(self._history)

    @property
    def consecutive_count(self) -> int:
        """Length of the trailing run of identical calls."""
        if not self._history:
            return 0
        last = self._history[-1]
        count = 0
        for entry in reversed(self._history):
            if entry != last:
                break
            count += 1
        return count

    def check(self, tool_name: str, args: Any) -> bool:
        entry = (tool_name, canonicalize_args(args))
        self._history.append(entry)
        self._call_count += 1

        if len(self._history) < self.threshold:
            return False
        recent = list(self._history)[-self.threshold:]
        return all(item == entry for item in recent)

    def reset(self) -> None:
        self._history.clear()
        self._call_count = 0
