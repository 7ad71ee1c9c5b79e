"""Deterministic in-process backend.

Responses are configured per operation ahead of time, which makes the backend
suitable for tests and for running the orchestration loop offline.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from ..types import (
    CompletionResult,
    LLMMessage,
    StreamEvent,
    TextEvent,
    ToolCallEvent,
    ToolCallRequest,
)
from .base import CallRecorder, GenerativeBackend


@dataclass
class ScriptedResponse:
    content: str = ""
    chunk_size: int = 10
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    structured: Any = None
    error: Exception | None = None
    truncated: bool = False


def _chunks(content: str, size: int) -> Iterator[str]:
    size = max(1, size)
    for index in range(0, len(content), size):
        yield content[index:index + size]


class ScriptedBackend(GenerativeBackend):
    """Backend that replays configured responses.

    ``generate_with_tools`` responses are consumed as a queue; the last queued
    response keeps being replayed once the queue is down to one entry.
    Structured responses are looked up by schema class name first, then fall
    back to the default structured response.
    """

    provider = "scripted"

    def __init__(self, recorders: list[CallRecorder] | None = None):
        super().__init__(recorders)
        self._stream_response = ScriptedResponse()
        self._tool_responses: list[ScriptedResponse] = [ScriptedResponse()]
        self._structured_responses: dict[str | None, ScriptedResponse] = {
            None: ScriptedResponse(structured={})
        }
        self._complete_response = ScriptedResponse()

    # -- configuration ----------------------------------------------------

    def set_stream_response(self, response: ScriptedResponse) -> None:
        self._stream_response = response

    def set_tools_response(self, *responses: ScriptedResponse) -> None:
        self._tool_responses = list(responses) or [ScriptedResponse()]

    def set_structured_response(
        self,
        response: ScriptedResponse,
        schema: type[BaseModel] | str | None = None,
    ) -> None:
        key = schema if isinstance(schema, str) or schema is None else schema.__name__
        self._structured_responses[key] = response

    def set_complete_response(self, response: ScriptedResponse) -> None:
        self._complete_response = response

    # -- hooks ------------------------------------------------------------

    def _stream_text(self, messages: list[LLMMessage]) -> Iterator[str]:
        response = self._stream_response
        if response.error is not None:
            raise response.error
        yield from _chunks(response.content, response.chunk_size)

    def _stream_with_tools(
        self,
        messages: list[LLMMessage],
        tools: list[dict[str, Any]],
    ) -> Iterator[StreamEvent]:
        response = self._next_tools_response()
        if response.error is not None:
            raise response.error
        for chunk in _chunks(response.content, response.chunk_size):
            yield TextEvent(content=chunk)
        for call in response.tool_calls:
            yield ToolCallEvent(id=call.id, name=call.name, args=dict(call.args))

    def _generate_structured(self, messages: list[LLMMessage], schema: type[BaseModel]) -> Any:
        response = self._structured_responses.get(schema.__name__) or self._structured_responses[None]
        if response.error is not None:
            raise response.error
        return response.structured

    def _complete(self, messages: list[LLMMessage]) -> CompletionResult:
        response = self._complete_response
        if response.error is not None:
            raise response.error
        return CompletionResult.from_parts(
            response.content,
            tool_calls=list(response.tool_calls),
            truncated=response.truncated,
        )

    def _next_tools_response(self) -> ScriptedResponse:
        if len(self._tool_responses) > 1:
            return self._tool_responses.pop(0)
        return self._tool_responses[0]
