"""OpenRouter binding for the generative backend port.

Uses the OpenAI-compatible chat completions API exposed by OpenRouter.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from typing import Any

from openai import OpenAI
from pydantic import BaseModel

from ..config import MODEL, OPENROUTER_BASE_URL
from ..types import (
    CompletionResult,
    LLMMessage,
    StreamEvent,
    TextEvent,
    ToolCallEvent,
    ToolCallRequest,
)
from .base import CallRecorder, GenerativeBackend

logger = logging.getLogger(__name__)


def _get_client(base_url: str = OPENROUTER_BASE_URL) -> OpenAI:
    """Get OpenRouter client."""
    return OpenAI(
        base_url=base_url,
        api_key=os.getenv("OPENROUTER_API_KEY", ""),
    )


def _to_openai_messages(messages: list[LLMMessage]) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = []
    for message in messages:
        entry: dict[str, Any] = {"role": message.role, "content": message.content}
        if message.role == "tool" and message.tool_call_id:
            entry["tool_call_id"] = message.tool_call_id
        if message.tool_calls:
            entry["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": json.dumps(call.args),
                    },
                }
                for call in message.tool_calls
            ]
        converted.append(entry)
    return converted


def _parse_arguments(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding malformed tool arguments: %s", raw[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _response_format(schema: type[BaseModel]) -> dict[str, Any]:
    return {
        "type": "json_schema",
        "json_schema": {
            "name": schema.__name__.lower(),
            "strict": False,
            "schema": schema.model_json_schema(),
        },
    }


class OpenRouterBackend(GenerativeBackend):
    """Generative backend talking to OpenRouter through the openai SDK."""

    provider = "openrouter"

    def __init__(
        self,
        model: str = MODEL,
        client: OpenAI | None = None,
        base_url: str = OPENROUTER_BASE_URL,
        temperature: float | None = None,
        recorders: list[CallRecorder] | None = None,
    ):
        super().__init__(recorders)
        self.model = model
        self.base_url = base_url
        self.temperature = temperature
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = _get_client(self.base_url)
        return self._client

    def is_configured(self) -> bool:
        return self._client is not None or bool(os.getenv("OPENROUTER_API_KEY"))

    def _request_kwargs(self, messages: list[LLMMessage]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": _to_openai_messages(messages),
        }
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        return kwargs

    def _stream_text(self, messages: list[LLMMessage]) -> Iterator[str]:
        stream = self.client.chat.completions.create(
            stream=True,
            **self._request_kwargs(messages),
        )
        for chunk in stream:
            if not chunk.choices:
                continue
            content = chunk.choices[0].delta.content
            if content:
                yield content

    def _stream_with_tools(
        self,
        messages: list[LLMMessage],
        tools: list[dict[str, Any]],
    ) -> Iterator[StreamEvent]:
        stream = self.client.chat.completions.create(
            stream=True,
            tools=tools,
            tool_choice="auto",
            **self._request_kwargs(messages),
        )

        # Tool-call fragments arrive keyed by index; arguments are concatenated.
        pending: dict[int, dict[str, str]] = {}
        for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta.content:
                yield TextEvent(content=delta.content)
            for fragment in delta.tool_calls or []:
                slot = pending.setdefault(fragment.index, {"id": "", "name": "", "arguments": ""})
                if fragment.id:
                    slot["id"] = fragment.id
                function = fragment.function
                if function is not None:
                    if function.name:
                        slot["name"] += function.name
                    if function.arguments:
                        slot["arguments"] += function.arguments

        for index in sorted(pending):
            slot = pending[index]
            yield ToolCallEvent(
                id=slot["id"] or f"call_{index}",
                name=slot["name"],
                args=_parse_arguments(slot["arguments"]),
            )

    def _generate_structured(self, messages: list[LLMMessage], schema: type[BaseModel]) -> Any:
        response = self.client.chat.completions.create(
            response_format=_response_format(schema),
            **self._request_kwargs(messages),
        )
        return response.choices[0].message.content or "{}"

    def _complete(self, messages: list[LLMMessage]) -> CompletionResult:
        response = self.client.chat.completions.create(**self._request_kwargs(messages))
        choice = response.choices[0]
        message = choice.message

        tool_calls = [
            ToolCallRequest(
                id=call.id,
                name=call.function.name,
                args=_parse_arguments(call.function.arguments),
            )
            for call in message.tool_calls or []
        ]
        return CompletionResult.from_parts(
            message.content,
            tool_calls=tool_calls,
            truncated=choice.finish_reason == "length",
        )
