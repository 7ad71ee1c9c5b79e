"""Generative backend port.

Concrete backends implement four hooks (``_stream_text``,
``_stream_with_tools``, ``_generate_structured`` and ``_complete``). The base
class wraps them in the public operations and owns the behavior every backend
must share:

- the ``is_generating`` flag is reset on every exit path, including abort;
- ``generate_with_tools`` reports failure as a single ``error`` event and
  always ends with ``done`` on success;
- structured output is validated against a pydantic model;
- every call is reported to the registered recorders.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Generic, Protocol, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..errors import GenerationError
from ..types import (
    CallKind,
    CallOutcome,
    CompletionResult,
    DoneEvent,
    ErrorEvent,
    GenerationCall,
    LLMMessage,
    StreamEvent,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")
ModelT = TypeVar("ModelT", bound=BaseModel)


class CallRecorder(Protocol):
    def record(self, call: GenerationCall) -> None: ...


class InMemoryCallRecorder:
    """Keeps every observed call in memory."""

    def __init__(self) -> None:
        self.calls: list[GenerationCall] = []

    def record(self, call: GenerationCall) -> None:
        self.calls.append(call)

    def by_kind(self, kind: CallKind) -> list[GenerationCall]:
        return [call for call in self.calls if call.kind == kind]

    def last(self) -> GenerationCall | None:
        return self.calls[-1] if self.calls else None

    def clear(self) -> None:
        self.calls.clear()


@dataclass(frozen=True)
class StreamItem(Generic[T]):
    value: T | None
    done: bool


class StreamHandle(Generic[T]):
    """Consumer-pull handle over a lazily produced stream.

    Items are delivered in production order. Once the stream is exhausted,
    closed or aborted, ``next()`` returns ``StreamItem(None, done=True)``
    without raising.
    """

    def __init__(
        self,
        source: Iterator[T],
        on_abort: Callable[[], None] | None = None,
        on_close: Callable[[], None] | None = None,
    ):
        self._source = source
        self._on_abort = on_abort
        self._on_close = on_close
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def next(self) -> StreamItem[T]:
        if self._finished:
            return StreamItem(None, True)
        try:
            value = next(self._source)
        except StopIteration:
            self._finished = True
            return StreamItem(None, True)
        except BaseException:
            self._finished = True
            raise
        return StreamItem(value, False)

    def close(self) -> None:
        """Stop consuming; the producer runs its cleanup."""
        if self._finished:
            return
        self._finished = True
        close = getattr(self._source, "close", None)
        if close is not None:
            close()
        if self._on_close is not None:
            self._on_close()

    def abort(self) -> None:
        if self._on_abort is not None:
            self._on_abort()
        self.close()

    def __iter__(self) -> "StreamHandle[T]":
        return self

    def __next__(self) -> T:
        item = self.next()
        if item.done:
            raise StopIteration
        return item.value  # type: ignore[return-value]

    def __enter__(self) -> "StreamHandle[T]":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class GenerativeBackend(ABC):
    """Abstract generative backend."""

    provider = "base"

    def __init__(self, recorders: Sequence[CallRecorder] | None = None):
        self._recorders: list[CallRecorder] = list(recorders or [])
        self._generating = False
        self._aborted = False

    # -- observation ------------------------------------------------------

    def add_recorder(self, recorder: CallRecorder) -> None:
        self._recorders.append(recorder)

    def remove_recorder(self, recorder: CallRecorder) -> None:
        if recorder in self._recorders:
            self._recorders.remove(recorder)

    def _begin(
        self,
        kind: CallKind,
        messages: list[LLMMessage],
        tools: list[dict[str, Any]] | None = None,
        schema_name: str | None = None,
    ) -> GenerationCall:
        call = GenerationCall(
            kind=kind,
            messages=list(messages),
            tools=[_tool_name(tool) for tool in tools] if tools is not None else None,
            schema_name=schema_name,
        )
        for recorder in self._recorders:
            try:
                recorder.record(call)
            except Exception:
                logger.exception("Call recorder failed")
        return call

    @staticmethod
    def _finish(call: GenerationCall, outcome: CallOutcome, error: str | None = None) -> None:
        call.outcome = outcome
        call.error = error
        call.finished_at = datetime.now(timezone.utc)

    def _finish_unstarted(self, call: GenerationCall) -> None:
        # A handle closed before its first pull never runs the producer body.
        if call.outcome == CallOutcome.PENDING:
            self._finish(call, CallOutcome.ABORTED)

    # -- state ------------------------------------------------------------

    @property
    def is_generating(self) -> bool:
        return self._generating

    def is_configured(self) -> bool:
        return True

    def abort(self) -> None:
        """Halt any in-flight stream at its next chunk boundary."""
        self._aborted = True
        self._generating = False

    # -- public operations ------------------------------------------------

    def generate_stream(self, messages: Sequence[LLMMessage]) -> StreamHandle[str]:
        messages = list(messages)
        call = self._begin(CallKind.STREAM, messages)
        return StreamHandle(
            self._run_text_stream(call, messages),
            on_abort=self.abort,
            on_close=lambda: self._finish_unstarted(call),
        )

    def generate_with_tools(
        self,
        messages: Sequence[LLMMessage],
        tools: list[dict[str, Any]],
    ) -> StreamHandle[StreamEvent]:
        messages = list(messages)
        call = self._begin(CallKind.TOOLS, messages, tools=tools)
        return StreamHandle(
            self._run_tool_stream(call, messages, tools),
            on_abort=self.abort,
            on_close=lambda: self._finish_unstarted(call),
        )

    def generate_structured(
        self,
        messages: Sequence[LLMMessage],
        schema: type[ModelT],
    ) -> ModelT:
        """Generate a value and validate it against ``schema``.

        Raises:
            GenerationError: If the backend fails or the value does not validate.
        """
        messages = list(messages)
        call = self._begin(CallKind.STRUCTURED, messages, schema_name=schema.__name__)
        try:
            raw = self._generate_structured(messages, schema)
            if isinstance(raw, schema):
                value = raw
            else:
                if isinstance(raw, (str, bytes)):
                    raw = json.loads(raw)
                value = schema.model_validate(raw)
        except (PydanticValidationError, json.JSONDecodeError) as exc:
            self._finish(call, CallOutcome.ERROR, str(exc))
            raise GenerationError(
                f"Structured output did not match {schema.__name__}: {exc}",
                kind=CallKind.STRUCTURED.value,
            ) from exc
        except GenerationError as exc:
            self._finish(call, CallOutcome.ERROR, exc.message)
            raise
        except Exception as exc:
            self._finish(call, CallOutcome.ERROR, str(exc))
            raise GenerationError(
                f"Structured generation failed: {exc}",
                kind=CallKind.STRUCTURED.value,
            ) from exc

        self._finish(call, CallOutcome.OK)
        return value

    def complete(self, messages: Sequence[LLMMessage]) -> CompletionResult:
        """One-shot completion.

        Raises:
            GenerationError: If the backend fails.
        """
        messages = list(messages)
        call = self._begin(CallKind.COMPLETE, messages)
        try:
            result = self._complete(messages)
        except GenerationError as exc:
            self._finish(call, CallOutcome.ERROR, exc.message)
            raise
        except Exception as exc:
            self._finish(call, CallOutcome.ERROR, str(exc))
            raise GenerationError(
                f"Completion failed: {exc}",
                kind=CallKind.COMPLETE.value,
            ) from exc

        self._finish(call, CallOutcome.OK)
        return result

    # -- stream drivers ---------------------------------------------------

    def _run_text_stream(self, call: GenerationCall, messages: list[LLMMessage]) -> Iterator[str]:
        self._aborted = False
        self._generating = True
        outcome = CallOutcome.OK
        error: str | None = None
        chunks = None
        try:
            chunks = self._stream_text(messages)
            for chunk in chunks:
                if self._aborted:
                    outcome = CallOutcome.ABORTED
                    return
                yield chunk
            if self._aborted:
                outcome = CallOutcome.ABORTED
        except GeneratorExit:
            outcome = CallOutcome.ABORTED
            raise
        except Exception as exc:
            outcome, error = CallOutcome.ERROR, str(exc)
            raise GenerationError(
                f"Stream generation failed: {exc}",
                kind=CallKind.STREAM.value,
            ) from exc
        finally:
            _close_quietly(chunks)
            self._generating = False
            self._finish(call, outcome, error)

    def _run_tool_stream(
        self,
        call: GenerationCall,
        messages: list[LLMMessage],
        tools: list[dict[str, Any]],
    ) -> Iterator[StreamEvent]:
        self._aborted = False
        self._generating = True
        outcome = CallOutcome.OK
        error: str | None = None
        delivered_done = False
        events = None
        try:
            try:
                events = self._stream_with_tools(messages, tools)
                for event in events:
                    if self._aborted:
                        outcome = CallOutcome.ABORTED
                        return
                    if isinstance(event, ErrorEvent):
                        outcome, error = CallOutcome.ERROR, event.error
                        yield event
                        return
                    if isinstance(event, DoneEvent):
                        break
                    yield event
            except Exception as exc:
                logger.warning("Tool-calling stream failed: %s", exc)
                outcome, error = CallOutcome.ERROR, str(exc)
                yield ErrorEvent(error=str(exc))
                return

            if self._aborted:
                outcome = CallOutcome.ABORTED
                return
            delivered_done = True
            yield DoneEvent()
        except GeneratorExit:
            if outcome == CallOutcome.OK and not delivered_done:
                outcome = CallOutcome.ABORTED
            raise
        finally:
            _close_quietly(events)
            self._generating = False
            self._finish(call, outcome, error)

    # -- hooks ------------------------------------------------------------

    @abstractmethod
    def _stream_text(self, messages: list[LLMMessage]) -> Iterator[str]:
        """Yield text chunks."""

    @abstractmethod
    def _stream_with_tools(
        self,
        messages: list[LLMMessage],
        tools: list[dict[str, Any]],
    ) -> Iterator[StreamEvent]:
        """Yield text and tool_call events. A trailing done event is optional."""

    @abstractmethod
    def _generate_structured(self, messages: list[LLMMessage], schema: type[BaseModel]) -> Any:
        """Return a model instance, a dict, or a JSON string."""

    @abstractmethod
    def _complete(self, messages: list[LLMMessage]) -> CompletionResult:
        """Return a one-shot completion."""


def _tool_name(tool: dict[str, Any]) -> str:
    function = tool.get("function") if isinstance(tool, dict) else None
    if isinstance(function, dict) and function.get("name"):
        return str(function["name"])
    return str(tool.get("name", "")) if isinstance(tool, dict) else str(tool)


def _close_quietly(iterator: Any) -> None:
    close = getattr(iterator, "close", None)
    if close is None:
        return
    try:
        close()
    except Exception:
        logger.debug("Failed to close backend iterator", exc_info=True)
