import pydantic
import pytest

from agent.tool_orchestration.backends import (
    InMemoryCallRecorder,
    ScriptedBackend,
    ScriptedResponse,
    StreamHandle,
)
from agent.tool_orchestration.errors import GenerationError
from agent.tool_orchestration.types import (
    CallKind,
    CallOutcome,
    CompletionResult,
    FinishReason,
    LLMMessage,
    Thought,
    ToolCallRequest,
)

MESSAGES = [LLMMessage(role="user", content="split the clip")]
TOOLS = [{"type": "function", "function": {"name": "split_clip", "parameters": {}}}]


def _backend():
    recorder = InMemoryCallRecorder()
    return ScriptedBackend(recorders=[recorder]), recorder


def test_stream_handle_delivers_in_order_then_stays_done():
    handle = StreamHandle(iter([1, 2, 3]))

    values = [handle.next().value for _ in range(3)]

    assert values == [1, 2, 3]
    assert handle.next().done is True
    assert handle.next().done is True


def test_stream_handle_abort_then_next_is_done():
    aborted = []
    handle = StreamHandle(iter(["a", "b"]), on_abort=lambda: aborted.append(True))

    assert handle.next().value == "a"
    handle.abort()

    item = handle.next()
    assert item.done is True
    assert item.value is None
    assert aborted == [True]


def test_generate_stream_yields_chunks_and_resets_flag():
    backend, recorder = _backend()
    backend.set_stream_response(ScriptedResponse(content="hello world", chunk_size=5))

    chunks = list(backend.generate_stream(MESSAGES))

    assert chunks == ["hello", " worl", "d"]
    assert backend.is_generating is False
    call = recorder.last()
    assert call.kind == CallKind.STREAM
    assert call.outcome == CallOutcome.OK
    assert call.messages[0].content == "split the clip"


def test_generate_stream_early_close_resets_flag():
    backend, recorder = _backend()
    backend.set_stream_response(ScriptedResponse(content="abcdef", chunk_size=1))

    handle = backend.generate_stream(MESSAGES)
    assert handle.next().value == "a"
    assert backend.is_generating is True
    handle.close()

    assert backend.is_generating is False
    assert recorder.last().outcome == CallOutcome.ABORTED


def test_generate_stream_abort_stops_further_chunks():
    backend, recorder = _backend()
    backend.set_stream_response(ScriptedResponse(content="abcdef", chunk_size=1))

    handle = backend.generate_stream(MESSAGES)
    handle.next()
    handle.abort()

    assert handle.next().done is True
    assert backend.is_generating is False
    assert recorder.last().outcome == CallOutcome.ABORTED


def test_handle_closed_before_first_pull_is_recorded_as_aborted():
    backend, recorder = _backend()

    backend.generate_stream(MESSAGES).close()

    assert recorder.last().outcome == CallOutcome.ABORTED


def test_generate_stream_error_raises_generation_error():
    backend, recorder = _backend()
    backend.set_stream_response(ScriptedResponse(error=RuntimeError("quota exceeded")))

    handle = backend.generate_stream(MESSAGES)
    with pytest.raises(GenerationError):
        handle.next()

    assert backend.is_generating is False
    assert recorder.last().outcome == CallOutcome.ERROR
    assert handle.next().done is True


def test_generate_with_tools_error_is_a_single_error_event():
    backend, recorder = _backend()
    backend.set_tools_response(ScriptedResponse(error=RuntimeError("connection reset")))

    events = list(backend.generate_with_tools(MESSAGES, TOOLS))

    assert len(events) == 1
    assert events[0].type == "error"
    assert "connection reset" in events[0].error
    assert backend.is_generating is False
    assert recorder.last().outcome == CallOutcome.ERROR
    assert recorder.last().tools == ["split_clip"]


def test_generate_with_tools_ends_with_done():
    backend, recorder = _backend()
    backend.set_tools_response(
        ScriptedResponse(
            content="Splitting",
            chunk_size=20,
            tool_calls=[ToolCallRequest(id="call_1", name="split_clip", args={"t": 1})],
        )
    )

    events = list(backend.generate_with_tools(MESSAGES, TOOLS))

    assert [event.type for event in events] == ["text", "tool_call", "done"]
    assert events[1].args == {"t": 1}
    assert recorder.last().outcome == CallOutcome.OK


def test_tools_responses_are_consumed_in_order_and_last_repeats():
    backend, _ = _backend()
    backend.set_tools_response(
        ScriptedResponse(content="first"),
        ScriptedResponse(content="second"),
    )

    def text_of(handle):
        return "".join(event.content for event in handle if event.type == "text")

    assert text_of(backend.generate_with_tools(MESSAGES, TOOLS)) == "first"
    assert text_of(backend.generate_with_tools(MESSAGES, TOOLS)) == "second"
    assert text_of(backend.generate_with_tools(MESSAGES, TOOLS)) == "second"


def test_generate_structured_validates_against_schema():
    backend, recorder = _backend()
    backend.set_structured_response(
        ScriptedResponse(structured={"understanding": "split clip 1", "approach": "split_clip"}),
        Thought,
    )

    thought = backend.generate_structured(MESSAGES, Thought)

    assert isinstance(thought, Thought)
    assert thought.understanding == "split clip 1"
    assert recorder.last().schema_name == "Thought"
    assert recorder.last().outcome == CallOutcome.OK


def test_generate_structured_accepts_json_text():
    backend, _ = _backend()
    backend.set_structured_response(ScriptedResponse(structured='{"understanding": "ok"}'))

    assert backend.generate_structured(MESSAGES, Thought).understanding == "ok"


def test_generate_structured_invalid_value_raises():
    backend, recorder = _backend()
    backend.set_structured_response(ScriptedResponse(structured={"requirements": "nope"}))

    with pytest.raises(GenerationError) as exc_info:
        backend.generate_structured(MESSAGES, Thought)

    assert "Thought" in exc_info.value.message
    assert recorder.last().outcome == CallOutcome.ERROR


def test_generate_structured_backend_error_raises():
    backend, _ = _backend()
    backend.set_structured_response(ScriptedResponse(error=TimeoutError("slow")))

    with pytest.raises(GenerationError):
        backend.generate_structured(MESSAGES, Thought)


def test_complete_derives_finish_reason():
    backend, _ = _backend()

    backend.set_complete_response(
        ScriptedResponse(tool_calls=[ToolCallRequest(id="c1", name="split_clip")])
    )
    assert backend.complete(MESSAGES).finish_reason == FinishReason.TOOL_CALL

    backend.set_complete_response(ScriptedResponse(content="partial", truncated=True))
    assert backend.complete(MESSAGES).finish_reason == FinishReason.LENGTH

    backend.set_complete_response(ScriptedResponse(content="done"))
    result = backend.complete(MESSAGES)
    assert result.finish_reason == FinishReason.STOP
    assert result.tool_calls == []


def test_complete_error_raises_generation_error():
    backend, recorder = _backend()
    backend.set_complete_response(ScriptedResponse(error=RuntimeError("500")))

    with pytest.raises(GenerationError):
        backend.complete(MESSAGES)

    assert recorder.last().kind == CallKind.COMPLETE
    assert recorder.last().outcome == CallOutcome.ERROR


def test_completion_result_rejects_inconsistent_finish_reason():
    with pytest.raises(pydantic.ValidationError):
        CompletionResult(content="", finish_reason=FinishReason.TOOL_CALL)
    with pytest.raises(pydantic.ValidationError):
        CompletionResult(
            content="",
            finish_reason=FinishReason.STOP,
            tool_calls=[ToolCallRequest(id="c1", name="split_clip")],
        )


def test_recorder_sees_every_call_kind():
    backend, recorder = _backend()

    list(backend.generate_stream(MESSAGES))
    list(backend.generate_with_tools(MESSAGES, TOOLS))
    backend.complete(MESSAGES)

    assert [call.kind for call in recorder.calls] == [
        CallKind.STREAM,
        CallKind.TOOLS,
        CallKind.COMPLETE,
    ]
    assert len(recorder.by_kind(CallKind.TOOLS)) == 1
