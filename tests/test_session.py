from __future__ import annotations

import asyncio
import json
import unittest
from typing import List

from chat_core.dispatcher import ToolDispatcher
from chat_core.errors import DanglingToolResultError, InvalidStateError, RateLimitError, TransportError
from chat_core.session import CompletionStream, ConversationSession, ToolCallState
from chat_core.types import (
    CompletionRequest,
    CompletionResult,
    FinishReason,
    ImagePart,
    ParameterSpec,
    Role,
    StreamChunk,
    TextPart,
    TokenUsage,
    ToolCallRequest,
    ToolSpec,
)


class ScriptedBackend:
    def __init__(self, results: List[CompletionResult] | None = None, chunks: List[StreamChunk] | None = None) -> None:
        self.results = list(results or [])
        self.chunks = list(chunks or [])
        self.requests: List[CompletionRequest] = []
        self.stream_closed = False

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        self.requests.append(request)
        return self.results.pop(0)

    async def stream(self, request: CompletionRequest):  # type: ignore[no-untyped-def]
        self.requests.append(request)
        try:
            for chunk in self.chunks:
                yield chunk
        finally:
            self.stream_closed = True


class FailingStreamBackend(ScriptedBackend):
    async def stream(self, request: CompletionRequest):  # type: ignore[no-untyped-def]
        self.requests.append(request)
        yield StreamChunk(text="partial")
        raise TransportError("connection reset")


class SlowBackend(ScriptedBackend):
    async def complete(self, request: CompletionRequest) -> CompletionResult:
        await asyncio.sleep(5)
        return CompletionResult(text="too late")


class RateLimitedBackend(ScriptedBackend):
    async def complete(self, request: CompletionRequest) -> CompletionResult:
        raise RateLimitError("slow down", retry_after=3)


def _flight_spec() -> ToolSpec:
    return ToolSpec(
        name="getFlightInfo",
        description="Next flight between two cities",
        parameters={
            "originCity": ParameterSpec(type="string", required=True),
            "destinationCity": ParameterSpec(type="string", required=True),
        },
    )


def _flight_info(args):  # type: ignore[no-untyped-def]
    return {"airline": "Delta", "flight_number": "DL123", "origin": args["originCity"]}


FLIGHT_CALL = ToolCallRequest(
    id="call_1",
    name="getFlightInfo",
    arguments=json.dumps({"originCity": "Seattle", "destinationCity": "Miami"}),
)


class SessionLifecycleTests(unittest.IsolatedAsyncioTestCase):
    def test_initialize_twice_fails(self) -> None:
        session = ConversationSession(backend=ScriptedBackend(), model_name="test-model")
        session.initialize("You are a helpful assistant.")
        with self.assertRaises(InvalidStateError):
            session.initialize()

    def test_operations_before_initialize_fail(self) -> None:
        session = ConversationSession(backend=ScriptedBackend(), model_name="test-model")
        with self.assertRaises(InvalidStateError):
            session.append_user_turn("hello")
        with self.assertRaises(InvalidStateError):
            session.reset()

    def test_tool_state_without_assistant_turn_is_invalid(self) -> None:
        session = ConversationSession(backend=ScriptedBackend(), model_name="test-model")
        session.initialize()
        session.append_user_turn("q")
        session._tool_states["orphan"] = ToolCallState.REQUESTED
        with self.assertRaises(InvalidStateError):
            session.append_tool_result("orphan", "getFlightInfo", "{}")
        self.assertEqual(len(session), 1)

    def test_initialize_without_prompt_has_empty_transcript(self) -> None:
        session = ConversationSession(backend=ScriptedBackend(), model_name="test-model")
        session.initialize()
        self.assertEqual(len(session), 0)

    async def test_request_on_empty_transcript_fails(self) -> None:
        session = ConversationSession(backend=ScriptedBackend(), model_name="test-model")
        session.initialize()
        with self.assertRaises(InvalidStateError):
            await session.request_completion()

    async def test_reset_keeps_only_system_turn(self) -> None:
        backend = ScriptedBackend(results=[CompletionResult(text="a"), CompletionResult(text="b")])
        session = ConversationSession(backend=backend, model_name="test-model")
        session.initialize("sys")
        for text in ("one", "two"):
            session.append_user_turn(text)
            await session.request_completion()
        self.assertEqual(len(session), 5)

        session.reset("sys")
        self.assertEqual([turn.role for turn in session.turns], [Role.SYSTEM])
        session.reset()
        self.assertEqual(len(session), 0)
        self.assertEqual(session.usage_totals, TokenUsage())


class SessionCompletionTests(unittest.IsolatedAsyncioTestCase):
    async def test_simple_exchange_appends_assistant_turn(self) -> None:
        backend = ScriptedBackend(results=[CompletionResult(text="4", finish_reason=FinishReason.STOP)])
        session = ConversationSession(backend=backend, model_name="test-model")
        session.initialize("You are a helpful assistant.")
        session.append_user_turn("What is 2+2?")

        result = await session.request_completion()

        self.assertEqual(result.text, "4")
        self.assertEqual([turn.role for turn in session.turns], [Role.SYSTEM, Role.USER, Role.ASSISTANT])
        self.assertEqual(session.turns[1].content, "What is 2+2?")
        self.assertEqual(session.turns[2].content, "4")
        self.assertEqual(backend.requests[0].model_name, "test-model")
        self.assertEqual(len(backend.requests[0].turns), 2)

    async def test_transcript_grows_by_two_per_exchange(self) -> None:
        replies = [CompletionResult(text=f"reply-{i}") for i in range(4)]
        session = ConversationSession(backend=ScriptedBackend(results=replies), model_name="test-model")
        session.initialize("sys")
        for i in range(4):
            before = len(session)
            session.append_user_turn(f"question-{i}")
            await session.request_completion()
            self.assertEqual(len(session), before + 2)

        roles = [turn.role for turn in session.turns[1:]]
        self.assertEqual(roles, [Role.USER, Role.ASSISTANT] * 4)

    async def test_length_finish_reason_still_appends(self) -> None:
        backend = ScriptedBackend(results=[CompletionResult(text="cut", finish_reason=FinishReason.LENGTH)])
        session = ConversationSession(backend=backend, model_name="test-model")
        session.initialize()
        session.append_user_turn("long story please")
        result = await session.request_completion()
        self.assertIs(result.finish_reason, FinishReason.LENGTH)
        self.assertEqual(session.turns[-1].content, "cut")

    async def test_model_override_and_usage_totals(self) -> None:
        backend = ScriptedBackend(
            results=[
                CompletionResult(text="a", usage=TokenUsage(3, 1, 4)),
                CompletionResult(text="b", usage=TokenUsage(5, 2, 7)),
            ],
        )
        session = ConversationSession(backend=backend, model_name="default-model")
        session.initialize()
        session.append_user_turn("x")
        await session.request_completion(model_name="reasoning-model")
        session.append_user_turn("y")
        await session.request_completion()

        self.assertEqual(backend.requests[0].model_name, "reasoning-model")
        self.assertEqual(backend.requests[1].model_name, "default-model")
        self.assertEqual(session.last_usage, TokenUsage(5, 2, 7))
        self.assertEqual(session.usage_totals, TokenUsage(8, 3, 11))

    async def test_image_parts_are_kept_in_user_turn(self) -> None:
        backend = ScriptedBackend(results=[CompletionResult(text="a cat")])
        session = ConversationSession(backend=backend, model_name="test-model")
        session.initialize()
        session.append_user_turn([TextPart("What's in this image?"), ImagePart("data:image/jpeg;base64,AAA")])
        await session.request_completion()

        content = backend.requests[0].turns[0].content
        self.assertIsInstance(content, tuple)
        self.assertEqual(content[1], ImagePart("data:image/jpeg;base64,AAA", detail="low"))

    async def test_timeout_surfaces_as_transport_error(self) -> None:
        session = ConversationSession(backend=SlowBackend(), model_name="test-model")
        session.initialize()
        session.append_user_turn("hello")
        with self.assertRaises(TransportError):
            await session.request_completion(timeout_seconds=0.01)
        self.assertEqual([turn.role for turn in session.turns], [Role.USER])

    async def test_boundary_errors_propagate_unmodified(self) -> None:
        session = ConversationSession(backend=RateLimitedBackend(), model_name="test-model")
        session.initialize()
        session.append_user_turn("hello")
        with self.assertRaises(RateLimitError) as ctx:
            await session.request_completion()
        self.assertEqual(ctx.exception.retry_after, 3)
        self.assertEqual(len(session), 1)


class SessionToolCallTests(unittest.IsolatedAsyncioTestCase):
    def _session(self, backend: ScriptedBackend) -> ConversationSession:
        dispatcher = ToolDispatcher()
        dispatcher.register(_flight_spec(), _flight_info)
        session = ConversationSession(backend=backend, model_name="test-model", dispatcher=dispatcher)
        session.initialize("You are an assistant that helps users find flight information.")
        return session

    async def test_flight_scenario_produces_five_turns(self) -> None:
        backend = ScriptedBackend(
            results=[
                CompletionResult(text="", finish_reason=FinishReason.TOOL_CALLS, tool_calls=(FLIGHT_CALL,)),
                CompletionResult(text="Delta flight DL123 leaves July 16th.", finish_reason=FinishReason.STOP),
            ],
        )
        session = self._session(backend)
        session.append_user_turn("Flight from Seattle to Miami?")

        first = await session.request_completion()
        self.assertIs(first.finish_reason, FinishReason.TOOL_CALLS)
        self.assertEqual(session.pending_tool_calls, [FLIGHT_CALL])
        self.assertIs(session.tool_call_state("call_1"), ToolCallState.REQUESTED)

        tool_result = await session.dispatcher.resolve(FLIGHT_CALL)  # type: ignore[union-attr]
        session.append_tool_result("call_1", "getFlightInfo", tool_result.content)
        self.assertIs(session.tool_call_state("call_1"), ToolCallState.RESOLVED)

        final = await session.request_completion()
        self.assertEqual(final.text, "Delta flight DL123 leaves July 16th.")
        roles = [turn.role for turn in session.turns]
        self.assertEqual(roles, [Role.SYSTEM, Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT])
        tool_turn = session.turns[3]
        self.assertEqual(tool_turn.tool_call_id, "call_1")
        self.assertEqual(json.loads(str(tool_turn.content))["airline"], "Delta")
        self.assertEqual(session.turns[2].tool_calls, (FLIGHT_CALL,))

        tools_sent = backend.requests[0].tools
        self.assertEqual([tool.name for tool in tools_sent], ["getFlightInfo"])

    async def test_pending_tool_calls_block_new_requests_and_user_turns(self) -> None:
        backend = ScriptedBackend(
            results=[CompletionResult(text="", finish_reason=FinishReason.TOOL_CALLS, tool_calls=(FLIGHT_CALL,))],
        )
        session = self._session(backend)
        session.append_user_turn("Flight?")
        await session.request_completion()

        with self.assertRaises(DanglingToolResultError) as ctx:
            await session.request_completion()
        self.assertEqual(ctx.exception.tool_call_ids, ("call_1",))
        with self.assertRaises(DanglingToolResultError):
            session.append_user_turn("hello?")

    async def test_tool_result_without_matching_request_fails(self) -> None:
        backend = ScriptedBackend(
            results=[CompletionResult(text="", finish_reason=FinishReason.TOOL_CALLS, tool_calls=(FLIGHT_CALL,))],
        )
        session = self._session(backend)
        with self.assertRaises(DanglingToolResultError):
            session.append_tool_result("call_1", "getFlightInfo", "{}")

        session.append_user_turn("Flight?")
        await session.request_completion()
        with self.assertRaises(DanglingToolResultError):
            session.append_tool_result("call_9", "getFlightInfo", "{}")
        with self.assertRaises(DanglingToolResultError):
            session.append_tool_result("call_1", "otherTool", "{}")

        session.append_tool_result("call_1", "getFlightInfo", {"ok": True})
        with self.assertRaises(DanglingToolResultError):
            session.append_tool_result("call_1", "getFlightInfo", "{}")
        self.assertEqual(session.turns[-1].content, '{"ok": true}')

    async def test_resolve_tool_calls_answers_every_request(self) -> None:
        calls = (
            FLIGHT_CALL,
            ToolCallRequest(id="call_2", name="bookHotel", arguments="{}"),
            ToolCallRequest(id="call_3", name="getFlightInfo", arguments='{"originCity": "Seattle"}'),
        )
        backend = ScriptedBackend(
            results=[
                CompletionResult(text="", finish_reason=FinishReason.TOOL_CALLS, tool_calls=calls),
                CompletionResult(text="done"),
            ],
        )
        session = self._session(backend)
        session.append_user_turn("plan my trip")
        await session.request_completion()

        results = await session.resolve_tool_calls()

        self.assertEqual([r.failed for r in results], [False, True, True])
        self.assertIn("Tool not found: bookHotel", json.loads(results[1].content)["error"])
        self.assertIn("destinationCity", json.loads(results[2].content)["error"])
        self.assertIs(session.tool_call_state("call_1"), ToolCallState.RESOLVED)
        self.assertIs(session.tool_call_state("call_2"), ToolCallState.FAILED)
        self.assertEqual(session.pending_tool_calls, [])
        await session.request_completion()
        self.assertEqual(session.turns[-1].content, "done")

    async def test_duplicate_tool_call_ids_are_rejected(self) -> None:
        backend = ScriptedBackend(
            results=[
                CompletionResult(text="", finish_reason=FinishReason.TOOL_CALLS, tool_calls=(FLIGHT_CALL, FLIGHT_CALL)),
            ],
        )
        session = self._session(backend)
        session.append_user_turn("Flight?")
        with self.assertRaises(TransportError):
            await session.request_completion()
        self.assertEqual(session.turns[-1].role, Role.USER)

    async def test_resolve_tool_calls_requires_dispatcher(self) -> None:
        session = ConversationSession(backend=ScriptedBackend(), model_name="test-model")
        session.initialize()
        with self.assertRaises(InvalidStateError):
            await session.resolve_tool_calls()


class SessionStreamingTests(unittest.IsolatedAsyncioTestCase):
    def _stream_backend(self) -> ScriptedBackend:
        return ScriptedBackend(
            chunks=[
                StreamChunk(text="The"),
                StreamChunk(text=" capital"),
                StreamChunk(text=""),
                StreamChunk(text=" is"),
                StreamChunk(text=" Paris."),
                StreamChunk(finish_reason=FinishReason.STOP, usage=TokenUsage(10, 4, 14)),
            ],
        )

    async def test_drained_stream_appends_concatenated_turn(self) -> None:
        session = ConversationSession(backend=self._stream_backend(), model_name="test-model")
        session.initialize("sys")
        session.append_user_turn("What is the capital of France?")

        stream = await session.request_completion(stream=True)
        self.assertIsInstance(stream, CompletionStream)
        self.assertEqual(len(session), 2)
        fragments = [fragment async for fragment in stream]

        self.assertEqual(fragments, ["The", " capital", " is", " Paris."])
        self.assertEqual(session.turns[-1].role, Role.ASSISTANT)
        self.assertEqual(session.turns[-1].content, "The capital is Paris.")
        self.assertEqual(stream.usage, TokenUsage(prompt_tokens=10, completion_tokens=4, total_tokens=14))
        self.assertEqual(session.last_usage, stream.usage)
        self.assertEqual(stream.result().finish_reason, FinishReason.STOP)

    async def test_collect_returns_result(self) -> None:
        session = ConversationSession(backend=self._stream_backend(), model_name="test-model")
        session.initialize()
        session.append_user_turn("q")
        stream = await session.request_completion(stream=True)
        result = await stream.collect()  # type: ignore[union-attr]
        self.assertEqual(result.text, "The capital is Paris.")
        self.assertEqual(len(session), 2)

    async def test_closed_stream_is_discarded(self) -> None:
        backend = self._stream_backend()
        backend.results.append(CompletionResult(text="fresh answer"))
        session = ConversationSession(backend=backend, model_name="test-model")
        session.initialize()
        session.append_user_turn("q")

        stream = await session.request_completion(stream=True)
        first = await stream.__anext__()  # type: ignore[union-attr]
        self.assertEqual(first, "The")
        await stream.aclose()  # type: ignore[union-attr]

        self.assertTrue(stream.cancelled)  # type: ignore[union-attr]
        self.assertTrue(backend.stream_closed)
        self.assertEqual([turn.role for turn in session.turns], [Role.USER])
        with self.assertRaises(InvalidStateError):
            await stream.__anext__()  # type: ignore[union-attr]

        await session.request_completion()
        self.assertEqual(len(backend.requests[-1].turns), 1)
        self.assertEqual(session.turns[-1].content, "fresh answer")

    async def test_new_operation_supersedes_open_stream(self) -> None:
        session = ConversationSession(backend=self._stream_backend(), model_name="test-model")
        session.initialize()
        session.append_user_turn("q")
        stream = await session.request_completion(stream=True)
        await stream.__anext__()  # type: ignore[union-attr]

        session.append_user_turn("never mind")

        self.assertTrue(stream.cancelled)  # type: ignore[union-attr]
        self.assertEqual([turn.role for turn in session.turns], [Role.USER, Role.USER])

    async def test_failed_stream_is_discarded(self) -> None:
        session = ConversationSession(backend=FailingStreamBackend(), model_name="test-model")
        session.initialize()
        session.append_user_turn("q")
        stream = await session.request_completion(stream=True)

        received: List[str] = []
        with self.assertRaises(TransportError):
            async for fragment in stream:  # type: ignore[union-attr]
                received.append(fragment)

        self.assertEqual(received, ["partial"])
        self.assertTrue(stream.cancelled)  # type: ignore[union-attr]
        self.assertEqual(len(session), 1)

    async def test_stream_ending_in_tool_calls_marks_them_pending(self) -> None:
        backend = ScriptedBackend(chunks=[StreamChunk(tool_calls=(FLIGHT_CALL,))])
        session = ConversationSession(backend=backend, model_name="test-model")
        session.initialize()
        session.append_user_turn("Flight?")
        stream = await session.request_completion(stream=True)
        result = await stream.collect()  # type: ignore[union-attr]

        self.assertIs(result.finish_reason, FinishReason.TOOL_CALLS)
        self.assertEqual(session.pending_tool_calls, [FLIGHT_CALL])

    async def test_stream_with_tool_calls_reported_as_stop_is_tool_calls(self) -> None:
        backend = ScriptedBackend(chunks=[StreamChunk(finish_reason=FinishReason.STOP, tool_calls=(FLIGHT_CALL,))])
        session = ConversationSession(backend=backend, model_name="test-model")
        session.initialize()
        session.append_user_turn("Flight?")
        stream = await session.request_completion(stream=True)
        result = await stream.collect()  # type: ignore[union-attr]

        self.assertIs(result.finish_reason, FinishReason.TOOL_CALLS)
        self.assertEqual(session.tool_call_state("call_1"), ToolCallState.REQUESTED)

    async def test_superseded_stream_closes_its_source(self) -> None:
        backend = self._stream_backend()
        session = ConversationSession(backend=backend, model_name="test-model")
        session.initialize()
        session.append_user_turn("q")
        stream = await session.request_completion(stream=True)
        await stream.__anext__()  # type: ignore[union-attr]

        session.reset()
        for _ in range(3):
            await asyncio.sleep(0)

        self.assertTrue(stream.cancelled)  # type: ignore[union-attr]
        self.assertTrue(backend.stream_closed)


if __name__ == "__main__":
    unittest.main()
