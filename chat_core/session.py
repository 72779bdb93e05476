from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import AsyncIterator, Dict, List, Sequence, Tuple, Union

from .dispatcher import ToolDispatcher, ToolResult, error_payload
from .errors import (
    ArgumentValidationError,
    DanglingToolResultError,
    InvalidStateError,
    TransportError,
    UnknownToolError,
)
from .types import (
    CompletionBackend,
    CompletionRequest,
    CompletionResult,
    ContentPart,
    FinishReason,
    Role,
    SamplingOptions,
    StreamChunk,
    TokenUsage,
    ToolCallRequest,
    Turn,
    as_content,
)


class ToolCallState(str, Enum):
    REQUESTED = "requested"
    RESOLVING = "resolving"
    RESOLVED = "resolved"
    FAILED = "failed"


_OPEN_STATES = (ToolCallState.REQUESTED, ToolCallState.RESOLVING)


class CompletionStream:
    """Lazy sequence of text fragments for one streamed completion.

    Iterating drives the request; nothing is sent until the first fragment
    is requested. Once the sequence is drained the session appends one
    assistant turn holding the concatenated text. A stream that is closed
    early, fails part-way, or is superseded by another session operation is
    discarded: no assistant turn is appended and ``cancelled`` is set.
    """

    def __init__(
        self,
        session: "ConversationSession",
        request: CompletionRequest,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self._session = session
        self.request = request
        self.timeout_seconds = timeout_seconds
        self._source: AsyncIterator[StreamChunk] | None = None
        self._fragments: List[str] = []
        self.finish_reason: FinishReason | None = None
        self.tool_calls: Tuple[ToolCallRequest, ...] = ()
        self.usage: TokenUsage | None = None
        self.completed = False
        self.cancelled = False
        self._closing: asyncio.Task[None] | None = None

    @property
    def text(self) -> str:
        return "".join(self._fragments)

    @property
    def closed(self) -> bool:
        return self.completed or self.cancelled

    def result(self) -> CompletionResult:
        if not self.completed:
            raise InvalidStateError("Stream has not been fully drained")
        return CompletionResult(
            text=self.text,
            finish_reason=self.finish_reason or FinishReason.STOP,
            tool_calls=self.tool_calls,
            usage=self.usage,
        )

    def __aiter__(self) -> "CompletionStream":
        return self

    async def __anext__(self) -> str:
        if self.completed:
            raise StopAsyncIteration
        if self.cancelled:
            raise InvalidStateError("Stream was cancelled; issue a new request to restart it")
        if self._source is None:
            self._source = self._session.backend.stream(self.request)

        while True:
            try:
                chunk = await asyncio.wait_for(self._source.__anext__(), timeout=self.timeout_seconds)
            except StopAsyncIteration:
                self._finish()
                raise
            except asyncio.TimeoutError as err:
                await self._abandon("timeout")
                raise TransportError(f"Stream stalled for more than {self.timeout_seconds}s") from err
            except asyncio.CancelledError:
                await self._abandon("task cancelled")
                raise
            except Exception:
                await self._abandon("error")
                raise

            if chunk.usage is not None:
                self.usage = chunk.usage
            if chunk.finish_reason is not None:
                self.finish_reason = chunk.finish_reason
            if chunk.tool_calls:
                self.tool_calls = chunk.tool_calls
            if chunk.text:
                self._fragments.append(chunk.text)
                return chunk.text

    async def collect(self) -> CompletionResult:
        async for _ in self:
            pass
        return self.result()

    async def aclose(self) -> None:
        if self.closed:
            return
        await self._abandon("closed by caller")

    def _finish(self) -> None:
        self.completed = True
        if self.tool_calls and self.finish_reason in (None, FinishReason.STOP):
            self.finish_reason = FinishReason.TOOL_CALLS
        elif self.finish_reason is None:
            self.finish_reason = FinishReason.STOP
        self._session._seal_stream(self)

    def _supersede(self) -> None:
        self.cancelled = True
        source, self._source = self._source, None
        closer = getattr(source, "aclose", None)
        if closer is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop left to run the close on; asyncio.run finalizes async generators at shutdown.
            return
        self._closing = loop.create_task(closer())

    async def _abandon(self, reason: str) -> None:
        self.cancelled = True
        source, self._source = self._source, None
        self._session._discard_stream(self, reason)
        closer = getattr(source, "aclose", None)
        if closer is not None:
            await closer()


class ConversationSession:
    """Append-only transcript that mediates every completion request.

    The session is a single-writer structure: callers sharing one session
    must serialize their calls.
    """

    def __init__(
        self,
        *,
        backend: CompletionBackend,
        model_name: str,
        dispatcher: ToolDispatcher | None = None,
        sampling: SamplingOptions | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.backend = backend
        self.model_name = model_name
        self.dispatcher = dispatcher
        self.sampling = sampling or SamplingOptions()
        self.logger = logger
        self._initialized = False
        self._turns: List[Turn] = []
        self._tool_states: Dict[str, ToolCallState] = {}
        self._active_stream: CompletionStream | None = None
        self._last_usage: TokenUsage | None = None
        self._usage_totals = TokenUsage()

    # -- lifecycle -----------------------------------------------------

    def initialize(self, system_prompt: str | None = None) -> None:
        if self._initialized:
            raise InvalidStateError("Session is already initialized")
        self._initialized = True
        if system_prompt:
            self._append(Turn(role=Role.SYSTEM, content=system_prompt))

    def reset(self, system_prompt: str | None = None) -> None:
        self._require_initialized()
        self._supersede_stream()
        self._turns.clear()
        self._tool_states.clear()
        self._last_usage = None
        self._usage_totals = TokenUsage()
        if self.logger:
            self.logger.info("session reset")
        if system_prompt:
            self._append(Turn(role=Role.SYSTEM, content=system_prompt))

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def turns(self) -> Tuple[Turn, ...]:
        return tuple(self._turns)

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def last_usage(self) -> TokenUsage | None:
        return self._last_usage

    @property
    def usage_totals(self) -> TokenUsage:
        return self._usage_totals

    # -- user and tool turns ------------------------------------------

    def append_user_turn(self, content: Union[str, Sequence[ContentPart]]) -> Turn:
        self._require_ready()
        self._require_no_pending("append a user turn")
        turn = Turn(role=Role.USER, content=as_content(content))
        self._append(turn)
        return turn

    @property
    def pending_tool_calls(self) -> List[ToolCallRequest]:
        latest = self._latest_assistant_turn()
        if latest is None:
            return []
        return [call for call in latest.tool_calls if self._tool_states.get(call.id) in _OPEN_STATES]

    def tool_call_state(self, tool_call_id: str) -> ToolCallState | None:
        return self._tool_states.get(tool_call_id)

    def append_tool_result(
        self,
        tool_call_id: str,
        tool_name: str,
        content: object,
        *,
        failed: bool = False,
    ) -> Turn:
        self._require_ready()
        state = self._tool_states.get(tool_call_id)
        if state not in _OPEN_STATES:
            raise DanglingToolResultError(
                f"No pending tool call with id {tool_call_id!r} in the latest assistant turn",
                tool_call_ids=[tool_call_id],
            )
        latest = self._latest_assistant_turn()
        if latest is None:
            raise InvalidStateError(f"Tool call {tool_call_id!r} has no assistant turn in the transcript")
        expected_name = next(call.name for call in latest.tool_calls if call.id == tool_call_id)
        if tool_name != expected_name:
            raise DanglingToolResultError(
                f"Tool call {tool_call_id!r} was issued for {expected_name!r}, not {tool_name!r}",
                tool_call_ids=[tool_call_id],
            )

        text = content if isinstance(content, str) else json.dumps(content, ensure_ascii=False)
        turn = Turn(role=Role.TOOL, content=text, tool_call_id=tool_call_id, tool_name=tool_name)
        self._append(turn)
        self._tool_states[tool_call_id] = ToolCallState.FAILED if failed else ToolCallState.RESOLVED
        return turn

    async def resolve_tool_calls(self, *, timeout_seconds: float | None = None) -> List[ToolResult]:
        """Resolve every pending tool call through the attached dispatcher.

        Unknown tools and invalid arguments are answered with an error
        payload so that every request of the latest assistant turn ends up
        with a matching tool turn.
        """
        if self.dispatcher is None:
            raise InvalidStateError("No tool dispatcher is attached to this session")
        results: List[ToolResult] = []
        for call in self.pending_tool_calls:
            self._tool_states[call.id] = ToolCallState.RESOLVING
            try:
                result = await self.dispatcher.resolve(call, timeout_seconds=timeout_seconds)
            except (UnknownToolError, ArgumentValidationError) as err:
                result = ToolResult(call.id, call.name, error_payload(err), failed=True)
            except BaseException:
                self._tool_states[call.id] = ToolCallState.REQUESTED
                raise
            self.append_tool_result(result.tool_call_id, result.tool_name, result.content, failed=result.failed)
            results.append(result)
        return results

    # -- completions ---------------------------------------------------

    async def request_completion(
        self,
        *,
        stream: bool = False,
        sampling: SamplingOptions | None = None,
        model_name: str | None = None,
        timeout_seconds: float | None = None,
    ) -> Union[CompletionResult, CompletionStream]:
        self._require_ready()
        self._require_no_pending("request a completion")
        if not self._turns:
            raise InvalidStateError("Transcript is empty; append a user turn first")

        request = CompletionRequest(
            turns=tuple(self._turns),
            model_name=model_name or self.model_name,
            sampling=sampling or self.sampling,
            tools=tuple(self.dispatcher.specs) if self.dispatcher else (),
            stream=stream,
        )
        if self.logger:
            self.logger.debug(
                "completion request model=%s turns=%d tools=%d stream=%s",
                request.model_name,
                len(request.turns),
                len(request.tools),
                stream,
            )

        if stream:
            completion_stream = CompletionStream(self, request, timeout_seconds=timeout_seconds)
            self._active_stream = completion_stream
            return completion_stream

        try:
            result = await asyncio.wait_for(self.backend.complete(request), timeout=timeout_seconds)
        except asyncio.TimeoutError as err:
            raise TransportError(f"Completion request timed out after {timeout_seconds}s") from err
        self._append_assistant(result.text, result.tool_calls, result.usage)
        return result

    # -- internals -----------------------------------------------------

    def _seal_stream(self, stream: CompletionStream) -> None:
        if stream is not self._active_stream:
            return
        self._active_stream = None
        self._append_assistant(stream.text, stream.tool_calls, stream.usage)

    def _discard_stream(self, stream: CompletionStream, reason: str) -> None:
        if stream is not self._active_stream:
            return
        self._active_stream = None
        if self.logger:
            self.logger.warning("stream discarded (%s) after %d chars", reason, len(stream.text))

    def _supersede_stream(self) -> None:
        stream = self._active_stream
        if stream is None or stream.closed:
            return
        stream._supersede()
        self._discard_stream(stream, "superseded")

    def _append_assistant(
        self,
        text: str,
        tool_calls: Tuple[ToolCallRequest, ...],
        usage: TokenUsage | None,
    ) -> None:
        ids = [call.id for call in tool_calls]
        if len(set(ids)) != len(ids):
            raise TransportError(f"Completion returned duplicate tool call ids: {ids}")
        self._append(Turn(role=Role.ASSISTANT, content=text, tool_calls=tuple(tool_calls)))
        self._tool_states = {call_id: ToolCallState.REQUESTED for call_id in ids}
        if usage is not None:
            self._last_usage = usage
            self._usage_totals = self._usage_totals + usage

    def _append(self, turn: Turn) -> None:
        self._turns.append(turn)
        if self.logger:
            self.logger.debug(
                "append turn #%d role=%s chars=%d tool_calls=%d",
                len(self._turns),
                turn.role.value,
                len(turn.text),
                len(turn.tool_calls),
            )

    def _latest_assistant_turn(self) -> Turn | None:
        for turn in reversed(self._turns):
            if turn.role is Role.ASSISTANT:
                return turn
        return None

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise InvalidStateError("Session is not initialized; call initialize() first")

    def _require_ready(self) -> None:
        self._require_initialized()
        self._supersede_stream()

    def _require_no_pending(self, action: str) -> None:
        pending = [call.id for call in self.pending_tool_calls]
        if pending:
            raise DanglingToolResultError(
                f"Cannot {action} while tool calls are unanswered: {', '.join(pending)}",
                tool_call_ids=pending,
            )
