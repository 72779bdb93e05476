from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Callable, Sequence, Union

from .session import CompletionStream, ConversationSession
from .text_utils import summarize_text
from .types import CompletionResult, ContentPart, FinishReason, TokenUsage, ToolCallRequest


@dataclass(frozen=True)
class ExchangeOutcome:
    text: str
    finish_reason: FinishReason
    rounds: int
    usage: TokenUsage
    hit_round_limit: bool = False


def _format_arguments(call: ToolCallRequest) -> str:
    if isinstance(call.arguments, str):
        return call.arguments
    return json.dumps(call.arguments, ensure_ascii=False, sort_keys=True)


async def run_exchange(
    session: ConversationSession,
    content: Union[str, Sequence[ContentPart]],
    *,
    stream: bool = False,
    max_tool_rounds: int = 8,
    on_text_delta: Callable[[str], None] | None = None,
    on_trace: Callable[[str], None] | None = None,
    timeout_seconds: float | None = None,
    tool_timeout_seconds: float | None = None,
    logger: logging.Logger | None = None,
) -> ExchangeOutcome:
    """Append one user turn and drive the session until the model answers.

    Each round requests a completion; when the model asks for tools, every
    pending call is resolved through the session's dispatcher before the
    next round. Stops after ``max_tool_rounds`` rounds even if the model is
    still asking for tools.
    """
    session.append_user_turn(content)
    return await continue_exchange(
        session,
        stream=stream,
        max_tool_rounds=max_tool_rounds,
        on_text_delta=on_text_delta,
        on_trace=on_trace,
        timeout_seconds=timeout_seconds,
        tool_timeout_seconds=tool_timeout_seconds,
        logger=logger,
    )


async def continue_exchange(
    session: ConversationSession,
    *,
    stream: bool = False,
    max_tool_rounds: int = 8,
    on_text_delta: Callable[[str], None] | None = None,
    on_trace: Callable[[str], None] | None = None,
    timeout_seconds: float | None = None,
    tool_timeout_seconds: float | None = None,
    logger: logging.Logger | None = None,
) -> ExchangeOutcome:
    def _emit_trace(line: str) -> None:
        if logger:
            logger.info(line)
        if on_trace is not None:
            on_trace(line)

    usage = TokenUsage()
    result: CompletionResult | None = None
    for round_index in range(1, max_tool_rounds + 1):
        response = await session.request_completion(stream=stream, timeout_seconds=timeout_seconds)
        if isinstance(response, CompletionStream):
            async for fragment in response:
                if on_text_delta is not None:
                    on_text_delta(fragment)
            result = response.result()
        else:
            result = response
        if result.usage is not None:
            usage = usage + result.usage

        if result.finish_reason is not FinishReason.TOOL_CALLS and not result.tool_calls:
            return ExchangeOutcome(
                text=result.text,
                finish_reason=result.finish_reason,
                rounds=round_index,
                usage=usage,
            )

        for call in result.tool_calls:
            _emit_trace(f"[TOOL CALL] {call.name} args={summarize_text(_format_arguments(call), limit=160)}")
        tool_results = await session.resolve_tool_calls(timeout_seconds=tool_timeout_seconds)
        for tool_result in tool_results:
            _emit_trace(f"[TOOL RESULT] {tool_result.tool_name} {summarize_text(tool_result.content)}")

    _emit_trace(f"[LOOP WARNING] reached max_tool_rounds={max_tool_rounds} without a final answer")
    return ExchangeOutcome(
        text="",
        finish_reason=FinishReason.TOOL_CALLS,
        rounds=max_tool_rounds,
        usage=usage,
        hit_round_limit=True,
    )
