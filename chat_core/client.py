from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Tuple
from http import client as http_client
from urllib import error, request

from .errors import AuthenticationError, RateLimitError, TransportError
from .types import (
    CompletionRequest,
    CompletionResult,
    FinishReason,
    ImagePart,
    Message,
    Role,
    StreamChunk,
    TextPart,
    TokenUsage,
    ToolCallRequest,
    Turn,
)


def turn_to_message(turn: Turn) -> Message:
    message: Message = {"role": turn.role.value}
    if isinstance(turn.content, str):
        message["content"] = turn.content
    else:
        parts: List[Dict[str, object]] = []
        for part in turn.content:
            if isinstance(part, TextPart):
                parts.append({"type": "text", "text": part.text})
            elif isinstance(part, ImagePart):
                parts.append({"type": "image_url", "image_url": {"url": part.url, "detail": part.detail}})
        message["content"] = parts

    if turn.role is Role.ASSISTANT and turn.tool_calls:
        message["content"] = turn.text or None
        message["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {
                    "name": call.name,
                    "arguments": (
                        call.arguments
                        if isinstance(call.arguments, str)
                        else json.dumps(call.arguments, ensure_ascii=False)
                    ),
                },
            }
            for call in turn.tool_calls
        ]
    if turn.role is Role.TOOL:
        message["tool_call_id"] = turn.tool_call_id
        message["name"] = turn.tool_name
    return message


def _message_text(content: object) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            str(part.get("text", ""))
            for part in content
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return ""


def _parse_tool_calls(raw_tool_calls: object) -> Tuple[ToolCallRequest, ...]:
    if not isinstance(raw_tool_calls, list):
        return ()
    calls: List[ToolCallRequest] = []
    for index, raw_call in enumerate(raw_tool_calls):
        if not isinstance(raw_call, dict):
            continue
        function_part = raw_call.get("function") or {}
        if not isinstance(function_part, dict):
            continue
        raw_args = function_part.get("arguments")
        if raw_args is None:
            raw_args = "{}"
        calls.append(
            ToolCallRequest(
                id=str(raw_call.get("id") or f"call-{index}"),
                name=str(function_part.get("name") or ""),
                arguments=raw_args if isinstance(raw_args, (str, dict)) else json.dumps(raw_args),
            ),
        )
    return tuple(calls)


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


@dataclass(frozen=True)
class OpenAICompatClient:
    """Completion boundary for OpenAI-compatible ``/chat/completions`` endpoints."""

    base_url: str
    api_key_env: str | None = None
    api_key: str | None = None
    timeout_seconds: int = 60
    logger: logging.Logger | None = None

    def resolve_api_key(self) -> str:
        if self.api_key and self.api_key.strip():
            return self.api_key.strip()

        if self.api_key_env:
            api_key_from_env = os.environ.get(self.api_key_env, "").strip()
            if api_key_from_env:
                return api_key_from_env

        fallback = os.environ.get("OPENAI_API_KEY", "").strip()
        if fallback:
            return fallback

        env_name = self.api_key_env or "OPENAI_API_KEY"
        raise AuthenticationError(
            f"Missing API key. Set config.api_key, or set env var {env_name} (or OPENAI_API_KEY).",
        )

    def build_payload(self, completion_request: CompletionRequest) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "model": completion_request.model_name,
            "messages": [turn_to_message(turn) for turn in completion_request.turns],
        }
        sampling = completion_request.sampling
        if sampling.temperature is not None:
            payload["temperature"] = sampling.temperature
        if sampling.top_p is not None:
            payload["top_p"] = sampling.top_p
        if sampling.max_tokens is not None:
            payload["max_tokens"] = sampling.max_tokens
        if completion_request.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": tool.to_json_schema(),
                    },
                }
                for tool in completion_request.tools
            ]
            payload["tool_choice"] = "auto"
        if completion_request.stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def complete(self, completion_request: CompletionRequest) -> CompletionResult:
        payload = self.build_payload(completion_request)
        payload.pop("stream", None)
        payload.pop("stream_options", None)
        return await asyncio.to_thread(self._complete_sync, payload)

    async def stream(self, completion_request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        payload = self.build_payload(completion_request)
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}
        resp = await asyncio.to_thread(self._open, payload)
        try:
            lines = iter(resp)
            # index -> {"id": str, "name": str, "arguments": str}
            tool_call_buffers: Dict[int, Dict[str, str]] = {}
            usage: TokenUsage | None = None
            finish_reason: FinishReason | None = None

            while True:
                raw_line = await asyncio.to_thread(self._next_line, lines)
                if raw_line is None:
                    break
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line or not line.startswith("data:"):
                    continue
                payload_line = line[5:].strip()
                if payload_line == "[DONE]":
                    break
                try:
                    chunk = json.loads(payload_line)
                except json.JSONDecodeError:
                    continue
                if not isinstance(chunk, dict):
                    continue
                parsed_usage = self._parse_usage(chunk.get("usage"))
                if parsed_usage is not None:
                    usage = parsed_usage
                choices = chunk.get("choices")
                if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
                    continue
                if choices[0].get("finish_reason"):
                    finish_reason = FinishReason.from_wire(choices[0]["finish_reason"])
                delta = choices[0].get("delta")
                if not isinstance(delta, dict):
                    continue

                content_piece = delta.get("content")
                if isinstance(content_piece, str) and content_piece:
                    yield StreamChunk(text=content_piece)

                raw_tool_calls = delta.get("tool_calls")
                if isinstance(raw_tool_calls, list):
                    for tc in raw_tool_calls:
                        if isinstance(tc, dict):
                            self._merge_tool_call_delta(tool_call_buffers, tc)

            tool_calls = tuple(
                ToolCallRequest(
                    id=item["id"] or f"stream-call-{idx}",
                    name=item["name"],
                    arguments=item["arguments"].strip() or "{}",
                )
                for idx, item in sorted(tool_call_buffers.items())
            )
            if tool_calls and finish_reason in (None, FinishReason.STOP):
                finish_reason = FinishReason.TOOL_CALLS
            if self.logger:
                self.logger.debug("stream finished reason=%s tool_calls=%d usage=%s", finish_reason, len(tool_calls), usage)
            yield StreamChunk(finish_reason=finish_reason, tool_calls=tool_calls, usage=usage)
        finally:
            resp.close()

    @staticmethod
    def _merge_tool_call_delta(buffers: Dict[int, Dict[str, str]], tc: Dict[str, object]) -> None:
        idx = tc.get("index", 0)
        if not isinstance(idx, int):
            idx = 0
        buf = buffers.setdefault(idx, {"id": "", "name": "", "arguments": ""})
        tc_id = tc.get("id")
        if isinstance(tc_id, str) and tc_id:
            buf["id"] = tc_id
        fn = tc.get("function")
        if not isinstance(fn, dict):
            return
        fn_name = fn.get("name")
        if isinstance(fn_name, str) and fn_name:
            # Some providers stream function name in fragments.
            if buf["name"] and not fn_name.startswith(buf["name"]):
                buf["name"] += fn_name
            else:
                buf["name"] = fn_name
        fn_args = fn.get("arguments")
        if isinstance(fn_args, str) and fn_args:
            buf["arguments"] += fn_args

    def _complete_sync(self, payload: Dict[str, object]) -> CompletionResult:
        with self._open(payload) as resp:
            try:
                data = json.loads(resp.read().decode("utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError) as err:
                raise TransportError(f"Malformed completion response: {err}") from err
            except (OSError, http_client.HTTPException) as err:
                raise TransportError(f"Failed reading completion response: {err!r}") from err

        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise TransportError("Completion response has no choices")
        choice = choices[0]
        message = choice.get("message") or {}
        if not isinstance(message, dict):
            raise TransportError(f"Completion response message is not an object: {message!r}")
        if self.logger:
            self.logger.debug("raw response message: %s", json.dumps(message, ensure_ascii=False, indent=2))
        tool_calls = _parse_tool_calls(message.get("tool_calls"))
        finish_reason = FinishReason.from_wire(choice.get("finish_reason"))
        if tool_calls and finish_reason is FinishReason.STOP:
            finish_reason = FinishReason.TOOL_CALLS
        return CompletionResult(
            text=_message_text(message.get("content")),
            finish_reason=finish_reason,
            tool_calls=tool_calls,
            usage=self._parse_usage(data.get("usage")),
        )

    def _open(self, payload: Dict[str, object]):  # type: ignore[no-untyped-def]
        api_key = self.resolve_api_key()
        if self.logger:
            self.logger.debug("request payload: %s", json.dumps(payload, ensure_ascii=False, indent=2))

        body = json.dumps(payload).encode("utf-8")
        req = request.Request(
            url=f"{self.base_url.rstrip('/')}/chat/completions",
            data=body,
            method="POST",
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key}",
            },
        )
        try:
            return request.urlopen(req, timeout=self.timeout_seconds)
        except error.HTTPError as err:
            raise self._map_http_error(err) from err
        except error.URLError as err:
            raise TransportError(f"Cannot reach {self.base_url}: {err.reason}") from err
        except TimeoutError as err:
            raise TransportError(f"Request to {self.base_url} timed out after {self.timeout_seconds}s") from err
        except (OSError, http_client.HTTPException) as err:
            raise TransportError(f"Connection to {self.base_url} failed: {err!r}") from err

    def _map_http_error(self, err: error.HTTPError) -> Exception:
        try:
            detail = err.read().decode("utf-8", errors="replace")[:500]
        except OSError:
            detail = ""
        if self.logger:
            self.logger.warning("http error status=%s body=%s", err.code, detail)
        message = f"HTTP {err.code} from completion endpoint: {detail or err.reason}"
        if err.code in (401, 403):
            return AuthenticationError(message, status=err.code)
        if err.code == 429:
            retry_after = _parse_retry_after(err.headers.get("Retry-After") if err.headers else None)
            return RateLimitError(message, status=err.code, retry_after=retry_after)
        return TransportError(message, status=err.code)

    @staticmethod
    def _next_line(lines) -> bytes | None:  # type: ignore[no-untyped-def]
        try:
            return next(lines, None)
        except (OSError, http_client.HTTPException) as err:
            raise TransportError(f"Stream interrupted: {err!r}") from err

    @staticmethod
    def _parse_usage(raw_usage: object) -> TokenUsage | None:
        if not isinstance(raw_usage, dict):
            return None
        try:
            prompt = int(
                raw_usage.get("prompt_tokens", raw_usage.get("promptTokens", raw_usage.get("input_tokens", 0))) or 0,
            )
            completion = int(
                raw_usage.get("completion_tokens", raw_usage.get("completionTokens", raw_usage.get("output_tokens", 0)))
                or 0,
            )
            total = int(raw_usage.get("total_tokens", raw_usage.get("totalTokens", 0)) or 0)
        except (TypeError, ValueError) as err:
            raise TransportError(f"Malformed usage block: {raw_usage!r}") from err
        if total <= 0:
            total = prompt + completion
        return TokenUsage(
            prompt_tokens=max(0, prompt),
            completion_tokens=max(0, completion),
            total_tokens=max(0, total),
        )
