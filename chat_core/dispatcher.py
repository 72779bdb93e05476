from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping

from .errors import ArgumentValidationError, DuplicateToolError, UnknownToolError
from .types import ToolCallRequest, ToolImplementation, ToolSpec


@dataclass(frozen=True)
class RegisteredTool:
    spec: ToolSpec
    implementation: ToolImplementation
    is_coroutine: bool


@dataclass(frozen=True)
class ToolResult:
    tool_call_id: str
    tool_name: str
    content: str
    failed: bool = False


def error_payload(err: BaseException | str) -> str:
    message = str(err) if str(err) else type(err).__name__
    return json.dumps({"error": message}, ensure_ascii=False)


def _matches_type(expected: str, value: object) -> bool:
    # bool is a subclass of int, so it has to be excluded from the numeric checks.
    if expected == "string":
        return isinstance(value, str)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "integer":
        if isinstance(value, bool):
            return False
        return isinstance(value, int) or (isinstance(value, float) and value.is_integer())
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "object":
        return isinstance(value, dict)
    if expected == "array":
        return isinstance(value, list)
    if expected == "null":
        return value is None
    return True


def _json_type_name(value: object) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


class ToolDispatcher:
    """Registry of callable tools keyed by name.

    Tools are registered once, at startup. ``resolve`` looks a request up,
    validates its arguments against the registered schema and runs the
    implementation. Lookup and validation problems raise; anything the
    implementation itself raises is folded into an ``{"error": ...}`` payload
    so the model still receives a tool turn it can react to.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._tools: Dict[str, RegisteredTool] = {}
        self.logger = logger

    def register(self, spec: ToolSpec, implementation: ToolImplementation) -> None:
        if spec.name in self._tools:
            raise DuplicateToolError(spec.name)
        self._tools[spec.name] = RegisteredTool(
            spec=spec,
            implementation=implementation,
            is_coroutine=inspect.iscoroutinefunction(implementation),
        )
        if self.logger:
            self.logger.debug("registered tool %s params=%s", spec.name, sorted(spec.parameters))

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def specs(self) -> List[ToolSpec]:
        return [tool.spec for tool in self._tools.values()]

    def names(self) -> List[str]:
        return list(self._tools.keys())

    def get(self, name: str) -> RegisteredTool:
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(name)
        return tool

    def parse_arguments(self, request: ToolCallRequest) -> Dict[str, object]:
        tool = self.get(request.name)
        raw = request.arguments
        if isinstance(raw, Mapping):
            arguments: object = dict(raw)
        else:
            text = str(raw or "").strip() or "{}"
            try:
                arguments = json.loads(text)
            except json.JSONDecodeError as err:
                raise ArgumentValidationError(request.name, [f"arguments are not valid JSON ({err.msg})"]) from err
        if not isinstance(arguments, dict):
            raise ArgumentValidationError(
                request.name,
                [f"arguments must be a JSON object, got {_json_type_name(arguments)}"],
            )

        problems: List[str] = []
        for name in tool.spec.required:
            if name not in arguments:
                problems.append(f"missing required parameter '{name}'")
        for name, value in arguments.items():
            param = tool.spec.parameters.get(name)
            if param is None:
                continue
            if not _matches_type(param.type, value):
                problems.append(f"parameter '{name}' expected {param.type}, got {_json_type_name(value)}")
        if problems:
            raise ArgumentValidationError(request.name, problems)
        return arguments

    async def resolve(self, request: ToolCallRequest, *, timeout_seconds: float | None = None) -> ToolResult:
        tool = self.get(request.name)
        arguments = self.parse_arguments(request)
        if self.logger:
            self.logger.info("tool call id=%s name=%s args=%s", request.id, request.name, json.dumps(arguments, ensure_ascii=False))

        try:
            value = await asyncio.wait_for(self._invoke(tool, arguments), timeout=timeout_seconds)
            content = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
        except asyncio.TimeoutError:
            message = f"Tool {request.name} timed out after {timeout_seconds}s"
            if self.logger:
                self.logger.warning("tool timeout id=%s name=%s", request.id, request.name)
            return ToolResult(request.id, request.name, error_payload(message), failed=True)
        except asyncio.CancelledError:
            raise
        except Exception as err:  # noqa: BLE001
            if self.logger:
                self.logger.warning("tool failed id=%s name=%s error=%r", request.id, request.name, err)
            return ToolResult(request.id, request.name, error_payload(err), failed=True)

        if self.logger:
            self.logger.info("tool result id=%s name=%s content=%s", request.id, request.name, content)
        return ToolResult(request.id, request.name, content)

    @staticmethod
    async def _invoke(tool: RegisteredTool, arguments: Dict[str, object]) -> object:
        value = tool.implementation(arguments)
        if tool.is_coroutine or inspect.isawaitable(value):
            value = await value
        return value
