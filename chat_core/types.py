from __future__ import annotations

from collections.abc import Awaitable
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Callable, Dict, List, Protocol, Sequence, Tuple, Union

from .errors import InvalidToolSpecError


Message = Dict[str, object]


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class FinishReason(str, Enum):
    STOP = "stop"
    TOOL_CALLS = "tool_calls"
    LENGTH = "length"
    OTHER = "other"

    @classmethod
    def from_wire(cls, value: object) -> "FinishReason":
        if value is None:
            return cls.STOP
        text = str(value).strip().lower()
        # Legacy function-calling responses report "function_call".
        if text == "function_call":
            return cls.TOOL_CALLS
        for member in cls:
            if member.value == text:
                return member
        return cls.OTHER


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ImagePart:
    url: str
    detail: str = "low"


ContentPart = Union[TextPart, ImagePart]
Content = Union[str, Tuple[ContentPart, ...]]


@dataclass(frozen=True)
class ToolCallRequest:
    id: str
    name: str
    # Raw payload as the model produced it: usually a JSON string, sometimes
    # an already-decoded mapping. The dispatcher parses and validates it.
    arguments: Union[str, Dict[str, object]] = "{}"


@dataclass(frozen=True)
class Turn:
    role: Role
    content: Content = ""
    tool_calls: Tuple[ToolCallRequest, ...] = ()
    tool_call_id: str | None = None
    tool_name: str | None = None

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text for part in self.content if isinstance(part, TextPart))


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


_SCHEMA_TYPES = {"string", "number", "integer", "boolean", "object", "array", "null"}


@dataclass(frozen=True)
class ParameterSpec:
    type: str
    description: str = ""
    required: bool = False


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: Dict[str, ParameterSpec] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise InvalidToolSpecError("Tool name must be a non-empty string")
        for param_name, param in self.parameters.items():
            if param.type not in _SCHEMA_TYPES:
                raise InvalidToolSpecError(
                    f"Tool {self.name}: parameter {param_name} has unsupported type {param.type!r}",
                )

    @property
    def required(self) -> List[str]:
        return [name for name, param in self.parameters.items() if param.required]

    def to_json_schema(self) -> Dict[str, object]:
        properties: Dict[str, object] = {}
        for name, param in self.parameters.items():
            prop: Dict[str, object] = {"type": param.type}
            if param.description:
                prop["description"] = param.description
            properties[name] = prop
        return {
            "type": "object",
            "properties": properties,
            "required": self.required,
        }

    @classmethod
    def from_json_schema(cls, *, name: str, description: str, schema: Dict[str, object]) -> "ToolSpec":
        """Build a spec from an OpenAI-style ``{"type": "object", ...}`` parameter schema."""
        raw_properties = schema.get("properties") or {}
        if not isinstance(raw_properties, dict):
            raise InvalidToolSpecError(f"Tool {name}: 'properties' must be an object")
        raw_required = schema.get("required") or []
        if not isinstance(raw_required, list):
            raise InvalidToolSpecError(f"Tool {name}: 'required' must be an array")
        unknown = [str(item) for item in raw_required if item not in raw_properties]
        if unknown:
            raise InvalidToolSpecError(
                f"Tool {name}: required parameters not declared: {', '.join(unknown)}",
            )
        parameters: Dict[str, ParameterSpec] = {}
        for param_name, raw_param in raw_properties.items():
            item = raw_param if isinstance(raw_param, dict) else {}
            parameters[str(param_name)] = ParameterSpec(
                type=str(item.get("type", "string")),
                description=str(item.get("description", "")),
                required=param_name in raw_required,
            )
        return cls(name=name, description=description, parameters=parameters)


@dataclass(frozen=True)
class SamplingOptions:
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None


@dataclass(frozen=True)
class CompletionRequest:
    turns: Tuple[Turn, ...]
    model_name: str
    sampling: SamplingOptions = field(default_factory=SamplingOptions)
    tools: Tuple[ToolSpec, ...] = ()
    stream: bool = False


@dataclass(frozen=True)
class CompletionResult:
    text: str
    finish_reason: FinishReason = FinishReason.STOP
    tool_calls: Tuple[ToolCallRequest, ...] = ()
    usage: TokenUsage | None = None


@dataclass(frozen=True)
class StreamChunk:
    """One item of a streamed completion.

    Text fragments arrive with ``text`` set. The final chunk carries the
    finish reason, any tool calls assembled from the stream and, when the
    provider reports it, the usage record.
    """

    text: str = ""
    finish_reason: FinishReason | None = None
    tool_calls: Tuple[ToolCallRequest, ...] = ()
    usage: TokenUsage | None = None


ToolResultValue = object
ToolImplementation = Callable[[Dict[str, object]], Union[ToolResultValue, Awaitable[ToolResultValue]]]


class CompletionBackend(Protocol):
    async def complete(self, request: CompletionRequest) -> CompletionResult: ...

    def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]: ...


def as_content(value: Union[str, Sequence[ContentPart]]) -> Content:
    if isinstance(value, str):
        return value
    parts = tuple(value)
    for part in parts:
        if not isinstance(part, (TextPart, ImagePart)):
            raise TypeError(f"Unsupported content part: {type(part).__name__}")
    return parts

