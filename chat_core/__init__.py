from .client import OpenAICompatClient
from .config import AppConfig, default_config, load_config
from .dispatcher import ToolDispatcher, ToolResult, error_payload
from .errors import (
    ArgumentValidationError,
    AuthenticationError,
    ChatCoreError,
    CompletionBoundaryError,
    DanglingToolResultError,
    DuplicateToolError,
    InvalidStateError,
    InvalidToolSpecError,
    RateLimitError,
    TransportError,
    UnknownToolError,
)
from .exchange import ExchangeOutcome, continue_exchange, run_exchange
from .logging_utils import close_session_logger, create_session_logger
from .session import CompletionStream, ConversationSession, ToolCallState
from .tool_base import BaseTool
from .types import (
    CompletionBackend,
    CompletionRequest,
    CompletionResult,
    FinishReason,
    ImagePart,
    ParameterSpec,
    Role,
    SamplingOptions,
    StreamChunk,
    TextPart,
    TokenUsage,
    ToolCallRequest,
    ToolSpec,
    Turn,
)

__all__ = [
    "AppConfig",
    "ArgumentValidationError",
    "AuthenticationError",
    "BaseTool",
    "ChatCoreError",
    "CompletionBackend",
    "CompletionBoundaryError",
    "CompletionRequest",
    "CompletionResult",
    "CompletionStream",
    "ConversationSession",
    "DanglingToolResultError",
    "DuplicateToolError",
    "ExchangeOutcome",
    "FinishReason",
    "ImagePart",
    "InvalidStateError",
    "InvalidToolSpecError",
    "OpenAICompatClient",
    "ParameterSpec",
    "RateLimitError",
    "Role",
    "SamplingOptions",
    "StreamChunk",
    "TextPart",
    "TokenUsage",
    "ToolCallRequest",
    "ToolCallState",
    "ToolDispatcher",
    "ToolResult",
    "ToolSpec",
    "TransportError",
    "Turn",
    "UnknownToolError",
    "close_session_logger",
    "continue_exchange",
    "create_session_logger",
    "default_config",
    "error_payload",
    "load_config",
    "run_exchange",
]
