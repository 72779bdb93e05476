from __future__ import annotations

from typing import Iterable


class ChatCoreError(Exception):
    """Base class for every error raised by chat_core."""


class InvalidStateError(ChatCoreError):
    pass


class DanglingToolResultError(ChatCoreError):
    def __init__(self, message: str, *, tool_call_ids: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.tool_call_ids = tuple(tool_call_ids)


class InvalidToolSpecError(ChatCoreError, ValueError):
    pass


class DuplicateToolError(ChatCoreError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Duplicate tool name: {name}")
        self.name = name


class UnknownToolError(ChatCoreError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Tool not found: {name}")
        self.name = name


class ArgumentValidationError(ChatCoreError):
    def __init__(self, tool_name: str, problems: Iterable[str]) -> None:
        self.tool_name = tool_name
        self.problems = tuple(problems)
        super().__init__(f"Invalid arguments for {tool_name}: {'; '.join(self.problems)}")


class CompletionBoundaryError(ChatCoreError):
    """Failure reported by (or while talking to) the completion service."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TransportError(CompletionBoundaryError):
    pass


class RateLimitError(CompletionBoundaryError):
    def __init__(self, message: str, *, status: int | None = 429, retry_after: float | None = None) -> None:
        super().__init__(message, status=status)
        self.retry_after = retry_after


class AuthenticationError(CompletionBoundaryError):
    pass
