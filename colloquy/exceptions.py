"""Custom exceptions for Colloquy."""

import asyncio
from typing import Any

import httpx


class ColloquyError(Exception):
    """Base exception for Colloquy."""

    pass


class ConfigurationError(ColloquyError):
    """Configuration-related errors.

    Raised when the orchestrator is missing a collaborator it needs, or when
    its settings make a turn impossible. Never retried.
    """

    pass


class BudgetConfigurationError(ConfigurationError):
    """Reserved tokens leave no room for conversation history."""

    def __init__(
        self,
        system_tokens: int,
        max_response_tokens: int,
        buffer_tokens: int,
        max_context_tokens: int,
    ):
        super().__init__(
            "System prompt and response budget exceed the context window: "
            f"system={system_tokens}, max_response={max_response_tokens}, "
            f"buffer={buffer_tokens}, context_limit={max_context_tokens}"
        )
        self.system_tokens = system_tokens
        self.max_response_tokens = max_response_tokens
        self.buffer_tokens = buffer_tokens
        self.max_context_tokens = max_context_tokens


class ValidationError(ColloquyError):
    """Caller-supplied input is invalid."""

    pass


class ProviderError(ColloquyError):
    """LLM provider errors."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(ProviderError):
    """Provider rejected the credentials."""

    pass


class InvalidRequestError(ProviderError):
    """Provider rejected the request as malformed."""

    pass


class RateLimitError(ProviderError):
    """Provider rate limit exceeded."""

    def __init__(
        self,
        message: str,
        status_code: int | None = 429,
        retry_after: float | None = None,
    ):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class TransientProviderError(ProviderError):
    """Server-side failure that may succeed on a later attempt."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class NetworkError(ProviderError):
    """Transport-level failure talking to the provider."""

    pass


class ToolError(ColloquyError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool '{tool_name}' not found in registry")
        self.tool_name = tool_name


class ToolLoopExhaustedError(ColloquyError):
    """Tool loop hit its iteration cap while the model still wanted tools."""

    def __init__(self, max_iterations: int, last_message: Any = None):
        super().__init__(
            f"Tool loop stopped after {max_iterations} iterations with tool calls still pending"
        )
        self.max_iterations = max_iterations
        self.last_message = last_message


class TurnCancelledError(ColloquyError):
    """The turn was aborted through its cancellation signal."""

    def __init__(self, stage: str):
        super().__init__(f"Turn cancelled during {stage}")
        self.stage = stage


class StorageError(ColloquyError):
    """Conversation store errors."""

    pass


_RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


def error_from_status(
    status_code: int,
    message: str,
    retry_after: float | None = None,
) -> ProviderError:
    """Map an HTTP status code onto the provider error taxonomy.

    Args:
        status_code: HTTP status returned by the backend
        message: Error description (usually includes the response body)
        retry_after: Server-suggested delay in seconds, if any

    Returns:
        ProviderError subclass instance (not raised)
    """
    if status_code in (401, 403):
        return AuthenticationError(message, status_code=status_code)
    if status_code == 429:
        return RateLimitError(message, status_code=status_code, retry_after=retry_after)
    if status_code in (400, 404, 413, 422):
        return InvalidRequestError(message, status_code=status_code)
    if status_code == 408 or status_code >= 500:
        return TransientProviderError(message, status_code=status_code, retry_after=retry_after)
    return ProviderError(message, status_code=status_code)


def classify_failure(exc: BaseException) -> str:
    """Return a short label describing how a provider failure is treated."""
    if isinstance(exc, RateLimitError):
        return "rate_limit"
    if isinstance(exc, TransientProviderError):
        return "server_error"
    if isinstance(exc, (NetworkError, httpx.TransportError, asyncio.TimeoutError)):
        return "network"
    if isinstance(exc, AuthenticationError):
        return "authentication"
    if isinstance(exc, (InvalidRequestError, ValidationError)):
        return "invalid_request"
    if isinstance(exc, ProviderError) and exc.status_code in _RETRYABLE_STATUS_CODES:
        return "server_error"
    return "fatal"


def is_retryable(exc: BaseException) -> bool:
    """Whether a failed provider call may be attempted again."""
    return classify_failure(exc) in {"rate_limit", "server_error", "network"}
