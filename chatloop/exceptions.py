"""Custom exceptions for chatloop."""

from enum import Enum


class ErrorKind(str, Enum):
    """Stable error kinds for caller decisions."""

    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    MALFORMED_TOOL_ARGUMENTS = "malformed_tool_arguments"
    TOOL_EXECUTION = "tool_execution"
    TOOL_BUDGET_EXCEEDED = "tool_budget_exceeded"
    PROTOCOL_VIOLATION = "protocol_violation"
    CANCELLED = "cancelled"


class ChatLoopError(Exception):
    """Base exception for chatloop."""

    pass


class ConfigurationError(ChatLoopError):
    """Configuration-related errors."""

    pass


class ExchangeError(ChatLoopError):
    """Terminal error of one exchange.

    ``partial_text`` holds whatever text was streamed before the failure so
    the caller can keep displaying it.
    """

    kind: ErrorKind = ErrorKind.NETWORK
    is_failure: bool = True

    def __init__(self, message: str, partial_text: str = ""):
        super().__init__(message)
        self.partial_text = partial_text


class AuthenticationError(ExchangeError):
    """Bad or missing provider credential."""

    kind = ErrorKind.AUTHENTICATION


class RateLimitOrNetworkError(ExchangeError):
    """Transport failure or provider-side error. Retrying is the caller's call."""

    kind = ErrorKind.NETWORK

    def __init__(self, message: str, status_code: int | None = None, partial_text: str = ""):
        super().__init__(message, partial_text=partial_text)
        self.status_code = status_code


class RateLimitError(RateLimitOrNetworkError):
    """Provider refused the request because of rate limiting or overload."""

    kind = ErrorKind.RATE_LIMIT


class MalformedToolArgumentsError(ExchangeError):
    """Tool-call arguments could not be parsed."""

    kind = ErrorKind.MALFORMED_TOOL_ARGUMENTS

    def __init__(self, call_id: str, tool_name: str, detail: str):
        super().__init__(f"Malformed arguments for tool '{tool_name}' (call {call_id}): {detail}")
        self.call_id = call_id
        self.tool_name = tool_name


class ToolBudgetExceededError(ExchangeError):
    """Exchange would execute more tool calls than the ceiling allows."""

    kind = ErrorKind.TOOL_BUDGET_EXCEEDED

    def __init__(self, used: int, requested: int, ceiling: int):
        super().__init__(
            f"Tool call limit reached: {used} used, {requested} requested, ceiling {ceiling}"
        )
        self.used = used
        self.requested = requested
        self.ceiling = ceiling


class ProtocolViolationError(ExchangeError):
    """Provider events arrived in an order the parser cannot accept."""

    kind = ErrorKind.PROTOCOL_VIOLATION


class ExchangeCancelled(ExchangeError):
    """Exchange was cancelled by the caller. Not an application failure."""

    kind = ErrorKind.CANCELLED
    is_failure = False

    def __init__(self, message: str = "Exchange cancelled", partial_text: str = ""):
        super().__init__(message, partial_text=partial_text)


class ToolError(ChatLoopError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    kind = ErrorKind.TOOL_EXECUTION

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


_AUTH_ERROR_TYPES = {"authentication_error", "permission_error"}
_RATE_LIMIT_ERROR_TYPES = {"rate_limit_error", "overloaded_error"}


def classify_provider_error(
    message: str,
    *,
    status_code: int | None = None,
    error_type: str | None = None,
) -> ExchangeError:
    """Map a provider HTTP status or error-event type onto the error taxonomy."""
    kind = str(error_type or "").strip().lower()
    if status_code in (401, 403) or kind in _AUTH_ERROR_TYPES:
        return AuthenticationError(message)
    if status_code in (429, 529) or kind in _RATE_LIMIT_ERROR_TYPES:
        return RateLimitError(message, status_code=status_code)
    return RateLimitOrNetworkError(message, status_code=status_code)
