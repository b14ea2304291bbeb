"""
PromptLoop - Custom exceptions for error handling.
"""

from typing import Any, Iterator, Optional


class PromptLoopError(Exception):
    """Base exception for all PromptLoop errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[Any] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response = response


class ConfigurationError(PromptLoopError):
    """Raised when credentials or option values are missing or invalid.

    Always raised while building options or requests, before any network call.
    """

    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.field = field


class TransformError(PromptLoopError):
    """Raised when prompt input cannot be mapped to a provider's request shape."""

    pass


class TransportError(PromptLoopError):
    """Raised when the provider call fails at the network or HTTP level."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        retryable: bool = False,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.provider = provider
        self.retryable = retryable


class StreamInterruptedError(TransportError):
    """Raised when a stream fails after some chunks were already delivered.

    ``message`` on the exception is the error text; the partially accumulated
    assistant message is available as ``partial_message``.
    """

    def __init__(self, message: str, partial_message: Any = None, **kwargs: Any) -> None:
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.partial_message = partial_message


class ToolExecutionError(PromptLoopError):
    """Raised when a resolved action handler fails."""

    def __init__(
        self,
        message: str,
        action_name: Optional[str] = None,
        call_id: Optional[str] = None,
        arguments: Optional[dict[str, Any]] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.action_name = action_name
        self.call_id = call_id
        self.arguments = arguments or {}


class ActionNotFound(ToolExecutionError):
    """Raised when the model requests an action with no registered handler."""

    pass


class MaxToolRoundsExceeded(PromptLoopError):
    """Raised when the model keeps requesting tools past the configured limit."""

    def __init__(self, message: str, rounds: int = 0, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.rounds = rounds


def walk_exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield ``exc`` followed by its causes and contexts, each only once."""
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__
