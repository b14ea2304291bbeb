"""
PromptLoop - Exception handler chain.

Maps exception classes to handlers. Tool and transport failures are routed
through the chain; a handler that matches decides the outcome by returning a
recovery value, and an unmatched exception propagates unchanged.
"""

import logging
from typing import Any, Callable, Optional, Union

logger = logging.getLogger("promptloop.rescue")

Handler = Callable[[BaseException], Any]
ExceptionTypes = Union[type, tuple]


class RescueChain:
    """Ordered ``(exception types, handler)`` pairs.

    The most recently registered matching entry wins. Besides the exception
    itself, its direct ``__cause__`` is matched too, so a handler for
    ``ZeroDivisionError`` also catches the tool error wrapping one.
    """

    def __init__(self, entries: Optional[list[tuple[tuple, Handler]]] = None) -> None:
        self._entries: list[tuple[tuple, Handler]] = list(entries or [])

    def __len__(self) -> int:
        return len(self._entries)

    def copy(self) -> "RescueChain":
        return RescueChain(self._entries)

    def register(self, exc_types: ExceptionTypes, handler: Handler) -> None:
        if not isinstance(exc_types, tuple):
            exc_types = (exc_types,)
        self._entries.append((exc_types, handler))

    def find(self, exc: BaseException) -> Optional[Handler]:
        candidates = [exc]
        if exc.__cause__ is not None:
            candidates.append(exc.__cause__)
        for exc_types, handler in reversed(self._entries):
            if any(isinstance(c, exc_types) for c in candidates):
                return handler
        return None

    def handle(self, exc: BaseException) -> Any:
        """Return the matching handler's result, or re-raise ``exc``."""
        handler = self.find(exc)
        if handler is None:
            raise exc
        logger.debug("Rescuing %s with %r", type(exc).__name__, handler)
        return handler(exc)

    __call__ = handle
