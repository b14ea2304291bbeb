"""
PromptLoop - Response objects returned by providers.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .messages import Message
from .usage import Usage


class StreamEvent(str, Enum):
    """Points at which the stream observer is notified."""

    OPEN = "open"
    UPDATE = "update"
    CLOSE = "close"


@dataclass
class StreamChunk:
    """Value handed to stream observers.

    ``message`` is the accumulated state so far (``None`` on open) and
    ``delta`` the newly arrived text, if any.
    """

    message: Optional[Message] = None
    delta: Optional[str] = None
    is_final: bool = False


@dataclass
class PromptResponse:
    """Result of a (possibly multi-turn) prompt generation."""

    messages: list[Message] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)
    raw_request: Optional[dict[str, Any]] = None
    raw_response: Any = None
    usages: list[Usage] = field(default_factory=list)
    format: Optional[Any] = None

    def __post_init__(self) -> None:
        self.context = copy.deepcopy(self.context)

    @property
    def message(self) -> Optional[Message]:
        """The final message of the conversation."""
        return self.messages[-1] if self.messages else None

    @property
    def instructions(self) -> Any:
        return self.context.get("instructions")

    @property
    def usage(self) -> Optional[Usage]:
        """Usage summed across every turn of the tool loop."""
        if not self.usages:
            return None
        return sum(self.usages[1:], self.usages[0])


@dataclass
class EmbedResponse:
    """Result of an embedding request.

    ``data`` holds one ``{"index", "object", "embedding"}`` dict per input.
    """

    data: list[dict[str, Any]] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)
    raw_request: Optional[dict[str, Any]] = None
    raw_response: Any = None
    usage: Optional[Usage] = None

    @property
    def embeddings(self) -> list[list[float]]:
        return [item.get("embedding", []) for item in self.data]
