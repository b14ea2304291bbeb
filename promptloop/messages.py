"""
PromptLoop - Provider-independent message and prompt model.

A :class:`Message` is one turn of a conversation. A :class:`Prompt` owns the
ordered messages of one generation call plus the instructions, tool schemas
and response-format directive that go with them.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union

from .content import text_of
from .exceptions import TransformError

logger = logging.getLogger("promptloop.messages")

_JSON_SPAN = re.compile(r"(\{.*\}|\[.*\])", re.DOTALL)


class Role(str, Enum):
    """Conversation roles shared by every provider."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


def coerce_role(role: Union[str, Role]) -> Role:
    """Return ``role`` as a :class:`Role`, rejecting anything else."""
    try:
        return Role(role)
    except ValueError:
        allowed = ", ".join(r.value for r in Role)
        raise TransformError(f"Unknown message role: {role!r} (expected one of {allowed})")


def detect_content_type(content: Any) -> str:
    if isinstance(content, list):
        if any(isinstance(item, dict) and "type" in item for item in content):
            return "multipart/mixed"
        return "array"
    return "text/plain"


def lenient_json(text: Any) -> Any:
    """Best-effort JSON extraction from model output.

    Tries the whole string first, then the widest ``{...}`` or ``[...]`` span.
    Returns ``None`` instead of raising when nothing parses.
    """
    if isinstance(text, (dict, list)):
        return text
    if not isinstance(text, str):
        return None
    try:
        return json.loads(text)
    except ValueError:
        pass
    match = _JSON_SPAN.search(text)
    if not match:
        return None
    try:
        return json.loads(match.group(1))
    except ValueError:
        return None


@dataclass
class RequestedAction:
    """A tool call the model asked for."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    call_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "arguments": self.arguments, "call_id": self.call_id}


@dataclass
class Message:
    """One turn in a conversation.

    ``content`` is either a string or an ordered list of content blocks.
    When ``content_type`` mentions ``json`` a string payload is parsed eagerly;
    a payload that fails to parse is kept as the raw string.

    Raises:
        TransformError: If ``role`` is not one of system, user, assistant, tool.
    """

    content: Any = ""
    role: Union[str, Role] = Role.USER
    content_type: Optional[str] = None
    generation_id: Optional[str] = None
    action_id: Optional[str] = None
    action_name: Optional[str] = None
    name: Optional[str] = None
    requested_actions: list[RequestedAction] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.role = coerce_role(self.role)
        if self.content is None:
            self.content = ""
        if self.content_type is None:
            self.content_type = detect_content_type(self.content)
        elif "json" in self.content_type and isinstance(self.content, str):
            try:
                self.content = json.loads(self.content)
            except ValueError:
                logger.debug("Keeping unparseable JSON content as text")
        self.requested_actions = [
            a if isinstance(a, RequestedAction) else RequestedAction(**a)
            for a in self.requested_actions
        ]

    @property
    def action_requested(self) -> bool:
        return bool(self.requested_actions)

    @property
    def text(self) -> str:
        if self._holds_parsed_json:
            return json.dumps(self.content)
        return text_of(self.content)

    @property
    def _holds_parsed_json(self) -> bool:
        return bool(
            isinstance(self.content, (dict, list))
            and self.content_type
            and "json" in self.content_type
        )

    @property
    def json_object(self) -> Any:
        """Parsed JSON from the content, or ``None`` if none can be found."""
        if self._holds_parsed_json:
            return self.content
        return lenient_json(self.text)

    def to_dict(self) -> dict[str, Any]:
        """Common-format dict consumed by the request transforms."""
        content = json.dumps(self.content) if self._holds_parsed_json else self.content
        data: dict[str, Any] = {"role": self.role.value, "content": content}
        if self.name:
            data["name"] = self.name
        if self.role is Role.TOOL:
            data["tool_call_id"] = self.action_id
            if self.action_name:
                data["name"] = self.action_name
        if self.requested_actions:
            data["requested_actions"] = [a.to_dict() for a in self.requested_actions]
        return data

    @classmethod
    def coerce(cls, value: Any) -> "Message":
        """Build a message from a string, a dict or an existing message."""
        if isinstance(value, Message):
            return value
        if isinstance(value, str):
            return cls(content=value)
        if isinstance(value, dict):
            data = dict(value)
            role = data.pop("role", Role.USER)
            if "content" not in data and "text" in data and len(data) == 1:
                data["content"] = data.pop("text")
            content = data.pop("content", None)
            if content is None:
                shorthand = {k: data.pop(k) for k in ("text", "image", "document") if k in data}
                content = shorthand or ""
            if "tool_call_id" in data and "action_id" not in data:
                data["action_id"] = data.pop("tool_call_id")
            known = {
                "content_type",
                "generation_id",
                "action_id",
                "action_name",
                "name",
                "requested_actions",
            }
            kwargs = {k: v for k, v in data.items() if k in known}
            return cls(content=content, role=role, **kwargs)
        raise TransformError(f"Cannot build a message from {type(value).__name__}")


InstructionsInput = Union[str, list, dict, None]


def normalize_instructions(
    instructions: InstructionsInput,
    renderer: Optional[Callable[[Any], Optional[str]]] = None,
) -> Optional[list[str]]:
    """Validate instructions and return them as a list of strings.

    Accepts a string, a list of strings, a ``{"template": ...}`` dict (which
    needs a ``renderer``) or ``None``.

    Raises:
        TransformError: For any other shape.
    """
    if instructions is None:
        return None
    if isinstance(instructions, Enum):
        instructions = instructions.value
    if isinstance(instructions, str):
        return [instructions]
    if isinstance(instructions, (list, tuple)):
        if not all(isinstance(item, str) for item in instructions):
            raise TransformError("Instructions list must contain only strings")
        return list(instructions)
    if isinstance(instructions, dict) and "template" in instructions:
        if renderer is None:
            raise TransformError(
                f"Instructions template {instructions['template']!r} needs a renderer"
            )
        rendered = renderer(instructions)
        return None if rendered is None else [rendered]
    raise TransformError(
        f"Unsupported instructions type: {type(instructions).__name__}"
    )


class Prompt:
    """Conversation context for one generation call.

    Whenever instructions are set, ``messages[0]`` is the single system message
    carrying them: setting instructions replaces that message or inserts it,
    and assigning ``messages`` re-applies the current instructions.
    """

    def __init__(
        self,
        messages: Optional[list[Any]] = None,
        instructions: InstructionsInput = None,
        actions: Optional[list[Any]] = None,
        response_format: Optional[Any] = None,
        options: Optional[dict[str, Any]] = None,
        renderer: Optional[Callable[[Any], Optional[str]]] = None,
    ) -> None:
        self.renderer = renderer
        self._messages: list[Message] = []
        self._instructions: Optional[list[str]] = None
        self.actions: list[Any] = list(actions or [])
        self.response_format = response_format
        self.options: dict[str, Any] = dict(options or {})
        self.messages = messages or []
        if instructions is not None:
            self.instructions = instructions

    @property
    def instructions(self) -> Optional[list[str]]:
        return self._instructions

    @instructions.setter
    def instructions(self, value: InstructionsInput) -> None:
        lines = normalize_instructions(value, self.renderer)
        if lines is None and self._instructions is not None:
            if self._messages and self._messages[0].role is Role.SYSTEM:
                self._messages.pop(0)
        self._instructions = lines
        self._apply_instructions()

    @property
    def messages(self) -> list[Message]:
        return self._messages

    @messages.setter
    def messages(self, value: list[Any]) -> None:
        self._messages = [Message.coerce(m) for m in value]
        self._apply_instructions()

    def add_message(self, message: Any) -> Message:
        msg = Message.coerce(message)
        self._messages.append(msg)
        return msg

    def _apply_instructions(self) -> None:
        if self._instructions is None:
            return
        system = Message(content="\n".join(self._instructions), role=Role.SYSTEM)
        if self._messages and self._messages[0].role is Role.SYSTEM:
            self._messages[0] = system
        else:
            self._messages.insert(0, system)

    @property
    def output_schema(self) -> Optional[dict[str, Any]]:
        fmt = self.response_format
        if isinstance(fmt, dict) and fmt.get("type") == "json_schema":
            return fmt.get("schema") or (fmt.get("json_schema") or {}).get("schema")
        return None

    def to_params(self) -> dict[str, Any]:
        """Common-format request parameters for the provider layer.

        The leading system message is reported as ``instructions`` rather than
        as a message.
        """
        messages = list(self._messages)
        params: dict[str, Any] = dict(self.options)
        if self._instructions is not None and messages and messages[0].role is Role.SYSTEM:
            messages = messages[1:]
            lines = self._instructions
            params["instructions"] = lines[0] if len(lines) == 1 else list(lines)
        params["messages"] = [m.to_dict() for m in messages]
        if self.actions:
            params["tools"] = list(self.actions)
        if self.response_format is not None:
            params["response_format"] = self.response_format
        return params
