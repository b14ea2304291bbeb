"""
PromptLoop - OpenAI Chat Completions request transform.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from ..content import compress_content, normalize_content, source_to_url, text_of
from ..exceptions import TransformError
from ..messages import Message, RequestedAction, Role, normalize_instructions
from ._common import (
    as_message_dicts,
    check_choice,
    check_range,
    check_role,
    compact,
    is_function_tool,
    merge_consecutive,
    normalize_response_format,
    parse_arguments,
    require,
    strip_defaults,
    tool_schema,
    to_dict,
)

ROLES = ("developer", "system", "user", "assistant", "tool", "function")

SERVICE_TIERS = ("auto", "default", "flex", "scale", "priority")

DEFAULTS: dict[str, Any] = {
    "stream": False,
    "n": 1,
    "logprobs": False,
}

DEFAULT_DOCUMENT_NAME = "document.pdf"


def content_part(block: Any) -> Any:
    """Map one normalized content block to a chat content part."""
    if not isinstance(block, dict):
        return block
    kind = block.get("type")
    if kind == "text":
        return {"type": "text", "text": block.get("text", "")}
    if kind == "image":
        return {"type": "image_url", "image_url": {"url": source_to_url(block.get("source") or {})}}
    if kind == "document":
        source = block.get("source") or {}
        if source.get("type") != "base64":
            raise TransformError("Chat Completions only accepts documents as base64 data")
        return {
            "type": "file",
            "file": {
                "file_data": source_to_url(source),
                "filename": block.get("filename") or block.get("title") or DEFAULT_DOCUMENT_NAME,
            },
        }
    return dict(block)


def normalize_tools(tools: Optional[list[Any]]) -> Optional[list[dict[str, Any]]]:
    if tools is None:
        return None
    result = []
    for tool in tools:
        if is_function_tool(tool):
            result.append({"type": "function", "function": tool_schema(tool)})
        else:
            result.append(dict(tool))
    return result


def normalize_tool_choice(tool_choice: Any) -> Any:
    if tool_choice is None or tool_choice in ("auto", "required", "none"):
        return tool_choice
    if isinstance(tool_choice, dict):
        if tool_choice.get("type") == "function" and "function" in tool_choice:
            return dict(tool_choice)
        if "name" in tool_choice:
            return {"type": "function", "function": {"name": tool_choice["name"]}}
    raise TransformError(f"Cannot map tool_choice {tool_choice!r} for Chat Completions")


def format_response_format(fmt: Any) -> Optional[dict[str, Any]]:
    fmt = normalize_response_format(fmt)
    if fmt is None or fmt["type"] != "json_schema":
        return fmt
    return {
        "type": "json_schema",
        "json_schema": compact(
            {"name": fmt["name"], "schema": fmt.get("schema"), "strict": fmt.get("strict")}
        ),
    }


def instruction_messages(instructions: Any) -> list[dict[str, Any]]:
    lines = normalize_instructions(instructions)
    if not lines:
        return []
    if len(lines) == 1:
        return [{"role": "developer", "content": lines[0]}]
    return [{"role": "developer", "content": [{"type": "text", "text": t} for t in lines]}]


def _tool_call(action: dict[str, Any]) -> dict[str, Any]:
    arguments = action.get("arguments") or {}
    return {
        "id": action.get("call_id"),
        "type": "function",
        "function": {
            "name": action["name"],
            "arguments": arguments if isinstance(arguments, str) else json.dumps(arguments),
        },
    }


def convert_message(message: dict[str, Any]) -> dict[str, Any]:
    role = message["role"]
    check_role(role, ROLES)
    if role in ("tool", "function"):
        content = message.get("content")
        converted = {
            "role": role,
            "content": content if isinstance(content, (str, list)) else json.dumps(content),
        }
        if message.get("tool_call_id"):
            converted["tool_call_id"] = message["tool_call_id"]
        if role == "function" and message.get("name"):
            converted["name"] = message["name"]
        return converted

    if "content" in message:
        raw = message["content"]
    else:
        raw = {k: v for k, v in message.items() if k in ("text", "image", "document")} or None
    converted = {"role": role}
    if isinstance(raw, str):
        converted["content"] = raw
    else:
        converted["content"] = [content_part(b) for b in normalize_content(raw)]
    for key in ("name", "tool_calls", "audio", "refusal"):
        if message.get(key) is not None:
            converted[key] = message[key]
    actions = message.get("requested_actions")
    if actions:
        converted["tool_calls"] = [_tool_call(a) for a in actions]
    return converted


def _as_parts(content: Any) -> list[Any]:
    if content is None:
        return []
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    return list(content)


def _merge(a: dict[str, Any], b: dict[str, Any]) -> dict[str, Any]:
    merged = dict(a)
    merged["content"] = _as_parts(a.get("content")) + _as_parts(b.get("content"))
    return merged


def simplify_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Collapse single text parts to strings and drop empty content."""
    result = []
    for message in messages:
        message = dict(message)
        content = message.get("content")
        if isinstance(content, list):
            content = compress_content(content)
        if content in (None, "", []):
            message.pop("content", None)
        else:
            message["content"] = content
        result.append(message)
    return result


def strip_indexes(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Remove the stream bookkeeping ``index`` keys from messages and tool calls."""
    result = []
    for message in messages:
        message = {k: v for k, v in message.items() if k not in ("index", "annotations")}
        if message.get("tool_calls"):
            message["tool_calls"] = [
                {k: v for k, v in call.items() if k != "index"} for call in message["tool_calls"]
            ]
        result.append(message)
    return result


def merge_delta(target: dict[str, Any], delta: dict[str, Any]) -> dict[str, Any]:
    """Fold a streamed chat delta into ``target`` in place.

    Strings are concatenated, nested dicts are merged recursively, and list
    items carrying an ``index`` are merged into the existing item with that
    index (or appended).
    """
    for key, value in (delta or {}).items():
        if value is None:
            continue
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merge_delta(current, value)
        elif isinstance(current, list) and isinstance(value, list):
            for item in value:
                match = None
                if isinstance(item, dict) and item.get("index") is not None:
                    match = next(
                        (
                            it
                            for it in current
                            if isinstance(it, dict) and it.get("index") == item["index"]
                        ),
                        None,
                    )
                if match is not None:
                    merge_delta(match, item)
                else:
                    current.append(item)
        elif isinstance(current, str) and isinstance(value, str):
            target[key] = current + value
        else:
            target[key] = value
    return target


@dataclass
class ChatRequest:
    """Structured Chat Completions request."""

    _side_fields = ("extra", "messages", "web_search_options")

    model: Optional[str] = None
    messages: list[dict[str, Any]] = field(default_factory=list)
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_tokens: Optional[int] = None
    max_completion_tokens: Optional[int] = None
    n: Optional[int] = None
    stop: Any = None
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    seed: Optional[int] = None
    tools: Optional[list[dict[str, Any]]] = None
    tool_choice: Any = None
    parallel_tool_calls: Optional[bool] = None
    response_format: Optional[dict[str, Any]] = None
    stream: bool = False
    service_tier: Optional[str] = None
    user: Optional[str] = None
    logprobs: Optional[bool] = None
    top_logprobs: Optional[int] = None
    web_search_options: Optional[dict[str, Any]] = None
    audio: Optional[dict[str, Any]] = None
    modalities: Optional[list[str]] = None
    reasoning_effort: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        require("model", self.model)
        require("messages", self.messages)
        check_range("temperature", self.temperature, 0, 2)
        check_range("top_p", self.top_p, 0, 1)
        check_range("presence_penalty", self.presence_penalty, -2, 2)
        check_range("frequency_penalty", self.frequency_penalty, -2, 2)
        check_range("n", self.n, 1)
        check_range("max_tokens", self.max_tokens, 1)
        check_range("max_completion_tokens", self.max_completion_tokens, 1)
        check_range("top_logprobs", self.top_logprobs, 0, 20)
        check_choice("service_tier", self.service_tier, SERVICE_TIERS)
        check_choice("reasoning_effort", self.reasoning_effort, ("minimal", "low", "medium", "high"))

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> "ChatRequest":
        params = dict(params)
        leading = instruction_messages(params.pop("instructions", None))
        messages = [convert_message(m) for m in as_message_dicts(params.pop("messages", None))]
        messages = merge_consecutive(leading + messages, _merge, unmergeable=("tool", "function"))

        web_search = params.pop("web_search_options", None)
        enable_search = params.pop("web_search", None)
        if web_search is True or (web_search is None and enable_search):
            web_search = {}

        field_names = set(cls.__dataclass_fields__) - {
            "messages",
            "tools",
            "tool_choice",
            "response_format",
            "web_search_options",
            "extra",
        }
        kwargs = {k: params.pop(k) for k in list(params) if k in field_names}
        if kwargs.get("stream") is None:
            kwargs.pop("stream", None)
        params.pop("mcps", None)

        return cls(
            messages=messages,
            tools=normalize_tools(params.pop("tools", None)),
            tool_choice=normalize_tool_choice(params.pop("tool_choice", None)),
            response_format=format_response_format(params.pop("response_format", None)),
            web_search_options=web_search,
            extra={k: v for k, v in params.items() if v is not None},
            **kwargs,
        )

    def serialize(self) -> dict[str, Any]:
        messages = [to_dict(m) for m in self.messages]
        messages = simplify_messages(strip_indexes(messages))
        data = {
            name: getattr(self, name)
            for name in self.__dataclass_fields__
            if name not in self._side_fields
        }
        data["messages"] = messages
        data.update(self.extra)
        cleaned = strip_defaults(data, DEFAULTS)
        if self.web_search_options is not None:
            cleaned["web_search_options"] = self.web_search_options or {}
        if self.stream:
            cleaned.setdefault("stream_options", {"include_usage": True})
        return cleaned

    def extra_body_keys(self) -> set[str]:
        """Payload keys the SDK has no parameter for."""
        return set(self.extra)


def _actions(message: dict[str, Any]) -> list[RequestedAction]:
    actions = []
    for call in message.get("tool_calls") or []:
        function = call.get("function") or {}
        actions.append(
            RequestedAction(
                name=function.get("name", ""),
                arguments=parse_arguments(function.get("arguments")),
                call_id=call.get("id"),
            )
        )
    return actions


def message_to_common(message: dict[str, Any]) -> Message:
    return Message(
        content=text_of(message.get("content")),
        role=Role.ASSISTANT,
        requested_actions=_actions(message),
    )


def messages_to_common(messages: list[Any]) -> list[Message]:
    """Convert native chat messages back to common messages, dropping system ones."""
    result = []
    for message in messages:
        message = to_dict(message)
        role = message.get("role")
        if role in ("system", "developer"):
            continue
        if role in ("tool", "function"):
            result.append(
                Message(
                    content=text_of(message.get("content")),
                    role=Role.TOOL,
                    action_id=message.get("tool_call_id"),
                    action_name=message.get("name"),
                )
            )
        elif role == "assistant":
            result.append(message_to_common(message))
        else:
            content = message.get("content")
            result.append(
                Message(
                    content=content if isinstance(content, str) else compress_content(content),
                    role=Role.USER,
                )
            )
    return result
