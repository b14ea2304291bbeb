"""
PromptLoop - Ollama ``/api/chat`` request transform.

Ollama takes plain-string message content with base64 images in a separate
``images`` list, OpenAI-style function tools, and model knobs under
``options``.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from ..content import normalize_content, text_of
from ..exceptions import TransformError
from ..messages import Message, RequestedAction, Role, normalize_instructions
from ._common import (
    as_message_dicts,
    check_range,
    check_role,
    merge_consecutive,
    normalize_response_format,
    parse_arguments,
    require,
    strip_defaults,
    to_dict,
)
from .openai_chat import normalize_tools

ROLES = ("system", "user", "assistant", "tool")

OPTION_KEYS = (
    "temperature",
    "top_p",
    "top_k",
    "seed",
    "num_ctx",
    "num_predict",
    "repeat_penalty",
    "stop",
)

def _image_data(block: dict[str, Any]) -> str:
    source = block.get("source") or {}
    if source.get("type") != "base64":
        raise TransformError("Ollama only accepts images as base64 data")
    return source["data"]


def convert_message(message: dict[str, Any]) -> dict[str, Any]:
    role = message["role"]
    check_role(role, ROLES)
    raw = message.get("content")
    if raw is None:
        raw = {k: v for k, v in message.items() if k in ("text", "image")} or None
    if role == "tool":
        converted = {"role": "tool", "content": raw if isinstance(raw, str) else json.dumps(raw)}
        if message.get("name"):
            converted["tool_name"] = message["name"]
        return converted

    texts: list[str] = []
    images: list[str] = list(message.get("images") or [])
    for block in normalize_content(raw):
        kind = block.get("type") if isinstance(block, dict) else None
        if kind == "text":
            texts.append(block.get("text", ""))
        elif kind == "image":
            images.append(_image_data(block))
        else:
            raise TransformError(f"Ollama does not support {kind!r} content")
    converted = {"role": role, "content": "\n".join(texts)}
    if images:
        converted["images"] = images
    calls = list(message.get("tool_calls") or [])
    for action in message.get("requested_actions") or []:
        calls.append({"function": {"name": action["name"], "arguments": action.get("arguments") or {}}})
    if calls:
        converted["tool_calls"] = calls
    return converted


def _merge(a: dict[str, Any], b: dict[str, Any]) -> dict[str, Any]:
    merged = dict(a)
    merged["content"] = "\n".join(c for c in (a.get("content"), b.get("content")) if c)
    images = list(a.get("images") or []) + list(b.get("images") or [])
    if images:
        merged["images"] = images
    return merged


@dataclass
class OllamaRequest:
    """Structured ``/api/chat`` request."""

    model: Optional[str] = None
    messages: list[dict[str, Any]] = field(default_factory=list)
    tools: Optional[list[dict[str, Any]]] = None
    format: Any = None
    options: dict[str, Any] = field(default_factory=dict)
    stream: bool = False
    keep_alive: Any = None
    think: Optional[bool] = None
    raw: Optional[bool] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        require("model", self.model)
        require("messages", self.messages)
        check_range("temperature", self.options.get("temperature"), 0, 2)
        check_range("top_p", self.options.get("top_p"), 0, 1)
        check_range("top_k", self.options.get("top_k"), 0)

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> "OllamaRequest":
        params = dict(params)
        lines = normalize_instructions(params.pop("instructions", None))
        leading = [{"role": "system", "content": "\n".join(lines)}] if lines else []
        messages = [convert_message(m) for m in as_message_dicts(params.pop("messages", None))]
        messages = merge_consecutive(leading + messages, _merge)

        options = dict(params.pop("options", None) or {})
        for key in OPTION_KEYS:
            if params.get(key) is not None:
                options[key] = params.pop(key)
            else:
                params.pop(key, None)
        max_tokens = params.pop("max_tokens", None)
        if max_tokens is not None:
            options.setdefault("num_predict", max_tokens)

        fmt = params.pop("format", None)
        response_format = normalize_response_format(params.pop("response_format", None))
        if fmt is None and response_format is not None:
            if response_format["type"] == "json_object":
                fmt = "json"
            elif response_format["type"] == "json_schema":
                fmt = response_format.get("schema")

        tool_choice = params.pop("tool_choice", None)
        if tool_choice not in (None, "auto"):
            raise TransformError(f"Ollama does not support tool_choice {tool_choice!r}")

        return cls(
            model=params.pop("model", None),
            messages=messages,
            tools=normalize_tools(params.pop("tools", None)),
            format=fmt,
            options=options,
            stream=bool(params.pop("stream", False)),
            keep_alive=params.pop("keep_alive", None),
            think=params.pop("think", None),
            raw=params.pop("raw", None),
            extra={k: v for k, v in params.items() if v is not None},
        )

    def serialize(self) -> dict[str, Any]:
        messages = []
        for message in self.messages:
            message = {
                k: v for k, v in to_dict(message).items() if k in ("role", "content", "images", "tool_calls", "tool_name", "thinking")
            }
            messages.append(message)
        data = {
            "model": self.model,
            "messages": messages,
            "tools": self.tools,
            "format": self.format,
            "options": self.options or None,
            "stream": self.stream,
            "keep_alive": self.keep_alive,
            "think": self.think,
            "raw": self.raw,
            **self.extra,
        }
        # stream is always sent: Ollama streams when it is omitted.
        return strip_defaults(data, {})


def message_to_common(message: dict[str, Any]) -> Message:
    return Message(
        content=message.get("content") or "",
        role=Role.ASSISTANT,
        requested_actions=[
            RequestedAction(
                name=(call.get("function") or {}).get("name", ""),
                arguments=parse_arguments((call.get("function") or {}).get("arguments")),
                call_id=call.get("id"),
            )
            for call in message.get("tool_calls") or []
        ],
    )


def messages_to_common(messages: list[Any]) -> list[Message]:
    result = []
    for message in messages:
        message = to_dict(message)
        role = message.get("role")
        if role == "system":
            continue
        if role == "assistant":
            result.append(message_to_common(message))
        elif role == "tool":
            result.append(Message(content=message.get("content", ""), role=Role.TOOL, action_name=message.get("tool_name")))
        else:
            result.append(Message(content=text_of(message.get("content")), role=Role.USER))
    return result
