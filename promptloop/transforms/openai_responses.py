"""
PromptLoop - OpenAI Responses API request transform.

Common messages become Responses ``input`` items: tool results turn into
``function_call_output`` items, user parts into ``input_text`` /
``input_image`` / ``input_file`` and assistant text into ``output_text``.
Items that already carry a Responses ``type`` pass through untouched.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from ..content import normalize_content, source_to_url, text_of
from ..exceptions import TransformError
from ..messages import Message, RequestedAction, Role, normalize_instructions
from ._common import (
    as_message_dicts,
    check_choice,
    check_range,
    check_role,
    compact,
    is_function_tool,
    normalize_response_format,
    parse_arguments,
    require,
    strip_defaults,
    tool_schema,
    to_dict,
)
from .openai_chat import DEFAULT_DOCUMENT_NAME

SERVICE_TIERS = ("auto", "default", "flex", "scale", "priority")

ROLES = ("developer", "system", "user", "assistant", "tool")

DEFAULTS: dict[str, Any] = {
    "stream": False,
    "store": None,
}

NATIVE_ITEM_TYPES = (
    "message",
    "function_call",
    "function_call_output",
    "reasoning",
    "web_search_call",
    "file_search_call",
    "mcp_call",
    "mcp_list_tools",
    "mcp_approval_request",
    "mcp_approval_response",
    "image_generation_call",
    "code_interpreter_call",
)


def input_part(block: Any, role: str) -> Any:
    if not isinstance(block, dict):
        return block
    kind = block.get("type")
    if kind == "text":
        return {"type": "output_text" if role == "assistant" else "input_text", "text": block.get("text", "")}
    if kind == "image":
        return {"type": "input_image", "image_url": source_to_url(block.get("source") or {})}
    if kind == "document":
        source = block.get("source") or {}
        if source.get("type") == "base64":
            return {
                "type": "input_file",
                "file_data": source_to_url(source),
                "filename": block.get("filename") or DEFAULT_DOCUMENT_NAME,
            }
        return {"type": "input_file", "file_url": source.get("url")}
    return dict(block)


def convert_input(messages: Any) -> list[Any]:
    """Map common messages to Responses input items."""
    items: list[Any] = []
    raw_items = messages if isinstance(messages, list) else [messages] if messages else []
    for raw in raw_items:
        if isinstance(raw, dict) and raw.get("type") in NATIVE_ITEM_TYPES and raw["type"] != "message":
            items.append(dict(raw))
            continue
        message = as_message_dicts(raw)[0]
        role = message["role"]
        check_role(role, ROLES)
        if role == "tool":
            output = message.get("content")
            items.append(
                {
                    "type": "function_call_output",
                    "call_id": message.get("tool_call_id"),
                    "output": output if isinstance(output, str) else json.dumps(output),
                }
            )
            continue

        if "content" in message:
            raw = message["content"]
        else:
            raw = {k: v for k, v in message.items() if k in ("text", "image", "document")} or None
        item: dict[str, Any] = {"role": role}
        if isinstance(raw, str):
            item["content"] = raw
        else:
            item["content"] = [input_part(b, role) for b in normalize_content(raw)]
        if message.get("type") == "message":
            item["type"] = "message"
        if item["content"] not in ("", []):
            items.append(item)
        for action in message.get("requested_actions") or []:
            arguments = action.get("arguments") or {}
            items.append(
                {
                    "type": "function_call",
                    "call_id": action.get("call_id"),
                    "name": action["name"],
                    "arguments": arguments if isinstance(arguments, str) else json.dumps(arguments),
                }
            )
    return items


def simplify_input(items: Any) -> Any:
    """Collapse trivially simple input down to a bare string."""
    if isinstance(items, str):
        return items
    if not isinstance(items, list) or len(items) != 1:
        return items
    item = items[0]
    if isinstance(item, str):
        return item
    if not isinstance(item, dict):
        return items
    if item.get("type") == "input_text":
        return item.get("text", "")
    if item.get("role") == "user" and set(item) <= {"role", "content", "type"}:
        if item.get("type") not in (None, "message"):
            return items
        content = item.get("content")
        if isinstance(content, str):
            return content
        if (
            isinstance(content, list)
            and len(content) == 1
            and isinstance(content[0], dict)
            and content[0].get("type") == "input_text"
        ):
            return content[0].get("text", "")
    return items


def normalize_tools(tools: Optional[list[Any]], mcps: Optional[list[dict[str, Any]]] = None) -> Optional[list[dict[str, Any]]]:
    if tools is None and not mcps:
        return None
    result = []
    for tool in tools or []:
        if is_function_tool(tool):
            result.append({"type": "function", **tool_schema(tool)})
        else:
            result.append(dict(tool))
    for server in mcps or []:
        result.append(
            compact(
                {
                    "type": "mcp",
                    "server_label": server.get("server_label") or server.get("name"),
                    "server_url": server.get("server_url") or server.get("url"),
                    "authorization": server.get("authorization") or server.get("authorization_token"),
                    "require_approval": server.get("require_approval"),
                    "allowed_tools": server.get("allowed_tools"),
                }
            )
        )
    return result


def normalize_tool_choice(tool_choice: Any) -> Any:
    if tool_choice is None or tool_choice in ("auto", "required", "none"):
        return tool_choice
    if isinstance(tool_choice, dict):
        if tool_choice.get("type") == "function" and "function" in tool_choice:
            return {"type": "function", "name": tool_choice["function"]["name"]}
        if tool_choice.get("type") and tool_choice.get("type") != "function":
            return dict(tool_choice)
        if "name" in tool_choice:
            return {"type": "function", "name": tool_choice["name"]}
    raise TransformError(f"Cannot map tool_choice {tool_choice!r} for the Responses API")


@dataclass
class ResponsesRequest:
    """Structured Responses API request."""

    model: Optional[str] = None
    input: Any = None
    instructions: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    max_output_tokens: Optional[int] = None
    tools: Optional[list[dict[str, Any]]] = None
    tool_choice: Any = None
    parallel_tool_calls: Optional[bool] = None
    text: Optional[dict[str, Any]] = None
    stream: bool = False
    store: Optional[bool] = None
    previous_response_id: Optional[str] = None
    reasoning: Optional[dict[str, Any]] = None
    service_tier: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    user: Optional[str] = None
    truncation: Optional[str] = None
    include: Optional[list[str]] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        require("model", self.model)
        require("input", self.input)
        check_range("temperature", self.temperature, 0, 2)
        check_range("top_p", self.top_p, 0, 1)
        check_range("max_output_tokens", self.max_output_tokens, 1)
        check_choice("service_tier", self.service_tier, SERVICE_TIERS)
        check_choice("truncation", self.truncation, ("auto", "disabled"))

    @property
    def messages(self) -> list[Any]:
        """Input as a list of items, for appending follow-up turns."""
        if isinstance(self.input, str):
            self.input = [{"role": "user", "content": self.input}]
        return self.input

    @messages.setter
    def messages(self, value: list[Any]) -> None:
        self.input = value

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> "ResponsesRequest":
        params = dict(params)
        lines = normalize_instructions(params.pop("instructions", None))
        raw_input = params.pop("input", None)
        messages = params.pop("messages", None)
        if raw_input is None:
            raw_input = messages
        items = raw_input if isinstance(raw_input, str) else convert_input(raw_input)

        fmt = normalize_response_format(params.pop("response_format", None))
        text = params.pop("text", None)
        if fmt is not None:
            text = dict(text or {})
            text["format"] = fmt

        field_names = set(cls.__dataclass_fields__) - {"input", "instructions", "tools", "tool_choice", "text", "extra"}
        kwargs = {k: params.pop(k) for k in list(params) if k in field_names}
        if kwargs.get("stream") is None:
            kwargs.pop("stream", None)

        return cls(
            input=items,
            instructions="\n".join(lines) if lines else None,
            tools=normalize_tools(params.pop("tools", None), params.pop("mcps", None)),
            tool_choice=normalize_tool_choice(params.pop("tool_choice", None)),
            text=text,
            extra={k: v for k, v in params.items() if v is not None},
            **kwargs,
        )

    def serialize(self) -> dict[str, Any]:
        items = self.input
        if isinstance(items, list):
            items = [_clean_item(to_dict(i)) for i in items]
        data = {
            name: getattr(self, name)
            for name in self.__dataclass_fields__
            if name not in ("extra", "input")
        }
        data["input"] = simplify_input(items)
        data.update(self.extra)
        return strip_defaults(data, DEFAULTS)

    def extra_body_keys(self) -> set[str]:
        return set(self.extra)


def _clean_item(item: Any) -> Any:
    """Drop server-populated fields from an output item being re-sent."""
    if not isinstance(item, dict):
        return item
    item = dict(item)
    if item.get("type") == "message" and item.get("role") == "assistant":
        item.pop("status", None)
        item["content"] = [
            {k: v for k, v in part.items() if k in ("type", "text")}
            for part in item.get("content") or []
            if isinstance(part, dict)
        ]
    elif item.get("type") == "function_call":
        item.pop("status", None)
    return item


def function_calls(output: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [i for i in output if isinstance(i, dict) and i.get("type") == "function_call"]


def output_text(item: dict[str, Any]) -> str:
    return "".join(
        part.get("text", "")
        for part in item.get("content") or []
        if isinstance(part, dict) and part.get("type") == "output_text"
    )


def message_to_common(item: dict[str, Any], calls: Optional[list[dict[str, Any]]] = None) -> Message:
    content = item.get("content")
    text = content if isinstance(content, str) else output_text(item) or text_of(content)
    return Message(
        content=text,
        role=Role.ASSISTANT,
        generation_id=item.get("id"),
        requested_actions=[
            RequestedAction(c.get("name", ""), parse_arguments(c.get("arguments")), c.get("call_id"))
            for c in calls or []
        ],
    )


def messages_to_common(items: Any) -> list[Message]:
    """Convert Responses input/output items back to common messages."""
    if isinstance(items, str):
        return [Message(content=items, role=Role.USER)]
    result: list[Message] = []
    for item in items or []:
        item = to_dict(item)
        kind = item.get("type")
        role = item.get("role")
        if kind == "function_call":
            arguments = parse_arguments(item.get("arguments"))
            result.append(
                Message(
                    content=f"[Tool Use: {item.get('name')}]\nID: {item.get('call_id')}\nInput: {json.dumps(arguments, indent=2)}",
                    role=Role.ASSISTANT,
                    requested_actions=[RequestedAction(item.get("name", ""), arguments, item.get("call_id"))],
                )
            )
        elif kind == "function_call_output":
            result.append(Message(content=item.get("output", ""), role=Role.TOOL, action_id=item.get("call_id")))
        elif role in ("system", "developer"):
            continue
        elif role == "assistant":
            result.append(message_to_common(item))
        elif role == "user":
            content = item.get("content")
            result.append(Message(content=content if isinstance(content, str) else text_of(content), role=Role.USER))
    return result
