"""
PromptLoop - Anthropic Messages API request transform.

``AnthropicRequest.from_params`` maps common-format parameters to the
Messages API shape: instructions become ``system``, tool schemas use
``input_schema``, tool results travel as ``tool_result`` blocks in user
messages. ``serialize`` produces the wire payload.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from ..content import compress_content, normalize_content, text_of
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
    require,
    strip_defaults,
    tool_schema,
    to_dict,
)

DEFAULT_MAX_TOKENS = 4096

DEFAULTS: dict[str, Any] = {
    "stream": False,
    "stop_sequences": [],
    "mcp_servers": [],
}

ECHO_FIELDS = ("id", "model", "stop_reason", "stop_sequence", "type", "usage", "container")

SERVICE_TIERS = ("auto", "standard_only")

MAX_MCP_SERVERS = 20

JSON_PREFILL = "Here is the JSON requested:\n{"


def normalize_tool_choice(tool_choice: Any) -> Optional[dict[str, Any]]:
    if tool_choice is None:
        return None
    if tool_choice in ("auto", "any", "none"):
        return {"type": tool_choice}
    if tool_choice == "required":
        return {"type": "any"}
    if isinstance(tool_choice, dict):
        if tool_choice.get("type") in ("auto", "any", "tool", "none"):
            return dict(tool_choice)
        if tool_choice.get("type") == "function" and isinstance(tool_choice.get("function"), dict):
            return {"type": "tool", "name": tool_choice["function"]["name"]}
        if "name" in tool_choice:
            return {"type": "tool", "name": tool_choice["name"]}
    raise TransformError(f"Cannot map tool_choice {tool_choice!r} for Anthropic")


def normalize_tools(tools: Optional[list[Any]]) -> Optional[list[dict[str, Any]]]:
    if tools is None:
        return None
    result = []
    for tool in tools:
        if is_function_tool(tool) and not (isinstance(tool, dict) and "input_schema" in tool):
            schema = tool_schema(tool)
            result.append(
                compact(
                    {
                        "name": schema["name"],
                        "description": schema.get("description"),
                        "input_schema": schema.get("parameters")
                        or {"type": "object", "properties": {}},
                    }
                )
            )
        else:
            result.append(dict(tool))
    return result


def normalize_mcp_servers(servers: Optional[list[dict[str, Any]]]) -> list[dict[str, Any]]:
    result = []
    for server in servers or []:
        if server.get("type") == "url" and (
            "authorization_token" in server or "authorization" not in server
        ):
            result.append(dict(server))
            continue
        result.append(
            compact(
                {
                    "type": "url",
                    "name": server.get("name"),
                    "url": server.get("url"),
                    "authorization_token": server.get("authorization")
                    or server.get("authorization_token"),
                }
            )
        )
    return result


def normalize_system(system: Any) -> Any:
    if system is None or isinstance(system, str):
        return system
    blocks = system if isinstance(system, list) else [system]
    result = []
    for block in blocks:
        if isinstance(block, str):
            result.append({"type": "text", "text": block})
        elif isinstance(block, dict):
            block = dict(block)
            if "text" in block:
                block.setdefault("type", "text")
            result.append(block)
        else:
            raise TransformError(f"Unsupported system block: {block!r}")
    return result


def _message_content(message: dict[str, Any]) -> list[Any]:
    if "content" in message:
        blocks = normalize_content(message["content"])
    else:
        shorthand = {k: v for k, v in message.items() if k in ("text", "image", "document")}
        blocks = normalize_content(shorthand) if shorthand else []
    blocks = [b for b in blocks if not (isinstance(b, dict) and b.get("type") == "text" and b.get("text") == "")]
    for action in message.get("requested_actions") or []:
        blocks.append(
            {
                "type": "tool_use",
                "id": action.get("call_id"),
                "name": action["name"],
                "input": action.get("arguments") or {},
            }
        )
    return blocks


def _merge(a: dict[str, Any], b: dict[str, Any]) -> dict[str, Any]:
    return {"role": a["role"], "content": normalize_content(a["content"]) + normalize_content(b["content"])}


def normalize_messages(messages: Any) -> tuple[list[dict[str, Any]], list[str]]:
    """Return ``(messages, system_texts)``.

    Inline system messages are lifted out, since the Messages API only takes
    system text through the ``system`` field.
    """
    system_texts: list[str] = []
    converted: list[dict[str, Any]] = []
    for message in as_message_dicts(messages):
        role = message["role"]
        check_role(role, ("system", "user", "assistant", "tool"))
        if role == "system":
            system_texts.append(text_of(message.get("content")))
        elif role == "tool":
            content = message.get("content")
            converted.append(
                {
                    "role": "tool",
                    "content": [
                        {
                            "type": "tool_result",
                            "tool_use_id": message.get("tool_call_id"),
                            "content": content if isinstance(content, (str, list)) else json.dumps(content),
                        }
                    ],
                }
            )
        else:
            converted.append({"role": role, "content": _message_content(message)})
            if role == "user" and _has_tool_result(converted[-1]):
                converted[-1]["role"] = "tool"

    grouped = merge_consecutive(converted, _merge, unmergeable=("tool",))
    for message in grouped:
        if message["role"] == "tool":
            message["role"] = "user"
    return grouped, system_texts


@dataclass
class AnthropicRequest:
    """Structured Messages API request owning its own fields."""

    model: Optional[str] = None
    messages: list[dict[str, Any]] = field(default_factory=list)
    max_tokens: int = DEFAULT_MAX_TOKENS
    system: Any = None
    temperature: Optional[float] = None
    top_k: Optional[int] = None
    top_p: Optional[float] = None
    stop_sequences: list[str] = field(default_factory=list)
    tools: Optional[list[dict[str, Any]]] = None
    tool_choice: Optional[dict[str, Any]] = None
    thinking: Optional[dict[str, Any]] = None
    stream: bool = False
    metadata: Optional[dict[str, Any]] = None
    service_tier: Optional[str] = None
    mcp_servers: list[dict[str, Any]] = field(default_factory=list)
    response_format: Optional[dict[str, Any]] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        require("model", self.model)
        require("max_tokens", self.max_tokens)
        check_range("max_tokens", self.max_tokens, 1)
        check_range("temperature", self.temperature, 0, 1)
        check_range("top_p", self.top_p, 0, 1)
        check_range("top_k", self.top_k, 0)
        check_choice("service_tier", self.service_tier, SERVICE_TIERS)
        if len(self.mcp_servers) > MAX_MCP_SERVERS:
            raise TransformError(f"At most {MAX_MCP_SERVERS} MCP servers are allowed")
        if self.system is not None and not isinstance(self.system, str):
            if not all(isinstance(b, dict) and b.get("type") == "text" for b in self.system):
                raise TransformError("system blocks must be text blocks")

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> "AnthropicRequest":
        params = dict(params)
        instructions = normalize_instructions(params.pop("instructions", None))
        messages, inline_system = normalize_messages(params.pop("messages", None))

        system = normalize_system(params.pop("system", None))
        extra_system = (instructions or []) + inline_system
        if extra_system:
            if system is None and len(extra_system) == 1:
                system = extra_system[0]
            else:
                existing = normalize_system(system) if system is not None else []
                if isinstance(existing, str):
                    existing = normalize_system([existing])
                system = existing + [{"type": "text", "text": t} for t in extra_system]

        mcp_servers = params.pop("mcps", None) or params.pop("mcp_servers", None)
        params.pop("mcp_servers", None)

        known = {
            "model",
            "max_tokens",
            "temperature",
            "top_k",
            "top_p",
            "stop_sequences",
            "thinking",
            "stream",
            "metadata",
            "service_tier",
        }
        kwargs = {k: params.pop(k) for k in list(params) if k in known}
        if kwargs.get("max_tokens") is None:
            kwargs.pop("max_tokens", None)
        if "stop_sequences" in kwargs and kwargs["stop_sequences"] is None:
            kwargs["stop_sequences"] = []

        return cls(
            messages=messages,
            system=system,
            tools=normalize_tools(params.pop("tools", None)),
            tool_choice=normalize_tool_choice(params.pop("tool_choice", None)),
            mcp_servers=normalize_mcp_servers(mcp_servers),
            response_format=normalize_response_format(params.pop("response_format", None)),
            extra={k: v for k, v in params.items() if v is not None},
            **kwargs,
        )

    def serialize(self) -> dict[str, Any]:
        """Wire payload; ``max_tokens`` is always sent."""
        messages: list[dict[str, Any]] = []
        for message in self.messages:
            message = {k: v for k, v in to_dict(message).items() if k not in ECHO_FIELDS}
            if (
                messages
                and messages[-1].get("role") == message.get("role")
                and not _has_tool_result(messages[-1])
                and not _has_tool_result(message)
            ):
                messages[-1] = _merge(messages[-1], message)
            else:
                messages.append(message)
        for message in messages:
            message["content"] = compress_content(message.get("content"))

        system = self.system
        if isinstance(system, list):
            system = compress_content(system)

        data = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "system": system,
            "temperature": self.temperature,
            "top_k": self.top_k,
            "top_p": self.top_p,
            "stop_sequences": self.stop_sequences,
            "tools": self.tools,
            "tool_choice": self.tool_choice,
            "thinking": self.thinking,
            "stream": self.stream,
            "metadata": self.metadata,
            "service_tier": self.service_tier,
            "mcp_servers": self.mcp_servers,
            **self.extra,
        }
        return strip_defaults(data, DEFAULTS)

    def extra_body_keys(self) -> set[str]:
        return set(self.extra)


def _has_tool_result(message: dict[str, Any]) -> bool:
    content = message.get("content")
    return isinstance(content, list) and any(
        isinstance(b, dict) and b.get("type") == "tool_result" for b in content
    )


def tool_use_blocks(message: dict[str, Any]) -> list[dict[str, Any]]:
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [b for b in content if isinstance(b, dict) and b.get("type") == "tool_use"]


def message_to_common(message: dict[str, Any]) -> Message:
    """Collapse a native assistant message into one common message."""
    content = message.get("content")
    actions = [
        RequestedAction(name=b["name"], arguments=b.get("input") or {}, call_id=b.get("id"))
        for b in tool_use_blocks(message)
    ]
    text = text_of([b for b in content if isinstance(b, dict) and b.get("type") == "text"]) if isinstance(content, list) else text_of(content)
    return Message(
        content=text,
        role=Role.ASSISTANT,
        generation_id=message.get("id"),
        requested_actions=actions,
    )


def _describe_tool_use(block: dict[str, Any], label: str = "Tool Use") -> str:
    lines = [f"[{label}: {block.get('name')}]", f"ID: {block.get('id')}"]
    if block.get("server_name"):
        lines.append(f"Server: {block['server_name']}")
    lines.append(f"Input: {json.dumps(block.get('input') or {}, indent=2)}")
    return "\n".join(lines)


def messages_to_common(messages: list[Any]) -> list[Message]:
    """Convert native messages back to common messages.

    Assistant messages are split into one message per content block and
    tool results become tool-role messages.
    """
    result: list[Message] = []
    for message in messages:
        message = to_dict(message)
        role = message.get("role")
        content = message.get("content")
        if role == "assistant":
            blocks = content if isinstance(content, list) else [{"type": "text", "text": text_of(content)}]
            for block in blocks:
                kind = block.get("type")
                if kind == "text":
                    result.append(Message(content=block.get("text", ""), role=Role.ASSISTANT, generation_id=message.get("id")))
                elif kind == "tool_use":
                    result.append(
                        Message(
                            content=_describe_tool_use(block),
                            role=Role.ASSISTANT,
                            generation_id=message.get("id"),
                            requested_actions=[
                                RequestedAction(block["name"], block.get("input") or {}, block.get("id"))
                            ],
                        )
                    )
                elif kind == "mcp_tool_use":
                    result.append(Message(content=_describe_tool_use(block, "MCP Tool Use"), role=Role.ASSISTANT))
                elif kind == "mcp_tool_result":
                    result.append(Message(content=f"[MCP Tool Result]\n{text_of(block.get('content'))}", role=Role.ASSISTANT))
                elif kind in ("thinking", "redacted_thinking"):
                    continue
                else:
                    result.append(Message(content=block.get("text") or str(block), role=Role.ASSISTANT))
        elif role == "user":
            blocks = normalize_content(content)
            results = [b for b in blocks if b.get("type") == "tool_result"]
            others = [b for b in blocks if b.get("type") != "tool_result"]
            for block in results:
                result.append(
                    Message(
                        content=text_of(block.get("content")),
                        role=Role.TOOL,
                        action_id=block.get("tool_use_id"),
                    )
                )
            if others:
                result.append(Message(content=compress_content(others), role=Role.USER))
    return result
