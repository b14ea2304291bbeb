"""Helpers shared by the per-provider request transforms."""

import json
import logging
from typing import Any, Callable, Iterable, Optional

from ..exceptions import ConfigurationError, TransformError
from ..messages import Message
from ..tools import ToolDef

logger = logging.getLogger("promptloop.transforms")

RESPONSE_FORMAT_TYPES = ("text", "json_object", "json_schema")


def to_dict(obj: Any) -> Any:
    """Plain-data view of an SDK object, dict or list."""
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, dict):
        return {k: to_dict(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_dict(v) for v in obj]
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json", exclude_none=True)
    if hasattr(obj, "__dict__"):
        return {k: to_dict(v) for k, v in vars(obj).items() if not k.startswith("_")}
    return obj


def compact(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


def strip_defaults(
    data: dict[str, Any],
    defaults: dict[str, Any],
    keep: Iterable[str] = (),
) -> dict[str, Any]:
    """Drop ``None`` values and values equal to their declared default."""
    keep = set(keep)
    cleaned = {}
    for key, value in data.items():
        if value is None:
            continue
        if key not in keep and key in defaults and defaults[key] == value:
            continue
        cleaned[key] = value
    return cleaned


def check_range(name: str, value: Any, low: float, high: Optional[float] = None) -> None:
    if value is None:
        return
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ConfigurationError(f"{name} must be a number, got {value!r}", field=name)
    if value < low or (high is not None and value > high):
        bounds = f"between {low} and {high}" if high is not None else f">= {low}"
        raise ConfigurationError(f"{name} must be {bounds}, got {value}", field=name)


def check_choice(name: str, value: Any, choices: Iterable[str]) -> None:
    choices = tuple(choices)
    if value is not None and value not in choices:
        raise ConfigurationError(
            f"{name} must be one of {', '.join(choices)}, got {value!r}", field=name
        )


def require(name: str, value: Any) -> None:
    if value is None or value == "" or value == []:
        raise ConfigurationError(f"Missing required field: {name}", field=name)


def as_message_dicts(messages: Any) -> list[dict[str, Any]]:
    """Coerce common-format messages (strings, dicts, :class:`Message`) to dicts."""
    if messages is None:
        return []
    if isinstance(messages, (str, dict, Message)):
        messages = [messages]
    result = []
    for message in messages:
        if isinstance(message, Message):
            result.append(message.to_dict())
        elif isinstance(message, str):
            result.append({"role": "user", "content": message})
        elif isinstance(message, dict):
            data = dict(message)
            data.setdefault("role", "user")
            data["role"] = str(getattr(data["role"], "value", data["role"]))
            result.append(data)
        else:
            raise TransformError(f"Cannot normalize {type(message).__name__} to a message")
    return result


def check_role(role: str, allowed: Iterable[str]) -> None:
    allowed = tuple(allowed)
    if role not in allowed:
        raise TransformError(
            f"Unknown message role: {role!r} (expected one of {', '.join(allowed)})"
        )


def merge_consecutive(
    messages: list[dict[str, Any]],
    merge: Callable[[dict[str, Any], dict[str, Any]], dict[str, Any]],
    unmergeable: Iterable[str] = ("tool",),
) -> list[dict[str, Any]]:
    """Merge runs of same-role messages; roles in ``unmergeable`` never merge."""
    unmergeable = set(unmergeable)
    grouped: list[dict[str, Any]] = []
    for message in messages:
        role = message.get("role")
        if (
            grouped
            and grouped[-1].get("role") == role
            and role not in unmergeable
            and "tool_calls" not in grouped[-1]
            and "tool_calls" not in message
        ):
            grouped[-1] = merge(grouped[-1], message)
        else:
            grouped.append(dict(message))
    return grouped


def tool_schema(tool: Any) -> dict[str, Any]:
    """Return ``{name, description, parameters}`` for any accepted tool shape.

    Accepts a :class:`ToolDef`, ``{name, description, parameters}``,
    ``{name, description, input_schema}`` or the OpenAI nested function form.
    """
    if isinstance(tool, ToolDef):
        return tool.to_schema()
    if not isinstance(tool, dict):
        raise TransformError(f"Cannot normalize {type(tool).__name__} to a tool")
    if tool.get("type") == "function" and isinstance(tool.get("function"), dict):
        tool = tool["function"]
    if "name" not in tool:
        raise TransformError(f"Tool definition is missing a name: {tool!r}")
    return compact(
        {
            "name": tool["name"],
            "description": tool.get("description"),
            "parameters": tool.get("parameters") or tool.get("input_schema"),
        }
    )


def is_function_tool(tool: Any) -> bool:
    """True for tool entries that describe a callable function."""
    if isinstance(tool, ToolDef):
        return True
    if not isinstance(tool, dict):
        return False
    return tool.get("type") in (None, "function", "custom") and (
        "name" in tool or "function" in tool
    )


def normalize_response_format(fmt: Any) -> Optional[dict[str, Any]]:
    """Shorthand response format to ``{"type", ...}``.

    Raises:
        ConfigurationError: For an unknown format type.
    """
    if fmt is None:
        return None
    if isinstance(fmt, str):
        fmt = {"type": fmt}
    if not isinstance(fmt, dict):
        raise ConfigurationError(
            f"response_format must be a string or mapping, got {type(fmt).__name__}",
            field="response_format",
        )
    fmt = dict(fmt)
    fmt_type = str(fmt.get("type", ""))
    check_choice("response_format.type", fmt_type, RESPONSE_FORMAT_TYPES)
    fmt["type"] = fmt_type
    if fmt_type == "json_schema":
        nested = fmt.get("json_schema") or {}
        return compact(
            {
                "type": "json_schema",
                "name": fmt.get("name") or nested.get("name") or "response",
                "schema": fmt.get("schema") or nested.get("schema"),
                "strict": fmt.get("strict", nested.get("strict")),
            }
        )
    return {"type": fmt_type}


def parse_arguments(raw: Any) -> dict[str, Any]:
    """Decode tool-call arguments; malformed JSON yields an empty dict."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Could not decode tool arguments: %r", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {"input": parsed}


def dump_result(result: Any) -> str:
    """Serialize an action's return value as tool-message content."""
    return json.dumps(result, default=str)
