"""
PromptLoop - Common content normalization.

Turns shorthand content (bare strings, ``{"text", "image", "document"}``
dicts, data URIs, mixed lists) into an ordered list of typed content blocks::

    normalize_content("hi")
    # [{"type": "text", "text": "hi"}]

    normalize_content({"text": "Describe", "image": "https://x/y.png"})
    # [{"type": "text", "text": "Describe"},
    #  {"type": "image", "source": {"type": "url", "url": "https://x/y.png"}}]

Blocks that already carry a ``type`` are returned untouched, so running the
normalizer over its own output is a no-op.
"""

import re
from typing import Any, Union

DATA_URI_PATTERN = re.compile(r"^data:([^;,]+)(?:;base64)?,(.+)$", re.DOTALL)

CONTENT_KEYS = ("text", "image", "document")

ContentInput = Union[str, dict, list, None]


def parse_data_uri(data_uri: str) -> dict[str, Any]:
    """Parse ``data:<media_type>[;base64],<payload>`` into a base64 source.

    A string that does not match is treated as a remote URL.
    """
    match = DATA_URI_PATTERN.match(data_uri)
    if match:
        return {"type": "base64", "media_type": match.group(1), "data": match.group(2)}
    return {"type": "url", "url": data_uri}


def normalize_source(source: Any) -> Any:
    """Normalize an image or document source."""
    if isinstance(source, str):
        if source.startswith("data:"):
            return parse_data_uri(source)
        return {"type": "url", "url": source}
    if isinstance(source, dict):
        if "type" in source:
            return dict(source)
        if "data" in source and "media_type" in source:
            return {"type": "base64", **source}
        return dict(source)
    return source


def normalize_content_item(item: Any) -> Any:
    """Normalize a single content item into a typed block."""
    if isinstance(item, str):
        return {"type": "text", "text": item}
    if not isinstance(item, dict):
        return item

    if "type" in item:
        return dict(item)

    if "text" in item:
        return {"type": "text", **item}
    if "image" in item:
        rest = {k: v for k, v in item.items() if k != "image"}
        return {"type": "image", "source": normalize_source(item["image"]), **rest}
    if "document" in item:
        rest = {k: v for k, v in item.items() if k != "document"}
        return {"type": "document", "source": normalize_source(item["document"]), **rest}
    if "tool_use_id" in item:
        return {"type": "tool_result", **item}
    if item.get("id") and "name" in item and "input" in item:
        return {"type": "tool_use", **item}
    return dict(item)


def normalize_content(content: ContentInput) -> list[Any]:
    """Normalize any supported content shape into a list of typed blocks."""
    if content is None:
        return []
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        return [normalize_content_item(item) for item in content]
    if isinstance(content, dict):
        found = [key for key in CONTENT_KEYS if key in content]
        if len(found) > 1 and "type" not in content:
            return [normalize_content_item({key: content[key]}) for key in found]
        return [normalize_content_item(content)]
    return [content]


def compress_content(content: Any) -> Any:
    """Collapse a lone text block back to a bare string."""
    if (
        isinstance(content, list)
        and len(content) == 1
        and isinstance(content[0], dict)
        and content[0].get("type") == "text"
        and set(content[0]) <= {"type", "text"}
    ):
        return content[0]["text"]
    return content


def text_of(content: Any) -> str:
    """Concatenate the text of string or block content."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, dict):
        return str(content.get("text", ""))
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and isinstance(block.get("text"), str):
                parts.append(block["text"])
        return "".join(parts)
    return str(content)


def source_to_url(source: dict[str, Any]) -> str:
    """Render a normalized source as a URL, using a data URI for base64 payloads."""
    if source.get("type") == "base64":
        return f"data:{source.get('media_type')};base64,{source.get('data')}"
    return str(source.get("url", ""))
