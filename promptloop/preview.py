"""
PromptLoop - Markdown preview of a prepared request.

Renders the wire payload a provider would send as markdown: the request
parameters as YAML, then the instructions, messages and tools, separated by
``---`` dividers. Nothing is sent.
"""

import json
from typing import Any

import yaml

from .content import text_of


def render_markdown_preview(payload: dict[str, Any]) -> str:
    """Render a serialized request payload as markdown."""
    parameters = dict(payload)
    sections = []

    instructions = parameters.pop("instructions", None) or parameters.pop("system", None)
    if instructions:
        sections.append(f"## Instructions\n{_text(instructions)}")

    messages = parameters.pop("messages", None) or parameters.pop("input", None)
    if messages:
        sections.append(_messages_section(messages))

    tools = parameters.pop("tools", None)
    if tools:
        sections.append(_tools_section(tools))

    header = yaml.safe_dump(parameters, sort_keys=False, default_flow_style=False).rstrip("\n")
    return "\n---\n".join([header] + sections)


def _text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return " ".join(
            text_of(block)
            for block in content
            if isinstance(block, dict) and block.get("type") in ("text", "input_text", "output_text")
        )
    return str(content)


def _messages_section(messages: Any) -> str:
    if isinstance(messages, str):
        messages = [{"role": "user", "content": messages}]
    rendered = []
    for number, message in enumerate(messages, start=1):
        if isinstance(message, dict):
            role = message.get("role") or message.get("type") or "user"
            content = _text(message.get("content", message.get("output")))
        else:
            role, content = "user", str(message)
        rendered.append(f"### Message {number} ({role.capitalize()})\n{content}")
    return "## Messages\n\n" + "\n\n".join(rendered)


def _tools_section(tools: list[Any]) -> str:
    lines = ["## Tools", ""]
    for number, tool in enumerate(tools, start=1):
        schema = tool.get("function") or tool
        lines.append(f"### {schema.get('name') or f'Tool {number}'}")
        lines.append(f"**Description:** {schema.get('description') or 'No description'}")
        lines.append("")
        parameters = schema.get("parameters") or schema.get("input_schema")
        if parameters:
            lines.append("**Parameters:**")
            lines.append("```json")
            lines.append(json.dumps(parameters, indent=2))
            lines.append("```")
            lines.append("")
    return "\n".join(lines).rstrip("\n")
