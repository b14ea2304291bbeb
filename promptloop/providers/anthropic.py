"""Anthropic Messages API provider.

Installation:
    pip install anthropic

Example:
    from promptloop.providers import AnthropicProvider

    provider = AnthropicProvider(model="claude-sonnet-4-5")
    response = provider.prompt("Hello")
    print(response.message.text)
"""

import json
import logging
from typing import Any, Optional

from ..exceptions import TransformError, TransportError
from ..messages import Message
from ..options import AnthropicOptions
from ..transforms._common import to_dict
from ..transforms.anthropic import (
    JSON_PREFILL,
    AnthropicRequest,
    message_to_common,
    messages_to_common,
    tool_use_blocks,
)
from ..usage import Usage
from .base import BaseProvider

logger = logging.getLogger("promptloop.providers.anthropic")

IGNORED_DELTAS = ("thinking_delta", "signature_delta", "citations_delta")


def _check_anthropic_installed() -> None:
    """Check if the anthropic package is installed."""
    try:
        import anthropic  # noqa: F401
    except ImportError:
        raise ImportError(
            "AnthropicProvider requires the 'anthropic' package. "
            "Install it with: pip install anthropic"
        ) from None


class AnthropicProvider(BaseProvider):
    name = "anthropic"
    options_class = AnthropicOptions
    request_class = AnthropicRequest

    def reset_state(self) -> None:
        super().reset_state()
        self._json_buffers: dict[int, str] = {}

    def build_client(self) -> Any:
        _check_anthropic_installed()
        import anthropic

        return anthropic.Anthropic(**self.options.client_kwargs())

    def transport_errors(self) -> tuple:
        _check_anthropic_installed()
        import anthropic

        return super().transport_errors() + (anthropic.APIError,)

    @property
    def _json_prefill(self) -> bool:
        return bool(self.response_format and self.response_format["type"] == "json_object")

    def prepare_prompt_request(self) -> None:
        self._clear_tool_choice()
        if self._json_prefill:
            self.message_stack.append({"role": "assistant", "content": JSON_PREFILL})
        super().prepare_prompt_request()

    def _clear_tool_choice(self) -> None:
        """Drop a forcing tool_choice once it has been honoured."""
        choice = self.request.tool_choice
        if not choice:
            return
        used = [b.get("name") for m in self.message_stack for b in tool_use_blocks(m)]
        if (choice["type"] == "any" and used) or (
            choice["type"] == "tool" and choice.get("name") in used
        ):
            logger.debug("Clearing tool_choice %s after forced tool use", choice)
            self.request.tool_choice = None

    def api_prompt_execute(self, payload: dict[str, Any]) -> Any:
        messages = self.client.beta.messages if payload.get("mcp_servers") else self.client.messages
        kwargs = self.sdk_arguments(payload)
        if not payload.get("stream"):
            return messages.create(**kwargs)
        for event in messages.create(**kwargs):
            self.process_stream_chunk(event)
        return None

    def process_stream_chunk(self, chunk: Any) -> None:
        event = to_dict(chunk)
        kind = event.get("type")
        logger.debug("Anthropic stream event %s", kind)
        self.broadcast_stream_open()

        if kind == "message_start":
            message = dict(event["message"])
            message["content"] = list(message.get("content") or [])
            self._json_buffers = {}
            self.message_stack.append(message)
            self.broadcast_stream_update(message)

        elif kind == "content_block_start":
            block = dict(event["content_block"])
            message = self.message_stack[-1]
            if block.get("type") in ("tool_use", "server_tool_use", "mcp_tool_use"):
                self._json_buffers[len(message["content"])] = ""
            message["content"].append(block)
            if block.get("text"):
                self.broadcast_stream_update(message, block["text"])

        elif kind == "content_block_delta":
            index = event["index"]
            message = self.message_stack[-1]
            block = message["content"][index]
            delta = event.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                block["text"] = block.get("text", "") + delta.get("text", "")
                self.broadcast_stream_update(message, delta.get("text"))
            elif delta_type == "input_json_delta":
                self._json_buffers[index] = self._json_buffers.get(index, "") + delta.get("partial_json", "")
            elif delta_type in IGNORED_DELTAS:
                pass
            else:
                raise TransformError(f"Unexpected Anthropic delta type: {delta_type}")

        elif kind == "content_block_stop":
            index = event["index"]
            buffer = self._json_buffers.pop(index, None)
            if buffer is not None:
                block = self.message_stack[-1]["content"][index]
                try:
                    block["input"] = json.loads(buffer) if buffer else {}
                except json.JSONDecodeError:
                    raise TransformError(f"Malformed tool input JSON: {buffer!r}") from None

        elif kind == "message_delta":
            message = self.message_stack[-1]
            message.update(event.get("delta") or {})
            if event.get("usage"):
                usage = dict(message.get("usage") or {})
                usage.update({k: v for k, v in event["usage"].items() if v is not None})
                message["usage"] = usage

        elif kind in ("message_stop", "ping"):
            pass

        elif kind == "error":
            error = event.get("error") or {}
            raise TransportError(
                f"Anthropic stream error: {error.get('message', error)}",
                provider=self.name,
                retryable=error.get("type") == "overloaded_error",
            )

        elif "snapshot" in event:
            pass

        else:
            raise TransformError(f"Unexpected Anthropic stream event: {kind}")

    def extract_messages(self, api_response: Any) -> list[dict[str, Any]]:
        return [to_dict(api_response)]

    def process_prompt_finished(self, api_response: Any) -> None:
        super().process_prompt_finished(api_response)
        if not self._json_prefill or not self.message_stack:
            return
        self.request.messages.pop()
        content = self.message_stack[-1].get("content")
        if isinstance(content, list) and content and content[0].get("type") == "text":
            content[0]["text"] = "{" + content[0].get("text", "")

    def extract_usage(self, api_response: Any) -> Optional[Usage]:
        if not self.message_stack:
            return None
        return Usage.from_anthropic(self.message_stack[-1].get("usage"))

    def extract_function_calls(self) -> list[dict[str, Any]]:
        return [
            {"name": block["name"], "arguments": block.get("input") or {}, "call_id": block.get("id")}
            for message in self.message_stack
            if message.get("role") == "assistant"
            for block in tool_use_blocks(message)
        ]

    def tool_result_messages(self, results: list[tuple[dict[str, Any], str]]) -> list[dict[str, Any]]:
        return [
            {
                "role": "user",
                "content": [
                    {"type": "tool_result", "tool_use_id": call.get("call_id"), "content": content}
                    for call, content in results
                ],
            }
        ]

    def message_to_common(self, message: dict[str, Any]) -> Message:
        return message_to_common(message)

    def messages_to_common(self, messages: list[Any]) -> list[Message]:
        return messages_to_common(messages)
