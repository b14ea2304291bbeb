"""OpenAI Responses API provider.

The stream is an explicit state machine over the Responses event types:
message items are opened on ``output_item.added``, grown by
``output_text.delta`` and replaced by the finished item on
``output_item.done``; function calls only materialize on
``output_item.done``.
"""

import logging
from typing import Any, Optional

from ..exceptions import TransformError, TransportError
from ..messages import Message
from ..transforms._common import parse_arguments, to_dict
from ..transforms.openai_responses import (
    ResponsesRequest,
    function_calls,
    message_to_common,
    messages_to_common,
)
from ..usage import Usage
from .openai_chat import OpenAIBaseProvider

logger = logging.getLogger("promptloop.providers.openai")

NOOP_EVENTS = (
    "response.created",
    "response.in_progress",
    "response.queued",
    "response.content_part.added",
    "response.content_part.done",
    "response.function_call_arguments.delta",
    "response.function_call_arguments.done",
    "response.output_text.annotation.added",
)

# Progress events of hosted tools and reasoning carry nothing to accumulate.
NOOP_PREFIXES = (
    "response.reasoning",
    "response.refusal",
    "response.web_search_call.",
    "response.file_search_call.",
    "response.mcp_",
    "response.image_generation_call.",
    "response.code_interpreter_call",
    "response.custom_tool_call_input.",
)


class OpenAIResponsesProvider(OpenAIBaseProvider):
    request_class = ResponsesRequest

    def reset_state(self) -> None:
        super().reset_state()
        self._completed_response: Optional[dict[str, Any]] = None

    def prepare_prompt_request(self) -> None:
        self._clear_tool_choice()
        self._completed_response = None
        super().prepare_prompt_request()

    def _clear_tool_choice(self) -> None:
        choice = self.request.tool_choice
        if not choice:
            return
        used = [call["name"] for call in self.extract_function_calls()]
        forced_name = choice.get("name") if isinstance(choice, dict) else None
        if (choice == "required" and used) or (forced_name and forced_name in used):
            logger.debug("Clearing tool_choice %s after forced tool use", choice)
            self.request.tool_choice = None

    def api_prompt_execute(self, payload: dict[str, Any]) -> Any:
        responses = self.client.responses
        kwargs = self.sdk_arguments(payload)
        if not payload.get("stream"):
            return responses.create(**kwargs)
        for event in responses.create(**kwargs):
            self.process_stream_chunk(event)
        return self._completed_response

    def _find_message(self, item_id: Optional[str]) -> Optional[dict[str, Any]]:
        for item in reversed(self.message_stack):
            if item.get("type") == "message" and item.get("id") == item_id:
                return item
        return None

    def process_stream_chunk(self, chunk: Any) -> None:
        event = to_dict(chunk) or {}
        kind = event.get("type", "")
        logger.debug("Responses stream event %s", kind)
        self.broadcast_stream_open()

        if kind in NOOP_EVENTS or kind.startswith(NOOP_PREFIXES):
            return

        if kind == "response.output_item.added":
            item = event.get("item") or {}
            if item.get("type") == "message":
                self.message_stack.append(
                    {
                        "type": "message",
                        "id": item.get("id"),
                        "role": item.get("role", "assistant"),
                        "content": [{"type": "output_text", "text": ""}],
                    }
                )

        elif kind == "response.output_text.delta":
            message = self._require_message(event.get("item_id"))
            part = message["content"][0]
            part["text"] = part.get("text", "") + event.get("delta", "")
            self.broadcast_stream_update(message, event.get("delta"))

        elif kind == "response.output_text.done":
            message = self._require_message(event.get("item_id"))
            message["content"][0]["text"] = event.get("text", "")
            self.broadcast_stream_update(message)

        elif kind == "response.output_item.done":
            item = event.get("item") or {}
            if item.get("type") == "message":
                existing = self._find_message(item.get("id"))
                if existing is not None:
                    self.message_stack[self.message_stack.index(existing)] = item
                else:
                    self.message_stack.append(item)
            else:
                self.message_stack.append(item)

        elif kind in ("response.completed", "response.incomplete"):
            self._completed_response = event.get("response") or {}

        elif kind in ("response.failed", "error"):
            error = event.get("error") or (event.get("response") or {}).get("error") or {}
            raise TransportError(
                f"Responses stream {kind}: {error.get('message', error) if isinstance(error, dict) else error}",
                provider=self.name,
            )

        else:
            raise TransformError(f"Unexpected Responses stream event: {kind}")

    def _require_message(self, item_id: Optional[str]) -> dict[str, Any]:
        message = self._find_message(item_id)
        if message is None:
            raise TransformError(f"Text delta for unknown output item {item_id!r}")
        return message

    def extract_messages(self, api_response: Any) -> list[dict[str, Any]]:
        return list((to_dict(api_response) or {}).get("output") or [])

    def extract_usage(self, api_response: Any) -> Optional[Usage]:
        return Usage.from_openai_responses((to_dict(api_response) or {}).get("usage"))

    def extract_function_calls(self) -> list[dict[str, Any]]:
        return [
            {
                "name": item.get("name"),
                "arguments": parse_arguments(item.get("arguments")),
                "call_id": item.get("call_id"),
            }
            for item in function_calls(self.message_stack)
        ]

    def tool_result_messages(self, results: list[tuple[dict[str, Any], str]]) -> list[dict[str, Any]]:
        return [
            {"type": "function_call_output", "call_id": call.get("call_id"), "output": content}
            for call, content in results
        ]

    def message_to_common(self, message: dict[str, Any]) -> Message:
        if message.get("type") == "function_call":
            return message_to_common({"content": ""}, [message])
        return message_to_common(message, function_calls(self.message_stack))

    def messages_to_common(self, messages: list[Any]) -> list[Message]:
        return messages_to_common(messages)
