"""OpenAI Chat Completions provider.

Installation:
    pip install openai

Example:
    from promptloop.providers import OpenAIChatProvider

    provider = OpenAIChatProvider(model="gpt-4o-mini")
    response = provider.prompt("Hello", temperature=0.2)
    print(response.message.text)
"""

import logging
from typing import Any, Optional

from ..exceptions import TransformError
from ..messages import Message
from ..options import OpenAIOptions
from ..transforms._common import parse_arguments, to_dict
from ..transforms.openai_chat import (
    ChatRequest,
    merge_delta,
    message_to_common,
    messages_to_common,
)
from ..usage import Usage
from .base import BaseProvider

logger = logging.getLogger("promptloop.providers.openai")


def _check_openai_installed() -> None:
    """Check if the openai package is installed."""
    try:
        import openai  # noqa: F401
    except ImportError:
        raise ImportError(
            "OpenAI providers require the 'openai' package. "
            "Install it with: pip install openai"
        ) from None


class OpenAIBaseProvider(BaseProvider):
    """Client construction and embeddings shared by the OpenAI-compatible providers."""

    name = "openai"
    options_class = OpenAIOptions
    default_embedding_model = "text-embedding-3-small"

    def build_client(self) -> Any:
        _check_openai_installed()
        import openai

        return openai.OpenAI(**self.options.client_kwargs())

    def transport_errors(self) -> tuple:
        _check_openai_installed()
        import openai

        return super().transport_errors() + (openai.APIError,)

    def api_embed_execute(self, payload: dict[str, Any]) -> Any:
        return self.client.embeddings.create(**payload)

    def extract_embed_usage(self, api_response: Any) -> Optional[Usage]:
        return Usage.from_openai_embedding((to_dict(api_response) or {}).get("usage"))


class OpenAIChatProvider(OpenAIBaseProvider):
    request_class = ChatRequest
    forcing_tool_choices: tuple = ("required",)

    def reset_state(self) -> None:
        super().reset_state()
        self._stream_usage: Optional[dict[str, Any]] = None

    def prepare_prompt_request(self) -> None:
        self._clear_tool_choice()
        self._stream_usage = None
        super().prepare_prompt_request()

    def _clear_tool_choice(self) -> None:
        """Drop a forcing tool_choice once it has been honoured."""
        choice = self.request.tool_choice
        if not choice:
            return
        used = [call["name"] for call in self.extract_function_calls()]
        forced_name = (choice.get("function") or {}).get("name") if isinstance(choice, dict) else None
        if (choice in self.forcing_tool_choices and used) or (forced_name and forced_name in used):
            logger.debug("Clearing tool_choice %s after forced tool use", choice)
            self.request.tool_choice = None

    def api_prompt_execute(self, payload: dict[str, Any]) -> Any:
        completions = self.client.chat.completions
        kwargs = self.sdk_arguments(payload)
        if not payload.get("stream"):
            return completions.create(**kwargs)
        for chunk in completions.create(**kwargs):
            self.process_stream_chunk(chunk)
        return None

    def _find_or_create_message(self, index: int) -> dict[str, Any]:
        for message in self.message_stack:
            if message.get("index") == index:
                return message
        message = {"index": index, "role": "assistant"}
        self.message_stack.append(message)
        return message

    def process_stream_chunk(self, chunk: Any) -> None:
        data = to_dict(chunk) or {}
        self.broadcast_stream_open()
        if data.get("usage"):
            self._stream_usage = data["usage"]

        choices = data.get("choices") or []
        if not choices:
            return
        choice = choices[0]
        delta = dict(choice.get("delta") or {})
        message = self._find_or_create_message(choice.get("index", 0))
        if delta.get("role"):
            message["role"] = delta.pop("role")
        merge_delta(message, delta)

        if delta.get("content"):
            self.broadcast_stream_update(message, delta["content"])
        if choice.get("finish_reason"):
            logger.debug("Chat stream finished: %s", choice["finish_reason"])

    def extract_messages(self, api_response: Any) -> list[dict[str, Any]]:
        data = to_dict(api_response) or {}
        choices = data.get("choices") or []
        if not choices:
            return []
        return [choices[0]["message"]]

    def extract_usage(self, api_response: Any) -> Optional[Usage]:
        if self.streaming:
            return Usage.from_openai_chat(self._stream_usage)
        return Usage.from_openai_chat((to_dict(api_response) or {}).get("usage"))

    def extract_function_calls(self) -> list[dict[str, Any]]:
        calls = []
        for message in self.message_stack:
            if message.get("role") != "assistant":
                continue
            for call in message.get("tool_calls") or []:
                if call.get("type", "function") != "function":
                    raise TransformError(f"Unexpected tool call type: {call.get('type')}")
                function = call.get("function") or {}
                calls.append(
                    {
                        "name": function.get("name"),
                        "arguments": parse_arguments(function.get("arguments")),
                        "call_id": call.get("id"),
                    }
                )
        return calls

    def tool_result_messages(self, results: list[tuple[dict[str, Any], str]]) -> list[dict[str, Any]]:
        return [
            {"role": "tool", "tool_call_id": call.get("call_id"), "content": content}
            for call, content in results
        ]

    def message_to_common(self, message: dict[str, Any]) -> Message:
        return message_to_common(message)

    def messages_to_common(self, messages: list[Any]) -> list[Message]:
        return messages_to_common(messages)
