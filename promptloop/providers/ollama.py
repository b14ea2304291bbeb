"""Ollama provider using the native HTTP API.

Talks to ``/api/chat`` (newline-delimited JSON when streaming) and
``/api/embed`` with an ``httpx.Client``.
"""

import json
import logging
from typing import Any, Optional

import httpx

from ..exceptions import TransportError
from ..messages import Message
from ..options import OllamaOptions
from ..transforms.ollama import OllamaRequest, message_to_common, messages_to_common
from ..usage import Usage
from .base import BaseProvider

logger = logging.getLogger("promptloop.providers.ollama")


class OllamaProvider(BaseProvider):
    name = "ollama"
    options_class = OllamaOptions
    request_class = OllamaRequest
    default_embedding_model = "nomic-embed-text"

    def reset_state(self) -> None:
        super().reset_state()
        self._stream_message: Optional[dict[str, Any]] = None
        self._final_chunk: Optional[dict[str, Any]] = None

    def build_client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.options.base_url,
            timeout=self.options.timeout,
            headers=self.options.extra_headers(),
        )

    def prepare_prompt_request(self) -> None:
        self._stream_message = None
        self._final_chunk = None
        super().prepare_prompt_request()

    def api_prompt_execute(self, payload: dict[str, Any]) -> Any:
        if not payload.get("stream"):
            response = self.client.post("/api/chat", json=payload)
            response.raise_for_status()
            return response.json()
        with self.client.stream("POST", "/api/chat", json=payload) as response:
            response.raise_for_status()
            for line in response.iter_lines():
                if line.strip():
                    self.process_stream_chunk(json.loads(line))
        return self._final_chunk

    def process_stream_chunk(self, chunk: dict[str, Any]) -> None:
        self.broadcast_stream_open()
        if chunk.get("error"):
            raise TransportError(f"Ollama stream error: {chunk['error']}", provider=self.name)

        if self._stream_message is None:
            self._stream_message = {"role": "assistant", "content": ""}
            self.message_stack.append(self._stream_message)
        message = self._stream_message
        delta = chunk.get("message") or {}

        if delta.get("thinking"):
            message["thinking"] = message.get("thinking", "") + delta["thinking"]
        if delta.get("tool_calls"):
            message.setdefault("tool_calls", []).extend(delta["tool_calls"])
        if delta.get("content"):
            message["content"] += delta["content"]
            self.broadcast_stream_update(message, delta["content"])
        if chunk.get("done"):
            logger.debug("Ollama stream done: %s", chunk.get("done_reason"))
            self._final_chunk = chunk

    def extract_messages(self, api_response: Any) -> list[dict[str, Any]]:
        message = (api_response or {}).get("message")
        return [message] if message else []

    def extract_usage(self, api_response: Any) -> Optional[Usage]:
        return Usage.from_ollama(api_response)

    def extract_function_calls(self) -> list[dict[str, Any]]:
        return [
            {
                "name": (call.get("function") or {}).get("name"),
                "arguments": (call.get("function") or {}).get("arguments") or {},
                "call_id": call.get("id"),
            }
            for message in self.message_stack
            if message.get("role") == "assistant"
            for call in message.get("tool_calls") or []
        ]

    def tool_result_messages(self, results: list[tuple[dict[str, Any], str]]) -> list[dict[str, Any]]:
        return [
            {"role": "tool", "content": content, "tool_name": call.get("name")}
            for call, content in results
        ]

    def message_to_common(self, message: dict[str, Any]) -> Message:
        return message_to_common(message)

    def messages_to_common(self, messages: list[Any]) -> list[Message]:
        return messages_to_common(messages)

    def api_embed_execute(self, payload: dict[str, Any]) -> Any:
        response = self.client.post("/api/embed", json=payload)
        response.raise_for_status()
        return response.json()

    def extract_embed_usage(self, api_response: Any) -> Optional[Usage]:
        return Usage.from_ollama(api_response)
