"""Mock provider for tests and offline development.

Answers every prompt with the pig-latin rendering of the instructions and the
last message, shaped like an Anthropic Messages response. Streaming replays
the answer as Anthropic stream events, one text delta per word. Embeddings
are random unit vectors.
"""

import math
import random
import re
import uuid
from typing import Any

from ..options import MockOptions
from ..usage import Usage
from .anthropic import AnthropicProvider

DEFAULT_DIMENSIONS = 1536

_WORD_BOUNDARY = re.compile(r"\b")
_LEADING_CONSONANTS = re.compile(r"^([^aeiouAEIOU]+)(.*)$", re.DOTALL)


def to_pig_latin(text: str) -> str:
    if not text:
        return ""
    words = []
    for word in _WORD_BOUNDARY.split(text):
        if not re.search(r"\w", word):
            words.append(word)
        elif word[0] in "aeiouAEIOU":
            words.append(f"{word}way")
        else:
            match = _LEADING_CONSONANTS.match(word)
            consonants, rest = match.group(1), match.group(2)
            if word[0] == word[0].upper() and rest:
                words.append(f"{rest[0].upper()}{rest[1:]}{consonants.lower()}ay")
            else:
                words.append(f"{rest}{consonants}ay")
    return "".join(words)


def _content_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return " ".join(
            block["text"]
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        )
    return str(content)


def random_unit_vector(dimensions: int) -> list[float]:
    vector = [random.uniform(-1, 1) for _ in range(dimensions)]
    magnitude = math.sqrt(sum(v * v for v in vector)) or 1.0
    return [v / magnitude for v in vector]


class MockProvider(AnthropicProvider):
    name = "mock"
    options_class = MockOptions
    default_embedding_model = "mock-embedding-model"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        kwargs.setdefault("model", "mock-model")
        super().__init__(*args, **kwargs)

    def build_client(self) -> Any:
        return self

    @property
    def _json_prefill(self) -> bool:
        return False

    def api_prompt_execute(self, payload: dict[str, Any]) -> Any:
        messages = payload.get("messages") or []
        parts = [_content_text(payload.get("system")), _content_text(messages[-1].get("content") if messages else None)]
        content = " ".join(p for p in parts if p)
        answer = to_pig_latin(content)
        model = payload.get("model") or "mock-model"

        if payload.get("stream"):
            for event in self.simulate_stream(answer, model):
                self.process_stream_chunk(event)
            return None

        return {
            "id": f"mock-{uuid.uuid4().hex[:16]}",
            "type": "message",
            "role": "assistant",
            "content": [{"type": "text", "text": answer}],
            "model": model,
            "stop_reason": "end_turn",
            "usage": {"input_tokens": len(content), "output_tokens": len(answer)},
        }

    def simulate_stream(self, content: str, model: str) -> list[dict[str, Any]]:
        events: list[dict[str, Any]] = [
            {
                "type": "message_start",
                "message": {
                    "id": f"mock-{uuid.uuid4().hex[:16]}",
                    "type": "message",
                    "role": "assistant",
                    "content": [],
                    "model": model,
                },
            },
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        ]
        for i, word in enumerate(content.split(" ")):
            if not word:
                continue
            events.append(
                {
                    "type": "content_block_delta",
                    "index": 0,
                    "delta": {"type": "text_delta", "text": word if i == 0 else f" {word}"},
                }
            )
        events.append({"type": "content_block_stop", "index": 0})
        events.append({"type": "message_delta", "delta": {"stop_reason": "end_turn"}})
        events.append({"type": "message_stop"})
        return events

    def api_embed_execute(self, payload: dict[str, Any]) -> Any:
        inputs = payload["input"] if isinstance(payload["input"], list) else [payload["input"]]
        dimensions = payload.get("dimensions") or DEFAULT_DIMENSIONS
        tokens = sum(len(str(text)) for text in inputs)
        return {
            "object": "list",
            "data": [
                {"object": "embedding", "index": i, "embedding": random_unit_vector(dimensions)}
                for i, _ in enumerate(inputs)
            ],
            "model": payload.get("model") or "mock-embedding-model",
            "usage": {"prompt_tokens": tokens, "total_tokens": tokens},
        }

    def extract_embed_usage(self, api_response: Any) -> Any:
        return Usage.from_openai_embedding(api_response.get("usage"))
