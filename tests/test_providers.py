"""
Tests for the provider adapters and the multi-turn tool loop.

SDK clients are replaced with MagicMock objects returning plain dicts; the
Ollama HTTP API and one real OpenAI client are served by httpx.MockTransport.
No network access.
"""

import json
import math
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import anthropic
import httpx
import openai
import pytest
import yaml

from promptloop.config import Configuration, configure, get_configuration
from promptloop.exceptions import (
    ActionNotFound,
    ConfigurationError,
    MaxToolRoundsExceeded,
    StreamInterruptedError,
    ToolExecutionError,
    TransportError,
)
from promptloop.providers import (
    AnthropicProvider,
    MockProvider,
    OllamaProvider,
    OpenAIChatProvider,
    OpenAIResponsesProvider,
    OpenRouterProvider,
    create_provider,
)
from promptloop.providers.mock import to_pig_latin
from promptloop.rescue import RescueChain
from promptloop.responses import StreamEvent
from promptloop.retry import RetryPolicy
from promptloop.tools import ActionRegistry

ECHO_TOOL = {
    "name": "echo",
    "description": "Echo the text back",
    "parameters": {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    },
}


def echo(text: str) -> str:
    """Echo the text back"""
    return text


@pytest.fixture(autouse=True)
def isolated_configuration():
    previous = get_configuration()
    configure(Configuration(retries=False))
    yield
    configure(previous)


@pytest.fixture
def registry():
    return ActionRegistry([echo])


class Recorder:
    """Stream observer that records every notification."""

    def __init__(self):
        self.events = []
        self.chunks = []

    def __call__(self, chunk, event):
        self.events.append(event)
        self.chunks.append(chunk)

    @property
    def deltas(self):
        return [c.delta for c, e in zip(self.chunks, self.events) if e is StreamEvent.UPDATE]


def anthropic_status_error(status_code, message=None):
    request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    return anthropic.APIStatusError(
        message or f"HTTP {status_code}",
        response=httpx.Response(status_code, request=request),
        body=None,
    )


# ---------------------------------------------------------------------------
# Anthropic fixtures
# ---------------------------------------------------------------------------


def anthropic_message(content, stop_reason="end_turn", usage=None):
    return {
        "id": "msg_test",
        "type": "message",
        "role": "assistant",
        "model": "claude-sonnet-4-5",
        "content": content,
        "stop_reason": stop_reason,
        "usage": usage or {"input_tokens": 10, "output_tokens": 5},
    }


def anthropic_tool_use(call_id, text):
    return anthropic_message(
        [{"type": "tool_use", "id": call_id, "name": "echo", "input": {"text": text}}],
        stop_reason="tool_use",
    )


def anthropic_text_stream(words, usage=None):
    events = [
        {
            "type": "message_start",
            "message": {
                "id": "msg_stream",
                "type": "message",
                "role": "assistant",
                "content": [],
                "model": "claude-sonnet-4-5",
                "usage": usage or {"input_tokens": 5, "output_tokens": 1},
            },
        },
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
    ]
    for word in words:
        events.append({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": word}})
    events += [
        {"type": "content_block_stop", "index": 0},
        {"type": "message_delta", "delta": {"stop_reason": "end_turn"}, "usage": {"output_tokens": 7}},
        {"type": "message_stop"},
    ]
    return events


def anthropic_tool_stream(call_id, text):
    return [
        {
            "type": "message_start",
            "message": {"id": "msg_tool", "type": "message", "role": "assistant", "content": [], "model": "m"},
        },
        {
            "type": "content_block_start",
            "index": 0,
            "content_block": {"type": "tool_use", "id": call_id, "name": "echo", "input": {}},
        },
        {"type": "content_block_delta", "index": 0, "delta": {"type": "input_json_delta", "partial_json": '{"text":'}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "input_json_delta", "partial_json": f' "{text}"}}'}},
        {"type": "content_block_stop", "index": 0},
        {"type": "message_delta", "delta": {"stop_reason": "tool_use"}},
        {"type": "message_stop"},
    ]


def anthropic_provider(client, **kwargs):
    kwargs.setdefault("api_key", "sk-ant-test")
    kwargs.setdefault("model", "claude-sonnet-4-5")
    return AnthropicProvider(client=client, **kwargs)


# ---------------------------------------------------------------------------
# Tool loop
# ---------------------------------------------------------------------------


class TestToolLoop:
    def test_runs_tools_until_answer(self, registry):
        client = MagicMock()
        client.messages.create.side_effect = [
            anthropic_tool_use("t1", "one"),
            anthropic_tool_use("t2", "two"),
            anthropic_tool_use("t3", "three"),
            anthropic_message([{"type": "text", "text": "Done."}]),
        ]
        provider = anthropic_provider(client, action_resolver=registry.resolve)

        response = provider.prompt("Echo three times", tools=registry.schemas())

        assert client.messages.create.call_count == 4
        assert response.message.text == "Done."
        assert response.usage.total_tokens == 60
        last_payload = client.messages.create.call_args_list[-1].kwargs
        results = [
            m["content"][0]
            for m in last_payload["messages"]
            if m["role"] == "user" and isinstance(m["content"], list)
        ]
        assert [r["content"] for r in results] == ['"one"', '"two"', '"three"']
        assert [r["tool_use_id"] for r in results] == ["t1", "t2", "t3"]

    def test_tool_results_follow_the_requesting_message(self, registry):
        client = MagicMock()
        client.messages.create.side_effect = [
            anthropic_tool_use("t1", "hi"),
            anthropic_message([{"type": "text", "text": "ok"}]),
        ]
        provider = anthropic_provider(client, action_resolver=registry.resolve)
        provider.prompt("Echo hi", tools=registry.schemas())

        messages = client.messages.create.call_args_list[1].kwargs["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant", "user"]
        assert "id" not in messages[1]
        assert "usage" not in messages[1]
        assert messages[2]["content"] == [{"type": "tool_result", "tool_use_id": "t1", "content": '"hi"'}]

    def test_max_tool_rounds(self, registry):
        client = MagicMock()
        client.messages.create.side_effect = lambda **_: anthropic_tool_use("t", "again")
        provider = anthropic_provider(client, action_resolver=registry.resolve, max_tool_rounds=2)

        with pytest.raises(MaxToolRoundsExceeded) as exc_info:
            provider.prompt("loop forever", tools=registry.schemas())
        assert exc_info.value.rounds == 3
        assert client.messages.create.call_count == 3

    def test_max_tool_rounds_per_call(self, registry):
        client = MagicMock()
        client.messages.create.side_effect = lambda **_: anthropic_tool_use("t", "again")
        provider = anthropic_provider(client, action_resolver=registry.resolve)

        with pytest.raises(MaxToolRoundsExceeded) as exc_info:
            provider.prompt("loop forever", tools=registry.schemas(), max_tool_rounds=1)

        assert exc_info.value.rounds == 2
        assert client.messages.create.call_count == 2
        sent = client.messages.create.call_args.kwargs
        assert "max_tool_rounds" not in sent
        assert "extra_body" not in sent
        assert provider.max_tool_rounds == 10

    def test_forced_tool_choice_is_cleared_after_use(self, registry):
        client = MagicMock()
        client.messages.create.side_effect = [
            anthropic_tool_use("t1", "hi"),
            anthropic_message([{"type": "text", "text": "ok"}]),
        ]
        provider = anthropic_provider(client, action_resolver=registry.resolve)
        provider.prompt("Echo hi", tools=registry.schemas(), tool_choice="required")

        first, second = client.messages.create.call_args_list
        assert first.kwargs["tool_choice"] == {"type": "any"}
        assert "tool_choice" not in second.kwargs

    def test_unknown_action_raises(self, registry):
        client = MagicMock()
        client.messages.create.return_value = anthropic_message(
            [{"type": "tool_use", "id": "t1", "name": "missing", "input": {}}], stop_reason="tool_use"
        )
        provider = anthropic_provider(client, action_resolver=registry.resolve)
        with pytest.raises(ActionNotFound) as exc_info:
            provider.prompt("call something")
        assert exc_info.value.call_id == "t1"

    def test_rescued_tool_error_becomes_result(self):
        def divide(a: int, b: int) -> float:
            return a / b

        rescue = RescueChain()
        rescue.register(ZeroDivisionError, lambda e: {"error": "division by zero"})
        client = MagicMock()
        client.messages.create.side_effect = [
            anthropic_message(
                [{"type": "tool_use", "id": "t1", "name": "divide", "input": {"a": 1, "b": 0}}],
                stop_reason="tool_use",
            ),
            anthropic_message([{"type": "text", "text": "Cannot divide."}]),
        ]
        provider = anthropic_provider(
            client, action_resolver=ActionRegistry([divide]).resolve, rescue=rescue
        )

        response = provider.prompt("1/0")
        tool_result = client.messages.create.call_args_list[1].kwargs["messages"][-1]["content"][0]
        assert tool_result["content"] == '{"error": "division by zero"}'
        assert response.message.text == "Cannot divide."

    def test_unrescued_tool_error_propagates(self):
        def boom() -> str:
            raise RuntimeError("kaput")

        client = MagicMock()
        client.messages.create.return_value = anthropic_message(
            [{"type": "tool_use", "id": "t1", "name": "boom", "input": {}}], stop_reason="tool_use"
        )
        provider = anthropic_provider(client, action_resolver=ActionRegistry([boom]).resolve)
        with pytest.raises(ToolExecutionError) as exc_info:
            provider.prompt("explode")
        assert isinstance(exc_info.value.__cause__, RuntimeError)


# ---------------------------------------------------------------------------
# Transport errors and retries
# ---------------------------------------------------------------------------


class TestTransportErrors:
    def test_retryable_errors_are_retried(self):
        client = MagicMock()
        client.messages.create.side_effect = [
            anthropic_status_error(503),
            anthropic_message([{"type": "text", "text": "recovered"}]),
        ]
        provider = anthropic_provider(client, retry_policy=RetryPolicy(max_retries=2, base_delay_ms=0))
        assert provider.prompt("hi").message.text == "recovered"
        assert client.messages.create.call_count == 2

    def test_client_errors_are_not_retried(self):
        client = MagicMock()
        client.messages.create.side_effect = anthropic_status_error(400)
        provider = anthropic_provider(client, retry_policy=RetryPolicy(max_retries=2, base_delay_ms=0))
        with pytest.raises(TransportError) as exc_info:
            provider.prompt("hi")
        assert exc_info.value.status_code == 400
        assert exc_info.value.provider == "anthropic"
        assert client.messages.create.call_count == 1

    def test_error_message_hides_api_key(self):
        client = MagicMock()
        client.messages.create.side_effect = anthropic_status_error(401, "invalid x-api-key sk-ant-test")
        provider = anthropic_provider(client)
        with pytest.raises(TransportError) as exc_info:
            provider.prompt("hi")
        assert "sk-ant-test" not in str(exc_info.value)
        assert "<ANTHROPIC_API_KEY>" in str(exc_info.value)

    def test_rescue_handler_claims_transport_error(self):
        rescue = RescueChain()
        rescue.register(TransportError, lambda e: "fallback")
        client = MagicMock()
        client.messages.create.side_effect = anthropic_status_error(500)
        provider = anthropic_provider(client, rescue=rescue)
        assert provider.prompt("hi") == "fallback"

    def test_configuration_errors_happen_before_the_call(self):
        client = MagicMock()
        provider = anthropic_provider(client)
        with pytest.raises(ConfigurationError):
            provider.prompt("hi", temperature=5)
        client.messages.create.assert_not_called()

    def test_network_errors_are_transport_errors(self):
        client = MagicMock()
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        client.messages.create.side_effect = anthropic.APIConnectionError(request=request)
        provider = anthropic_provider(client)
        with pytest.raises(TransportError) as exc_info:
            provider.prompt("hi")
        assert exc_info.value.retryable is True

    @pytest.mark.parametrize("error", [TypeError("unexpected keyword argument 'models'"), KeyError("index")])
    def test_programming_errors_propagate_unchanged(self, error):
        client = MagicMock()
        client.messages.create.side_effect = error
        provider = anthropic_provider(client, retry_policy=RetryPolicy(max_retries=2, base_delay_ms=0))
        with pytest.raises(type(error)) as exc_info:
            provider.prompt("hi")
        assert not isinstance(exc_info.value, TransportError)
        assert client.messages.create.call_count == 1


class TestConcurrentGenerations:
    def test_calls_on_one_provider_keep_separate_conversations(self):
        both_in_flight = threading.Barrier(2, timeout=5)

        def create(**payload):
            text = payload["messages"][-1]["content"]
            both_in_flight.wait()
            return anthropic_message([{"type": "text", "text": f"reply to {text}"}])

        client = MagicMock()
        client.messages.create.side_effect = create
        provider = anthropic_provider(client)

        with ThreadPoolExecutor(max_workers=2) as pool:
            first = pool.submit(provider.prompt, "a")
            second = pool.submit(provider.prompt, "b")
            responses = [first.result(), second.result()]

        assert [[m.text for m in r.messages] for r in responses] == [
            ["a", "reply to a"],
            ["b", "reply to b"],
        ]
        assert [r.usage.total_tokens for r in responses] == [15, 15]

    def test_streams_on_one_provider_keep_separate_buffers(self, registry):
        both_in_flight = threading.Barrier(2, timeout=5)

        def create(**payload):
            text = payload["messages"][-1]["content"]
            both_in_flight.wait()
            if isinstance(text, list):
                return iter(anthropic_text_stream(["Done"]))
            return iter(anthropic_tool_stream(f"t_{text}", text))

        client = MagicMock()
        client.messages.create.side_effect = create
        provider = anthropic_provider(client, action_resolver=registry.resolve)

        with ThreadPoolExecutor(max_workers=2) as pool:
            futures = [
                pool.submit(provider.prompt, word, tools=registry.schemas(), stream=True)
                for word in ("left", "right")
            ]
            responses = [f.result() for f in futures]

        results = {}
        for call in client.messages.create.call_args_list:
            last = call.kwargs["messages"][-1]
            if isinstance(last["content"], list):
                block = last["content"][0]
                results[block["tool_use_id"]] = block["content"]
        assert results == {"t_left": '"left"', "t_right": '"right"'}
        assert [r.message.text for r in responses] == ["Done", "Done"]


# ---------------------------------------------------------------------------
# Anthropic specifics
# ---------------------------------------------------------------------------


class TestAnthropicProvider:
    def test_json_prefill(self):
        client = MagicMock()
        client.messages.create.return_value = anthropic_message([{"type": "text", "text": '"a": 1}'}])
        provider = anthropic_provider(client)

        response = provider.prompt("Give me JSON", response_format="json_object")

        sent = client.messages.create.call_args.kwargs["messages"]
        assert sent[-1] == {"role": "assistant", "content": "Here is the JSON requested:\n{"}
        assert response.message.content == {"a": 1}
        assert response.message.content_type == "application/json"
        assert all("JSON requested" not in m.text for m in response.messages)

    def test_mcp_servers_use_beta_endpoint(self):
        client = MagicMock()
        client.beta.messages.create.return_value = anthropic_message([{"type": "text", "text": "ok"}])
        provider = anthropic_provider(client)
        provider.prompt("hi", mcps=[{"name": "docs", "url": "https://mcp.example.com"}])
        client.beta.messages.create.assert_called_once()
        client.messages.create.assert_not_called()

    def test_stream_accumulates_text_and_usage(self):
        client = MagicMock()
        client.messages.create.return_value = iter(anthropic_text_stream(["Hel", "lo"]))
        recorder = Recorder()
        provider = anthropic_provider(client, stream_observer=recorder)

        response = provider.prompt("hi", stream=True)

        assert response.message.text == "Hello"
        assert response.usage.input_tokens == 5
        assert response.usage.output_tokens == 7
        assert recorder.events[0] is StreamEvent.OPEN
        assert recorder.events[-1] is StreamEvent.CLOSE
        assert recorder.deltas == [None, "Hel", "lo"]
        assert recorder.chunks[-1].is_final
        assert recorder.chunks[-1].message.text == "Hello"

    def test_stream_with_tools_opens_and_closes_once(self, registry):
        client = MagicMock()
        client.messages.create.side_effect = [
            iter(anthropic_tool_stream("t1", "hi")),
            iter(anthropic_text_stream(["Done"])),
        ]
        recorder = Recorder()
        provider = anthropic_provider(client, action_resolver=registry.resolve, stream_observer=recorder)

        response = provider.prompt("Echo hi", tools=registry.schemas(), stream=True)

        assert response.message.text == "Done"
        assert recorder.events.count(StreamEvent.OPEN) == 1
        assert recorder.events.count(StreamEvent.CLOSE) == 1
        second = client.messages.create.call_args_list[1].kwargs["messages"]
        assert second[1]["content"] == [{"type": "tool_use", "id": "t1", "name": "echo", "input": {"text": "hi"}}]

    def test_stream_interrupted_keeps_partial_message(self):
        def broken_stream():
            yield from anthropic_text_stream(["Hel"])[:3]
            raise ConnectionError("connection reset")

        client = MagicMock()
        client.messages.create.return_value = broken_stream()
        recorder = Recorder()
        provider = anthropic_provider(client, stream_observer=recorder)

        with pytest.raises(StreamInterruptedError) as exc_info:
            provider.prompt("hi", stream=True)
        assert exc_info.value.partial_message.text == "Hel"
        assert StreamEvent.CLOSE not in recorder.events

    def test_observer_failure_propagates(self):
        def observer(chunk, event):
            if event is StreamEvent.UPDATE:
                raise ValueError("observer broke")

        client = MagicMock()
        client.messages.create.return_value = iter(anthropic_text_stream(["Hi"]))
        provider = anthropic_provider(client, stream_observer=observer)
        with pytest.raises(ValueError, match="observer broke"):
            provider.prompt("hi", stream=True)


# ---------------------------------------------------------------------------
# OpenAI Chat Completions
# ---------------------------------------------------------------------------


def chat_completion(message, usage=None):
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "choices": [{"index": 0, "message": message, "finish_reason": "stop"}],
        "usage": usage or {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
    }


class TestOpenAIChatProvider:
    def test_tool_loop(self, registry):
        client = MagicMock()
        client.chat.completions.create.side_effect = [
            chat_completion(
                {
                    "role": "assistant",
                    "content": None,
                    "tool_calls": [
                        {
                            "id": "call_1",
                            "type": "function",
                            "function": {"name": "echo", "arguments": '{"text": "hi"}'},
                        }
                    ],
                }
            ),
            chat_completion({"role": "assistant", "content": "Done."}),
        ]
        provider = OpenAIChatProvider(
            client=client, api_key="sk-test", model="gpt-4o-mini", action_resolver=registry.resolve
        )

        response = provider.prompt("Echo hi", tools=registry.schemas(), instructions="Use tools.")

        first, second = client.chat.completions.create.call_args_list
        assert first.kwargs["messages"][0] == {"role": "developer", "content": "Use tools."}
        assert first.kwargs["tools"][0]["function"]["name"] == "echo"
        assert second.kwargs["messages"][-1] == {"role": "tool", "tool_call_id": "call_1", "content": '"hi"'}
        assert "content" not in second.kwargs["messages"][-2]
        assert response.message.text == "Done."
        assert response.usage.total_tokens == 30

    def test_stream(self):
        chunks = [
            {"choices": [{"index": 0, "delta": {"role": "assistant", "content": ""}}]},
            {"choices": [{"index": 0, "delta": {"content": "Hel"}}]},
            {"choices": [{"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}]},
            {"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}},
        ]
        client = MagicMock()
        client.chat.completions.create.return_value = iter(chunks)
        recorder = Recorder()
        provider = OpenAIChatProvider(client=client, api_key="sk-test", model="gpt-4o-mini", stream_observer=recorder)

        response = provider.prompt("hi", stream=True)

        assert client.chat.completions.create.call_args.kwargs["stream_options"] == {"include_usage": True}
        assert response.message.text == "Hello"
        assert response.usage.total_tokens == 5
        assert recorder.deltas == ["Hel", "lo"]
        assert recorder.events.count(StreamEvent.CLOSE) == 1

    def test_streamed_tool_call_arguments_are_assembled(self, registry):
        tool_chunks = [
            {
                "choices": [
                    {
                        "index": 0,
                        "delta": {
                            "role": "assistant",
                            "tool_calls": [
                                {"index": 0, "id": "call_1", "type": "function", "function": {"name": "echo", "arguments": ""}}
                            ],
                        },
                    }
                ]
            },
            {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": '{"text"'}}]}}]},
            {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": ': "hi"}'}}]}}]},
        ]
        text_chunks = [{"choices": [{"index": 0, "delta": {"role": "assistant", "content": "ok"}}]}]
        client = MagicMock()
        client.chat.completions.create.side_effect = [iter(tool_chunks), iter(text_chunks)]
        provider = OpenAIChatProvider(
            client=client, api_key="sk-test", model="gpt-4o-mini", action_resolver=registry.resolve
        )

        response = provider.prompt("Echo hi", tools=registry.schemas(), stream=True)

        second = client.chat.completions.create.call_args_list[1].kwargs["messages"]
        assert second[1]["tool_calls"][0] == {
            "id": "call_1",
            "type": "function",
            "function": {"name": "echo", "arguments": '{"text": "hi"}'},
        }
        assert response.message.text == "ok"

    def test_embeddings(self):
        client = MagicMock()
        client.embeddings.create.return_value = {
            "object": "list",
            "data": [{"object": "embedding", "index": 0, "embedding": [0.1, 0.2]}],
            "usage": {"prompt_tokens": 2, "total_tokens": 2},
        }
        provider = OpenAIChatProvider(client=client, api_key="sk-test", model="gpt-4o-mini")

        response = provider.embed("hello")

        assert client.embeddings.create.call_args.kwargs == {"model": "text-embedding-3-small", "input": "hello"}
        assert response.embeddings == [[0.1, 0.2]]
        assert response.usage.input_tokens == 2


class TestOpenRouterProvider:
    def test_extras_and_headers(self):
        client = MagicMock()
        client.chat.completions.create.return_value = chat_completion({"role": "assistant", "content": "hi"})
        provider = OpenRouterProvider(
            client=client, api_key="sk-or", model="openai/gpt-4o", app_name="Demo", site_url="https://demo.test"
        )

        provider.prompt("hi", models=["openai/gpt-4o", "anthropic/claude-sonnet-4-5"], response_format="json_object")

        kwargs = client.chat.completions.create.call_args.kwargs
        assert "models" not in kwargs
        assert kwargs["extra_body"] == {
            "models": ["openai/gpt-4o", "anthropic/claude-sonnet-4-5"],
            "provider": {"require_parameters": True},
        }
        assert kwargs["response_format"] == {"type": "json_object"}
        assert provider.options.client_kwargs()["default_headers"]["X-Title"] == "Demo"

    def test_openai_sdk_sends_extensions_in_request_body(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            completion = chat_completion({"role": "assistant", "content": '{"ok": true}'})
            return httpx.Response(200, json=dict(completion, created=0, model="openai/gpt-4o"))

        client = openai.OpenAI(
            api_key="sk-or-test-key",
            base_url="https://openrouter.test/api/v1",
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        provider = OpenRouterProvider(client=client, api_key="sk-or-test-key", model="openai/gpt-4o")

        response = provider.prompt("hi", models=["a/b"], top_k=40, response_format="json_object")

        body = bodies[0]
        assert body["model"] == "openai/gpt-4o"
        assert body["models"] == ["a/b"]
        assert body["top_k"] == 40
        assert body["provider"] == {"require_parameters": True}
        assert body["response_format"] == {"type": "json_object"}
        assert response.message.content == {"ok": True}


# ---------------------------------------------------------------------------
# OpenAI Responses
# ---------------------------------------------------------------------------


class TestOpenAIResponsesProvider:
    def test_tool_loop(self, registry):
        client = MagicMock()
        client.responses.create.side_effect = [
            {
                "id": "resp_1",
                "output": [
                    {
                        "type": "function_call",
                        "id": "fc_1",
                        "call_id": "call_1",
                        "name": "echo",
                        "arguments": '{"text": "hi"}',
                        "status": "completed",
                    }
                ],
                "usage": {"input_tokens": 10, "output_tokens": 5, "total_tokens": 15},
            },
            {
                "id": "resp_2",
                "output": [
                    {
                        "type": "message",
                        "id": "msg_1",
                        "role": "assistant",
                        "status": "completed",
                        "content": [{"type": "output_text", "text": "Done.", "annotations": []}],
                    }
                ],
                "usage": {"input_tokens": 20, "output_tokens": 2, "total_tokens": 22},
            },
        ]
        provider = OpenAIResponsesProvider(
            client=client, api_key="sk-test", model="gpt-4o", action_resolver=registry.resolve
        )

        response = provider.prompt("Echo hi", tools=registry.schemas())

        first, second = client.responses.create.call_args_list
        assert first.kwargs["input"] == "Echo hi"
        assert first.kwargs["tools"][0] == {"type": "function", **ECHO_TOOL}
        assert second.kwargs["input"][1] == {
            "type": "function_call",
            "id": "fc_1",
            "call_id": "call_1",
            "name": "echo",
            "arguments": '{"text": "hi"}',
        }
        assert second.kwargs["input"][2] == {"type": "function_call_output", "call_id": "call_1", "output": '"hi"'}
        assert response.message.text == "Done."
        assert response.usage.total_tokens == 37

    def test_stream(self):
        message = {"type": "message", "id": "msg_1", "role": "assistant", "content": []}
        events = [
            {"type": "response.created", "response": {"id": "resp_1"}},
            {"type": "response.output_item.added", "output_index": 0, "item": message},
            {"type": "response.output_text.delta", "item_id": "msg_1", "delta": "Hel"},
            {"type": "response.output_text.delta", "item_id": "msg_1", "delta": "lo"},
            {"type": "response.output_text.done", "item_id": "msg_1", "text": "Hello"},
            {
                "type": "response.output_item.done",
                "item": {
                    "type": "message",
                    "id": "msg_1",
                    "role": "assistant",
                    "status": "completed",
                    "content": [{"type": "output_text", "text": "Hello", "annotations": []}],
                },
            },
            {
                "type": "response.completed",
                "response": {"id": "resp_1", "usage": {"input_tokens": 4, "output_tokens": 1, "total_tokens": 5}},
            },
        ]
        client = MagicMock()
        client.responses.create.return_value = iter(events)
        recorder = Recorder()
        provider = OpenAIResponsesProvider(client=client, api_key="sk-test", model="gpt-4o", stream_observer=recorder)

        response = provider.prompt("hi", stream=True)

        assert response.message.text == "Hello"
        assert response.usage.total_tokens == 5
        assert recorder.deltas == ["Hel", "lo", None]
        assert recorder.events.count(StreamEvent.CLOSE) == 1

    def test_streamed_function_call_runs_tool_and_resubmits(self):
        function_call = {
            "type": "function_call",
            "id": "fc_1",
            "call_id": "call_1",
            "name": "echo",
            "arguments": '{"text": "hi"}',
            "status": "completed",
        }
        tool_turn = [
            {"type": "response.created", "response": {"id": "resp_1"}},
            {"type": "response.output_item.added", "item": dict(function_call, arguments="", status="in_progress")},
            {"type": "response.function_call_arguments.delta", "item_id": "fc_1", "delta": '{"text": "hi"}'},
            {"type": "response.function_call_arguments.done", "item_id": "fc_1", "arguments": '{"text": "hi"}'},
            {"type": "response.output_item.done", "item": function_call},
            {
                "type": "response.completed",
                "response": {"id": "resp_1", "usage": {"input_tokens": 8, "output_tokens": 4, "total_tokens": 12}},
            },
        ]
        message = {"type": "message", "id": "msg_2", "role": "assistant", "content": []}
        text_turn = [
            {"type": "response.output_item.added", "item": message},
            {"type": "response.output_text.delta", "item_id": "msg_2", "delta": "Done."},
            {
                "type": "response.output_item.done",
                "item": dict(message, status="completed", content=[{"type": "output_text", "text": "Done."}]),
            },
            {
                "type": "response.completed",
                "response": {"id": "resp_2", "usage": {"input_tokens": 20, "output_tokens": 2, "total_tokens": 22}},
            },
        ]
        calls = []

        def resolve(name, arguments):
            calls.append((name, arguments))
            return arguments["text"]

        client = MagicMock()
        client.responses.create.side_effect = [iter(tool_turn), iter(text_turn)]
        recorder = Recorder()
        provider = OpenAIResponsesProvider(
            client=client, api_key="sk-test", model="gpt-4o", action_resolver=resolve, stream_observer=recorder
        )

        response = provider.prompt("Echo hi", tools=[ECHO_TOOL], stream=True)

        assert calls == [("echo", {"text": "hi"})]
        second_input = client.responses.create.call_args_list[1].kwargs["input"]
        assert {"type": "function_call_output", "call_id": "call_1", "output": '"hi"'} in second_input
        assert response.message.text == "Done."
        assert response.usage.total_tokens == 34
        assert recorder.events.count(StreamEvent.OPEN) == 1
        assert recorder.events.count(StreamEvent.CLOSE) == 1
        assert recorder.events[-1] is StreamEvent.CLOSE

    def test_unknown_stream_event(self):
        client = MagicMock()
        client.responses.create.return_value = iter([{"type": "response.surprise"}])
        provider = OpenAIResponsesProvider(client=client, api_key="sk-test", model="gpt-4o")
        with pytest.raises(Exception, match="Unexpected Responses stream event"):
            provider.prompt("hi", stream=True)


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------


def ollama_client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler), base_url="http://ollama.test")


class TestOllamaProvider:
    def test_chat_with_tools(self, registry):
        requests = []
        replies = [
            {
                "model": "llama3",
                "message": {
                    "role": "assistant",
                    "content": "",
                    "tool_calls": [{"function": {"name": "echo", "arguments": {"text": "hi"}}}],
                },
                "done": True,
                "prompt_eval_count": 10,
                "eval_count": 4,
            },
            {
                "model": "llama3",
                "message": {"role": "assistant", "content": "Done."},
                "done": True,
                "prompt_eval_count": 20,
                "eval_count": 2,
                "total_duration": 2_000_000_000,
            },
        ]

        def handler(request):
            assert request.url.path == "/api/chat"
            requests.append(json.loads(request.content))
            return httpx.Response(200, json=replies[len(requests) - 1])

        provider = OllamaProvider(client=ollama_client(handler), model="llama3", action_resolver=registry.resolve)
        response = provider.prompt("Echo hi", tools=registry.schemas(), temperature=0.1)

        assert requests[0]["stream"] is False
        assert requests[0]["options"] == {"temperature": 0.1}
        assert requests[1]["messages"][-1] == {"role": "tool", "content": '"hi"', "tool_name": "echo"}
        assert response.message.text == "Done."
        assert response.usage.total_tokens == 36

    def test_stream(self):
        lines = [
            {"message": {"role": "assistant", "content": "Hel"}, "done": False},
            {"message": {"role": "assistant", "content": "lo"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True, "prompt_eval_count": 3, "eval_count": 2},
        ]
        body = "\n".join(json.dumps(line) for line in lines).encode()

        def handler(request):
            return httpx.Response(200, content=body)

        recorder = Recorder()
        provider = OllamaProvider(client=ollama_client(handler), model="llama3", stream_observer=recorder)
        response = provider.prompt("hi", stream=True)

        assert response.message.text == "Hello"
        assert response.usage.total_tokens == 5
        assert recorder.deltas == ["Hel", "lo"]

    def test_http_error(self):
        def handler(request):
            return httpx.Response(503, json={"error": "model loading"})

        provider = OllamaProvider(client=ollama_client(handler), model="llama3")
        with pytest.raises(TransportError) as exc_info:
            provider.prompt("hi")
        assert exc_info.value.status_code == 503
        assert exc_info.value.retryable is True

    def test_embed(self):
        def handler(request):
            assert request.url.path == "/api/embed"
            assert json.loads(request.content) == {"model": "nomic-embed-text", "input": ["a", "b"]}
            return httpx.Response(200, json={"model": "nomic-embed-text", "embeddings": [[0.1], [0.2]], "prompt_eval_count": 2})

        provider = OllamaProvider(client=ollama_client(handler), model="llama3")
        response = provider.embed(["a", "b"])
        assert response.embeddings == [[0.1], [0.2]]
        assert response.usage.input_tokens == 2


# ---------------------------------------------------------------------------
# Mock
# ---------------------------------------------------------------------------


class TestPigLatin:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("Hello world", "Ellohay orldway"),
            ("apple", "appleway"),
            ("string", "ingstray"),
            ("Hi, there!", "Ihay, erethay!"),
            ("", ""),
        ],
    )
    def test_translation(self, text, expected):
        assert to_pig_latin(text) == expected


class TestMockProvider:
    def test_prompt(self):
        provider = MockProvider()
        response = provider.prompt("Hello world")
        assert response.message.text == "Ellohay orldway"
        assert response.usage.input_tokens == len("Hello world")
        assert response.usage.output_tokens == len("Ellohay orldway")

    def test_instructions_are_included(self):
        response = MockProvider().prompt("world", instructions="Hello")
        assert response.message.text == "Ellohay orldway"

    def test_stream(self):
        recorder = Recorder()
        provider = MockProvider(stream_observer=recorder)
        response = provider.prompt("Hello world", stream=True)
        assert response.message.text == "Ellohay orldway"
        assert recorder.deltas == [None, "Ellohay", " orldway"]
        assert recorder.events[0] is StreamEvent.OPEN
        assert recorder.events.count(StreamEvent.CLOSE) == 1

    @pytest.mark.parametrize("failing_event", [StreamEvent.UPDATE, StreamEvent.CLOSE])
    def test_observer_failures_go_through_rescue(self, failing_event):
        class ObserverError(Exception):
            pass

        def observer(chunk, event):
            if event is failing_event:
                raise ObserverError(event.value)

        rescue = RescueChain()
        rescue.register(ObserverError, lambda e: "rescued")
        provider = MockProvider(rescue=rescue, stream_observer=observer)

        assert provider.prompt("hello there", stream=True) == "rescued"

    def test_unrescued_close_observer_failure_propagates(self):
        def observer(chunk, event):
            if event is StreamEvent.CLOSE:
                raise ValueError("close failed")

        provider = MockProvider(stream_observer=observer)
        with pytest.raises(ValueError, match="close failed"):
            provider.prompt("hello there", stream=True)

    def test_embed_returns_unit_vectors(self):
        response = MockProvider().embed(["a", "bb"], dimensions=8)
        assert len(response.embeddings) == 2
        for vector in response.embeddings:
            assert len(vector) == 8
            assert math.isclose(sum(v * v for v in vector), 1.0, rel_tol=1e-9)
        assert response.usage.input_tokens == 3


# ---------------------------------------------------------------------------
# Request preview
# ---------------------------------------------------------------------------


class TestPreviewPrompt:
    def test_anthropic_preview(self, registry):
        client = MagicMock()
        provider = anthropic_provider(client)

        preview = provider.preview_prompt(
            "What is 2 + 3?", instructions="You are a calculator.", tools=registry.schemas(), temperature=0.5
        )

        client.messages.create.assert_not_called()
        header, instructions, messages, tools = preview.split("\n---\n")
        assert yaml.safe_load(header) == {"model": "claude-sonnet-4-5", "max_tokens": 4096, "temperature": 0.5}
        assert instructions == "## Instructions\nYou are a calculator."
        assert messages == "## Messages\n\n### Message 1 (User)\nWhat is 2 + 3?"
        assert tools.startswith("## Tools\n\n### echo\n**Description:** Echo the text back\n")
        assert '"required": [\n    "text"\n  ]' in tools

    def test_chat_preview_keeps_developer_message(self):
        client = MagicMock()
        provider = OpenAIChatProvider(client=client, api_key="sk-test", model="gpt-4o-mini")

        preview = provider.preview_prompt(["Hi", {"role": "assistant", "content": "Hello"}, "Bye"], instructions="Be brief.")

        client.chat.completions.create.assert_not_called()
        assert "## Instructions" not in preview
        assert "### Message 1 (Developer)\nBe brief." in preview
        assert "### Message 2 (User)\nHi" in preview
        assert "### Message 3 (Assistant)\nHello" in preview
        assert "## Tools" not in preview

    def test_responses_preview_uses_instructions_field(self):
        client = MagicMock()
        provider = OpenAIResponsesProvider(client=client, api_key="sk-test", model="gpt-4o")

        preview = provider.preview_prompt("Hi", instructions="Be brief.")

        client.responses.create.assert_not_called()
        assert preview.startswith("model: gpt-4o\n---\n## Instructions\nBe brief.")
        assert preview.endswith("## Messages\n\n### Message 1 (User)\nHi")


# ---------------------------------------------------------------------------
# Provider selection
# ---------------------------------------------------------------------------


class TestCreateProvider:
    def test_inferred_from_model(self):
        assert isinstance(create_provider(model="claude-sonnet-4-5", api_key="k"), AnthropicProvider)
        assert isinstance(create_provider(model="mock-model"), MockProvider)
        assert isinstance(create_provider(model="meta-llama/llama-3", api_key="k"), OpenRouterProvider)
        assert isinstance(create_provider(model="gpt-4o", api_key="k"), OpenAIResponsesProvider)

    def test_openai_chat_api_version(self):
        provider = create_provider("openai", api_key="k", model="gpt-4o", api_version="chat")
        assert isinstance(provider, OpenAIChatProvider)
        assert "api_version" not in provider.params

    def test_named_configuration(self):
        configure(Configuration(retries=False, providers={"fast": {"service": "mock", "model": "mock-fast"}}))
        provider = create_provider("fast")
        assert isinstance(provider, MockProvider)
        assert provider.params["model"] == "mock-fast"

    def test_unknown_provider(self):
        with pytest.raises(ConfigurationError) as exc_info:
            create_provider("nope")
        assert exc_info.value.field == "service"

    def test_name_or_model_required(self):
        with pytest.raises(ConfigurationError):
            create_provider()

    def test_credentials_checked_at_construction(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.delenv("ANTHROPIC_ACCESS_TOKEN", raising=False)
        with pytest.raises(ConfigurationError):
            create_provider("anthropic", model="claude-sonnet-4-5")
