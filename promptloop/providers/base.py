"""
PromptLoop - Base provider and the tool-calling loop.

A provider turns common-format prompt parameters into its native request,
sends it, parses the reply, runs any tool calls the model asked for and
resubmits until the model answers without requesting tools.

Subclasses supply the provider-specific pieces:

- ``build_client`` / ``api_prompt_execute`` / ``api_embed_execute``: the
  transport call.
- ``process_stream_chunk``: the stream state machine for one event.
- ``extract_messages`` / ``extract_usage`` / ``extract_function_calls``:
  response parsing.
- ``tool_result_messages``: native messages carrying tool results.
- ``message_to_common`` / ``messages_to_common``: conversion back to
  :class:`~promptloop.messages.Message`.
- ``reset_state``: per-generation buffers of the stream state machine.

A provider instance is configuration: client, options, handlers. Every
``prompt()`` call runs on a shallow copy holding that call's conversation,
so one provider can serve concurrent generations.
"""

import copy
import dataclasses
import logging
from typing import Any, Callable, ClassVar, Optional, Union

from ..config import get_configuration, merge_layers
from ..exceptions import (
    ConfigurationError,
    MaxToolRoundsExceeded,
    StreamInterruptedError,
    ToolExecutionError,
    ActionNotFound,
    TransformError,
)
from ..messages import Message, Prompt
from ..options import ProviderOptions, sanitize_credentials
from ..preview import render_markdown_preview
from ..rescue import RescueChain
from ..responses import EmbedResponse, PromptResponse, StreamChunk, StreamEvent
from ..retry import RetryPolicy, run_with_retries
from ..transforms._common import dump_result, normalize_response_format
from ..transforms.embedding import EmbeddingRequest, embedding_data
from ..usage import Usage
from ._errors import TRANSPORT_ERRORS, wrap_transport_error

logger = logging.getLogger("promptloop.providers")

StreamObserver = Callable[[StreamChunk, StreamEvent], None]
ActionResolver = Callable[[str, dict[str, Any]], Any]

JSON_CONTENT_TYPE = "application/json"

EMBED_KEYS = ("input", "dimensions", "encoding_format", "user", "truncate", "keep_alive")


class BaseProvider:
    """Shared request lifecycle for every provider.

    Args:
        client: Pre-built SDK or HTTP client. Built lazily from the options
            when omitted.
        action_resolver: ``resolve(name, arguments)`` used to run tools.
        rescue: Exception handler chain for tool and transport errors.
        stream_observer: ``(chunk, event)`` callback for streamed output.
        retry_policy: Retry policy, or a callable wrapping the provider call.
            Defaults to the global configuration.
        max_tool_rounds: Tool rounds allowed before
            :class:`MaxToolRoundsExceeded` is raised.
        **params: Client options (``api_key``, ``base_url``, ...) and default
            request parameters (``model``, ``temperature``, ...), layered on
            top of the global configuration for this provider.
    """

    name: ClassVar[str] = "base"
    options_class: ClassVar[type] = ProviderOptions
    request_class: ClassVar[Any] = None
    embed_request_class: ClassVar[Any] = EmbeddingRequest
    default_embedding_model: ClassVar[Optional[str]] = None

    def __init__(
        self,
        client: Any = None,
        action_resolver: Optional[ActionResolver] = None,
        rescue: Optional[RescueChain] = None,
        stream_observer: Optional[StreamObserver] = None,
        retry_policy: Union[RetryPolicy, Callable[..., Any], None] = None,
        max_tool_rounds: Optional[int] = None,
        **params: Any,
    ) -> None:
        config = get_configuration()
        settings = config.provider_config(self.name)
        for key in ("service", "api_version"):
            settings.pop(key, None)
        merged = merge_layers(settings, params)

        self.options, self.params = self.options_class.extract(merged)
        self._client = client
        self.action_resolver = action_resolver
        self.rescue = rescue if rescue is not None else RescueChain()
        self.stream_observer = stream_observer
        self.retry_policy = (
            retry_policy
            if retry_policy is not None
            else RetryPolicy.from_config(config.retries, config.retries_count, config.retries_on)
        )
        self.max_tool_rounds = self.params.pop("max_tool_rounds", None) or max_tool_rounds or config.max_tool_rounds
        self.reset_state()

    def reset_state(self) -> None:
        """Clear the state of one generation."""
        self.request: Any = None
        self.message_stack: list[dict[str, Any]] = []
        self.usages: list[Usage] = []
        self.context: dict[str, Any] = {}
        self.response_format: Optional[dict[str, Any]] = None
        self.raw_request: Optional[dict[str, Any]] = None
        self.raw_response: Any = None
        self.streaming = False
        self._stream_opened = False
        self._stream_closed = False
        self._chunks_delivered = 0
        self._observer_failure: Optional[BaseException] = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(options={self.options!r})"

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = self.build_client()
        return self._client

    def build_client(self) -> Any:
        raise NotImplementedError

    def transport_errors(self) -> tuple:
        """Exception types that mean the provider call failed.

        They become :class:`TransportError`; anything else is a bug and
        propagates unchanged.
        """
        return TRANSPORT_ERRORS

    def sdk_arguments(self, payload: dict[str, Any]) -> dict[str, Any]:
        """SDK keyword arguments for ``payload``.

        Fields the SDK has no parameter for are sent in ``extra_body``.
        """
        passthrough = self.request.extra_body_keys()
        kwargs = {k: v for k, v in payload.items() if k not in passthrough}
        extra_body = {k: v for k, v in payload.items() if k in passthrough}
        if extra_body:
            kwargs["extra_body"] = extra_body
        return kwargs

    # ------------------------------------------------------------------
    # Prompt generation
    # ------------------------------------------------------------------

    def prompt(self, prompt: Any = None, **params: Any) -> Any:
        """Run a prompt to completion, executing requested tools along the way.

        Args:
            prompt: A :class:`Prompt`, a message string or a list of messages.
            **params: Request parameters for this call; they override the
                provider defaults. ``max_tool_rounds`` limits this call only.

        Returns:
            A :class:`PromptResponse`, or the return value of a rescue handler
            that claimed a transport or stream callback error.

        Raises:
            ConfigurationError: For invalid options, before any network call.
            TransformError: For input that cannot be mapped to the provider.
            ToolExecutionError: When a tool fails and no handler claims it.
            MaxToolRoundsExceeded: When the model keeps requesting tools.
        """
        generation = self._start_generation(prompt, params)
        generation._client = self.client  # built once, shared by every generation
        return generation._run_prompt()

    def preview_prompt(self, prompt: Any = None, **params: Any) -> str:
        """Render the first request of a prompt as markdown without sending it."""
        generation = self._start_generation(prompt, params)
        generation.prepare_prompt_request()
        return render_markdown_preview(generation.request.serialize())

    def _start_generation(self, prompt: Any, params: dict[str, Any]) -> "BaseProvider":
        if isinstance(prompt, Prompt):
            params = merge_layers(prompt.to_params(), params)
        elif prompt is not None:
            params = dict(params, messages=prompt)
        call_params = merge_layers(self.params, params)
        max_tool_rounds = call_params.pop("max_tool_rounds", None)

        generation = copy.copy(self)
        generation.reset_state()
        generation.max_tool_rounds = max_tool_rounds or self.max_tool_rounds
        generation.context = call_params
        generation.response_format = normalize_response_format(call_params.get("response_format"))
        generation.request = self.request_class.from_params(call_params)
        generation.streaming = bool(getattr(generation.request, "stream", False))
        return generation

    def _run_prompt(self) -> Any:
        rounds = 0
        while True:
            self.prepare_prompt_request()
            payload = self.request.serialize()
            self.raw_request = payload
            logger.debug(
                "Prepared %s request with %d messages",
                self.name,
                len(payload.get("messages") or payload.get("input") or []),
            )

            try:
                api_response = run_with_retries(self.retry_policy, lambda: self._call_api(payload))
            except (ConfigurationError, TransformError):
                raise
            except Exception as e:
                return self.rescue.handle(e)

            self.raw_response = api_response
            self.process_prompt_finished(api_response)

            calls = self.extract_function_calls()
            if not calls:
                break
            rounds += 1
            if rounds > self.max_tool_rounds:
                raise MaxToolRoundsExceeded(
                    f"Model requested tools for more than {self.max_tool_rounds} rounds",
                    rounds=rounds,
                )
            self.process_function_calls(calls)
            logger.info("Continuing multi-turn generation (turn %d)", rounds + 1)

        try:
            self.broadcast_stream_close()
        except Exception as e:
            return self.rescue.handle(e)
        response = self.build_prompt_response()
        logger.info("Prompt complete with %d messages", len(response.messages))
        return response

    def prepare_prompt_request(self) -> None:
        """Move this turn's accumulated messages onto the request."""
        self.request.messages = list(self.request.messages) + self.message_stack
        self.message_stack = []

    def _call_api(self, payload: dict[str, Any]) -> Any:
        mark = len(self.message_stack)
        delivered = self._chunks_delivered
        try:
            return self.api_prompt_execute(payload)
        except self.transport_errors() as e:
            if e is self._observer_failure:
                raise
            if self.streaming and self._chunks_delivered > delivered:
                partial = self.message_stack[-1] if len(self.message_stack) > mark else None
                raise StreamInterruptedError(
                    f"{self.name} stream interrupted: {sanitize_credentials(str(e), self.options)}",
                    partial_message=self.message_to_common(partial) if partial else None,
                    provider=self.name,
                ) from e
            del self.message_stack[mark:]
            raise wrap_transport_error(e, self.name, options=self.options) from e

    def api_prompt_execute(self, payload: dict[str, Any]) -> Any:
        raise NotImplementedError

    def process_stream_chunk(self, chunk: Any) -> None:
        raise NotImplementedError

    def process_prompt_finished(self, api_response: Any) -> None:
        """Record the turn's messages and usage."""
        if not self.streaming:
            self.message_stack.extend(self.extract_messages(api_response))
        usage = self.extract_usage(api_response)
        if usage is not None:
            self.usages.append(usage)

    def extract_messages(self, api_response: Any) -> list[dict[str, Any]]:
        raise NotImplementedError

    def extract_usage(self, api_response: Any) -> Optional[Usage]:
        return None

    def extract_function_calls(self) -> list[dict[str, Any]]:
        """Tool calls requested this turn as ``{name, arguments, call_id}``."""
        raise NotImplementedError

    def tool_result_messages(self, results: list[tuple[dict[str, Any], str]]) -> list[dict[str, Any]]:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    def process_function_calls(self, calls: list[dict[str, Any]]) -> None:
        results = [(call, self.execute_action(call)) for call in calls]
        self.message_stack.extend(self.tool_result_messages(results))

    def execute_action(self, call: dict[str, Any]) -> str:
        """Run one requested action and return its serialized result.

        Handler failures are wrapped in :class:`ToolExecutionError` and routed
        through the rescue chain; a claiming handler's return value becomes
        the tool result.
        """
        name = call["name"]
        arguments = call.get("arguments") or {}
        call_id = call.get("call_id")
        try:
            if self.action_resolver is None:
                raise ActionNotFound(
                    f"No action resolver to run '{name}'",
                    action_name=name,
                    call_id=call_id,
                    arguments=arguments,
                )
            try:
                result = self.action_resolver(name, arguments)
            except ToolExecutionError as e:
                if e.call_id is None:
                    e.call_id = call_id
                raise
            except Exception as e:
                raise ToolExecutionError(
                    f"Action '{name}' failed: {e}",
                    action_name=name,
                    call_id=call_id,
                    arguments=arguments,
                ) from e
        except ToolExecutionError as error:
            if self.rescue.find(error) is None:
                logger.error("Unhandled exception in action %s: %s", name, error)
                raise
            result = self.rescue.handle(error)
        return dump_result(result)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def _notify(self, chunk: StreamChunk, event: StreamEvent) -> None:
        if self.stream_observer is None:
            return
        try:
            self.stream_observer(chunk, event)
        except Exception as e:
            self._observer_failure = e
            raise

    def broadcast_stream_open(self) -> None:
        if self._stream_opened:
            return
        self._stream_opened = True
        logger.debug("%s stream opened", self.name)
        self._notify(StreamChunk(), StreamEvent.OPEN)

    def broadcast_stream_update(self, message: dict[str, Any], delta: Optional[str] = None) -> None:
        self._chunks_delivered += 1
        self._notify(StreamChunk(message=self.message_to_common(message), delta=delta), StreamEvent.UPDATE)

    def broadcast_stream_close(self) -> None:
        if not self.streaming or self._stream_closed:
            return
        self._stream_closed = True
        last = self.message_stack[-1] if self.message_stack else None
        logger.debug("%s stream closed", self.name)
        self._notify(
            StreamChunk(message=self.message_to_common(last) if last else None, is_final=True),
            StreamEvent.CLOSE,
        )

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def message_to_common(self, message: dict[str, Any]) -> Message:
        raise NotImplementedError

    def messages_to_common(self, messages: list[Any]) -> list[Message]:
        raise NotImplementedError

    def build_prompt_response(self) -> PromptResponse:
        messages = self.messages_to_common(list(self.request.messages) + self.message_stack)
        if (
            messages
            and self.response_format
            and self.response_format["type"] in ("json_object", "json_schema")
        ):
            last = messages[-1]
            messages[-1] = dataclasses.replace(last, content=last.text, content_type=JSON_CONTENT_TYPE)
        return PromptResponse(
            messages=messages,
            context=self.context,
            raw_request=self.raw_request,
            raw_response=self.raw_response,
            usages=list(self.usages),
            format=self.response_format,
        )

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def embed(self, input: Any = None, **params: Any) -> Any:
        """Embed ``input`` and return an :class:`EmbedResponse`.

        Transport errors go through retries and then the rescue chain.
        """
        call_params = merge_layers(self.params, params)
        if input is not None:
            call_params["input"] = input
        embed_params = {k: v for k, v in call_params.items() if k in EMBED_KEYS}
        embed_params["model"] = (
            params.get("model") or call_params.get("embedding_model") or self.default_embedding_model
        )
        request = self.embed_request_class.from_params(embed_params)
        payload = request.serialize()

        def call() -> Any:
            try:
                return self.api_embed_execute(payload)
            except self.transport_errors() as e:
                raise wrap_transport_error(e, self.name, options=self.options) from e

        try:
            api_response = run_with_retries(self.retry_policy, call)
        except (ConfigurationError, TransformError):
            raise
        except Exception as e:
            return self.rescue.handle(e)

        return EmbedResponse(
            data=embedding_data(api_response),
            context=call_params,
            raw_request=payload,
            raw_response=api_response,
            usage=self.extract_embed_usage(api_response),
        )

    def api_embed_execute(self, payload: dict[str, Any]) -> Any:
        raise NotImplementedError(f"{self.name} does not support embeddings")

    def extract_embed_usage(self, api_response: Any) -> Optional[Usage]:
        return None
