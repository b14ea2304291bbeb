"""
PromptLoop - Agent surface.

An agent binds actions (tools), exception handlers and stream callbacks to a
provider, and builds prompts whose tool calls are resolved against its own
methods.

Usage:
    ```python
    from promptloop import Agent, action, on_stream, rescue_from

    class WeatherAgent(Agent):
        instructions = "You answer weather questions."

        @action(description="Current temperature for a city.")
        def get_weather(self, city: str) -> dict:
            return {"city": city, "temperature": 22}

        @on_stream
        def print_delta(self, chunk):
            if chunk.delta:
                print(chunk.delta, end="")

        @rescue_from(TimeoutError)
        def timed_out(self, error):
            return {"error": "weather service timed out"}

    WeatherAgent.generate_with("openai", model="gpt-4o-mini", stream=True)

    response = WeatherAgent().prompt(message="Weather in Paris?").generate_now()
    print(response.message.text)
    ```
"""

import asyncio
import logging
from typing import Any, Callable, ClassVar, Optional, Union

from .config import merge_layers
from .messages import Message, Prompt
from .providers import create_provider
from .providers.base import BaseProvider
from .rescue import RescueChain
from .responses import StreamChunk, StreamEvent
from .tools import ActionRegistry

logger = logging.getLogger("promptloop.agent")


# ==================== Method Decorators ====================


def action(
    func: Optional[Callable] = None,
    *,
    name: Optional[str] = None,
    description: str = "",
    parameters: Optional[dict] = None,
) -> Callable:
    """
    Decorator: Expose a method to the model as a tool.

    The parameter schema is derived from the method signature unless
    ``parameters`` is given; the docstring is the description unless
    ``description`` is given.

    Example:
        ```python
        @action(description="Add two numbers.")
        def add(self, a: int, b: int) -> int:
            return a + b
        ```
    """

    def decorator(f: Callable) -> Callable:
        f._promptloop_action = {"name": name, "description": description, "parameters": parameters}
        return f

    if func is not None:
        return decorator(func)
    return decorator


def on_stream_open(func: Callable) -> Callable:
    """Decorator: Called with the empty chunk before the first streamed chunk."""
    func._promptloop_stream = StreamEvent.OPEN
    return func


def on_stream(func: Callable) -> Callable:
    """
    Decorator: Called for every streamed chunk.

    Example:
        ```python
        @on_stream
        def show(self, chunk):
            print(chunk.delta or "", end="")
        ```
    """
    func._promptloop_stream = StreamEvent.UPDATE
    return func


def on_stream_close(func: Callable) -> Callable:
    """Decorator: Called once with the final chunk after the stream ends."""
    func._promptloop_stream = StreamEvent.CLOSE
    return func


def rescue_from(*exc_types: type) -> Callable:
    """
    Decorator: Handle ``exc_types`` raised by actions or the provider call.

    The handler's return value is used in place of the failed result: the
    tool result for action errors, the generation result for transport
    errors.
    """

    def decorator(func: Callable) -> Callable:
        func._promptloop_rescue = exc_types
        return func

    return decorator


# ==================== Generation ====================


class Generation:
    """A prompt or embedding request ready to run.

    Prompt properties can be inspected before anything is sent.
    """

    def __init__(
        self,
        agent: "Agent",
        prompt: Optional[Prompt] = None,
        options: Optional[dict[str, Any]] = None,
        embed_input: Any = None,
    ) -> None:
        self.agent = agent
        self.prompt = prompt
        self.options = dict(options or {})
        self.embed_input = embed_input

    @property
    def messages(self) -> list[Message]:
        return self.prompt.messages if self.prompt else []

    @property
    def message(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None

    @property
    def instructions(self) -> Optional[list[str]]:
        return self.prompt.instructions if self.prompt else None

    @property
    def actions(self) -> list[Any]:
        return self.prompt.actions if self.prompt else []

    def generate_now(self, **runtime: Any) -> Any:
        """Run the prompt synchronously, including any tool rounds."""
        if self.prompt is None:
            raise ValueError("This generation was built for embeddings; use embed_now()")
        provider = self.agent.build_provider(merge_layers(self.options, runtime))
        logger.debug("Generating with %s", type(provider).__name__)
        return provider.prompt(self.prompt)

    def preview(self, **runtime: Any) -> str:
        """Markdown rendering of the request :meth:`generate_now` would send."""
        if self.prompt is None:
            raise ValueError("This generation was built for embeddings; nothing to preview")
        provider = self.agent.build_provider(merge_layers(self.options, runtime))
        return provider.preview_prompt(self.prompt)

    def embed_now(self, **runtime: Any) -> Any:
        """Embed the input synchronously."""
        provider = self.agent.build_provider(merge_layers(self.options, runtime))
        text = self.embed_input
        if text is None and self.message is not None:
            text = self.message.text
        return provider.embed(text)

    async def agenerate(self, **runtime: Any) -> Any:
        """Run :meth:`generate_now` in a worker thread."""
        return await asyncio.to_thread(self.generate_now, **runtime)

    async def aembed(self, **runtime: Any) -> Any:
        """Run :meth:`embed_now` in a worker thread."""
        return await asyncio.to_thread(self.embed_now, **runtime)


# ==================== Agent ====================


class Agent:
    """
    Base class for agents.

    Class-level settings:

    - :meth:`generate_with` picks the provider and its default options.
    - ``instructions`` is the default system prompt.
    - ``renderer`` renders ``{"template": ...}`` instructions.

    Actions, rescue handlers and stream callbacks are declared with the
    module decorators on methods, or registered on the class afterwards with
    :meth:`rescue_from` and the ``on_stream*`` class methods.
    """

    provider_name: ClassVar[Optional[str]] = None
    provider_options: ClassVar[dict[str, Any]] = {}
    instructions: ClassVar[Any] = None
    renderer: ClassVar[Optional[Callable[[Any], Optional[str]]]] = None

    _class_rescues: ClassVar[list] = []
    _class_stream_callbacks: ClassVar[list] = []

    def __init__(self, **params: Any) -> None:
        self.params = params
        self.registry = ActionRegistry()
        self.rescue_chain = RescueChain()
        self.stream_callbacks: dict[StreamEvent, list[Callable]] = {event: [] for event in StreamEvent}

        for exc_types, handler in self._class_rescues:
            self.rescue_chain.register(exc_types, handler)
        for event, callback in self._class_stream_callbacks:
            self.stream_callbacks[event].append(callback)
        self._discover_handlers()

    def _discover_handlers(self) -> None:
        """Discover decorated action, rescue and stream methods."""
        for name in dir(type(self)):
            if name.startswith("__"):
                continue
            method = getattr(self, name, None)
            if not callable(method):
                continue
            spec = getattr(method, "_promptloop_action", None)
            if spec is not None:
                self.registry.register(
                    method,
                    name=spec["name"] or name,
                    description=spec["description"],
                    parameters=spec["parameters"],
                )
            exc_types = getattr(method, "_promptloop_rescue", None)
            if exc_types:
                self.rescue_chain.register(exc_types, method)
            event = getattr(method, "_promptloop_stream", None)
            if event is not None:
                self.stream_callbacks[event].append(method)

    # ------------------------------------------------------------------
    # Class-level configuration
    # ------------------------------------------------------------------

    @classmethod
    def generate_with(cls, provider: str, **options: Any) -> None:
        """Set the provider name and the agent-level option layer."""
        cls.provider_name = provider
        cls.provider_options = dict(options)

    @classmethod
    def rescue_from(cls, exc_types: Union[type, tuple], handler: Callable) -> None:
        """Register ``handler(error)`` for ``exc_types`` on this class."""
        cls._class_rescues = list(cls._class_rescues) + [(exc_types, handler)]

    @classmethod
    def on_stream_open(cls, callback: Callable[[StreamChunk], None]) -> None:
        cls._add_stream_callback(StreamEvent.OPEN, callback)

    @classmethod
    def on_stream(cls, callback: Callable[[StreamChunk], None]) -> None:
        cls._add_stream_callback(StreamEvent.UPDATE, callback)

    @classmethod
    def on_stream_close(cls, callback: Callable[[StreamChunk], None]) -> None:
        cls._add_stream_callback(StreamEvent.CLOSE, callback)

    @classmethod
    def _add_stream_callback(cls, event: StreamEvent, callback: Callable) -> None:
        cls._class_stream_callbacks = list(cls._class_stream_callbacks) + [(event, callback)]

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    def prompt(
        self,
        message: Any = None,
        messages: Optional[list[Any]] = None,
        instructions: Any = None,
        actions: Optional[list[Any]] = None,
        response_format: Any = None,
        **options: Any,
    ) -> Generation:
        """Build a :class:`Generation` for this agent.

        Args:
            message: A single user message appended after ``messages``.
            messages: Prior conversation messages.
            instructions: System instructions; defaults to the class's.
            actions: Action names to expose, or tool schemas. Defaults to
                every registered action.
            response_format: ``"json_object"``, a ``json_schema`` dict, or
                a provider-native format.
            **options: Explicit option layer (model, temperature, stream...).
        """
        conversation = list(messages or [])
        if message is not None:
            conversation.append(message)
        if instructions is None:
            instructions = self.instructions
        prompt = Prompt(
            messages=conversation,
            instructions=instructions,
            actions=self._action_schemas(actions),
            response_format=response_format,
            renderer=type(self).renderer,
        )
        return Generation(self, prompt=prompt, options=options)

    def embed(self, input: Any = None, **options: Any) -> Generation:
        return Generation(self, options=options, embed_input=input)

    def _action_schemas(self, actions: Optional[list[Any]]) -> list[dict]:
        if actions is None:
            return self.registry.schemas()
        schemas = []
        for entry in actions:
            if isinstance(entry, str):
                schemas.extend(self.registry.schemas([entry]))
            else:
                schemas.append(entry)
        return schemas

    def generate_now(self, *args: Any, **kwargs: Any) -> Any:
        """Shortcut for ``prompt(...).generate_now()``."""
        return self.prompt(*args, **kwargs).generate_now()

    def embed_now(self, input: Any = None, **options: Any) -> Any:
        """Shortcut for ``embed(...).embed_now()``."""
        return self.embed(input, **options).embed_now()

    async def agenerate(self, *args: Any, **kwargs: Any) -> Any:
        return await self.prompt(*args, **kwargs).agenerate()

    # ------------------------------------------------------------------
    # Provider wiring
    # ------------------------------------------------------------------

    def build_provider(self, options: Optional[dict[str, Any]] = None) -> BaseProvider:
        """Provider for one generation, with agent < explicit < runtime options."""
        merged = merge_layers(self.provider_options, options)
        return create_provider(
            self.provider_name,
            action_resolver=self.registry.resolve,
            rescue=self.rescue_chain,
            stream_observer=self._observe_stream,
            **merged,
        )

    def _observe_stream(self, chunk: StreamChunk, event: StreamEvent) -> None:
        for callback in self.stream_callbacks[event]:
            callback(chunk)
