"""Provider adapters and the tool-calling loop.

Supported providers:
- OpenAI (Responses API by default, Chat Completions with ``api_version="chat"``
  or when audio output is requested)
- Anthropic (Messages API, including MCP servers through the beta endpoint)
- OpenRouter (OpenAI-compatible Chat Completions plus routing extras)
- Ollama (native HTTP API)
- Mock (offline pig-latin echo for tests)

Example usage:

    from promptloop.providers import create_provider

    provider = create_provider("anthropic", model="claude-sonnet-4-5")
    response = provider.prompt("Hello", instructions="Answer briefly.")
    print(response.message.text)

Example usage with tools:

    from promptloop import ActionRegistry, define_tool

    @define_tool(description="Echo the text back.")
    def echo(text: str) -> str:
        return text

    registry = ActionRegistry([echo])
    provider = create_provider(
        "openai",
        model="gpt-4o-mini",
        action_resolver=registry.resolve,
    )
    response = provider.prompt("Say hi through the echo tool", tools=registry.schemas())
"""

from typing import Any, Optional

from ..config import get_configuration
from ..exceptions import ConfigurationError
from .anthropic import AnthropicProvider
from .base import BaseProvider
from .mock import MockProvider
from .ollama import OllamaProvider
from .openai_chat import OpenAIChatProvider
from .openai_responses import OpenAIResponsesProvider
from .openrouter import OpenRouterProvider

PROVIDERS: dict[str, type] = {
    "openai": OpenAIResponsesProvider,
    "openai_chat": OpenAIChatProvider,
    "openai_responses": OpenAIResponsesProvider,
    "anthropic": AnthropicProvider,
    "openrouter": OpenRouterProvider,
    "open_router": OpenRouterProvider,
    "ollama": OllamaProvider,
    "mock": MockProvider,
}


def _resolve_provider(model: str) -> str:
    """Infer provider from model name if not explicitly set."""
    m = model.lower()
    if m.startswith("claude"):
        return "anthropic"
    if m.startswith("mock"):
        return "mock"
    if "/" in m:
        return "openrouter"
    return "openai"


def provider_class(service: str, params: Optional[dict[str, Any]] = None) -> type:
    """Provider class for ``service``.

    ``openai`` resolves to the Chat Completions provider when
    ``api_version="chat"`` or audio output is requested, and to the
    Responses provider otherwise.
    """
    params = params or {}
    key = service.lower()
    if key == "openai" and (params.get("api_version") == "chat" or params.get("audio")):
        return OpenAIChatProvider
    try:
        return PROVIDERS[key]
    except KeyError:
        raise ConfigurationError(
            f"Unknown provider: {service!r} (expected one of {', '.join(sorted(PROVIDERS))})",
            field="service",
        ) from None


def create_provider(name: Optional[str] = None, **kwargs: Any) -> BaseProvider:
    """Build a provider by configuration name.

    ``name`` is looked up in the global configuration; its ``service`` entry
    picks the provider class, falling back to ``name`` itself. Without a name
    the provider is inferred from ``model``.
    """
    if name is None:
        model = kwargs.get("model")
        if not model:
            raise ConfigurationError("Pass a provider name or a model", field="service")
        name = _resolve_provider(model)

    settings = get_configuration().provider_config(name)
    service = settings.get("service") or name
    cls = provider_class(service, {**settings, **kwargs})
    kwargs.pop("api_version", None)
    if cls.name != name and settings:
        # Settings stored under a custom name are layered in explicitly.
        kwargs = {**{k: v for k, v in settings.items() if k not in ("service", "api_version")}, **kwargs}
    return cls(**kwargs)


__all__ = [
    "PROVIDERS",
    "AnthropicProvider",
    "BaseProvider",
    "MockProvider",
    "OllamaProvider",
    "OpenAIChatProvider",
    "OpenAIResponsesProvider",
    "OpenRouterProvider",
    "create_provider",
    "provider_class",
]
