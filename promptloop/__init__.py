"""
PromptLoop - Provider-independent prompting and tool-calling loop for LLMs.

Normalizes one common prompt format onto the OpenAI (Chat Completions and
Responses), Anthropic, OpenRouter and Ollama wire protocols, parses their
replies and streams back into one message model, and runs requested tools
until the model produces a final answer.
"""

from .agent import (
    Agent,
    Generation,
    action,
    on_stream,
    on_stream_close,
    on_stream_open,
    rescue_from,
)
from .config import (
    Configuration,
    configure,
    get_configuration,
    merge_layers,
    provider_config,
)
from .content import normalize_content, normalize_source
from .exceptions import (
    ActionNotFound,
    ConfigurationError,
    MaxToolRoundsExceeded,
    PromptLoopError,
    StreamInterruptedError,
    ToolExecutionError,
    TransformError,
    TransportError,
)
from .messages import Message, Prompt, RequestedAction, Role
from .options import sanitize_credentials
from .providers import (
    AnthropicProvider,
    BaseProvider,
    MockProvider,
    OllamaProvider,
    OpenAIChatProvider,
    OpenAIResponsesProvider,
    OpenRouterProvider,
    create_provider,
)
from .rescue import RescueChain
from .responses import EmbedResponse, PromptResponse, StreamChunk, StreamEvent
from .retry import RetryPolicy, RetryStrategy
from .tools import ActionRegistry, ToolDef, define_tool
from .usage import Usage

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "ActionNotFound",
    "ActionRegistry",
    "Agent",
    "AnthropicProvider",
    "BaseProvider",
    "Configuration",
    "ConfigurationError",
    "EmbedResponse",
    "Generation",
    "MaxToolRoundsExceeded",
    "Message",
    "MockProvider",
    "OllamaProvider",
    "OpenAIChatProvider",
    "OpenAIResponsesProvider",
    "OpenRouterProvider",
    "Prompt",
    "PromptLoopError",
    "PromptResponse",
    "RequestedAction",
    "RescueChain",
    "RetryPolicy",
    "RetryStrategy",
    "Role",
    "StreamChunk",
    "StreamEvent",
    "StreamInterruptedError",
    "ToolDef",
    "ToolExecutionError",
    "TransformError",
    "TransportError",
    "Usage",
    "action",
    "configure",
    "create_provider",
    "define_tool",
    "get_configuration",
    "merge_layers",
    "normalize_content",
    "normalize_source",
    "on_stream",
    "on_stream_close",
    "on_stream_open",
    "provider_config",
    "rescue_from",
    "sanitize_credentials",
]
