"""
PromptLoop - Request transform layer.

One module per provider converts common-format parameters into a structured
request (``from_params``) and a structured request into its wire payload
(``serialize``).
"""

from .anthropic import AnthropicRequest
from .embedding import EmbeddingRequest, embedding_data
from .ollama import OllamaRequest
from .openai_chat import ChatRequest, merge_delta
from .openai_responses import ResponsesRequest
from .openrouter import OpenRouterRequest

__all__ = [
    "AnthropicRequest",
    "ChatRequest",
    "EmbeddingRequest",
    "OllamaRequest",
    "OpenRouterRequest",
    "ResponsesRequest",
    "embedding_data",
    "merge_delta",
]
