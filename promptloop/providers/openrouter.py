"""OpenRouter provider.

OpenRouter exposes an OpenAI-compatible Chat Completions endpoint, so this
provider reuses the Chat provider with OpenRouter options (base URL,
``HTTP-Referer`` / ``X-Title`` headers) and the OpenRouter request transform.
Routing and sampling extensions reach the OpenAI SDK through ``extra_body``.
"""

from typing import Any, Optional

from ..options import OpenRouterOptions
from ..transforms._common import to_dict
from ..transforms.openrouter import OpenRouterRequest
from ..usage import Usage
from .openai_chat import OpenAIChatProvider


class OpenRouterProvider(OpenAIChatProvider):
    name = "openrouter"
    options_class = OpenRouterOptions
    request_class = OpenRouterRequest
    forcing_tool_choices = ("required", "any")
    default_embedding_model = "openai/text-embedding-3-small"

    def extract_usage(self, api_response: Any) -> Optional[Usage]:
        if self.streaming:
            return Usage.from_openrouter(self._stream_usage)
        return Usage.from_openrouter((to_dict(api_response) or {}).get("usage"))
