"""
PromptLoop - OpenRouter request transform.

OpenRouter speaks the Chat Completions format plus a handful of routing and
sampling extensions. Shared fields go through :class:`ChatRequest`; the
OpenRouter-only keys are kept aside and merged back in on serialization.
"""

from dataclasses import dataclass, field
from typing import Any

from ._common import check_range, normalize_response_format
from .openai_chat import ChatRequest, normalize_tool_choice

OPENROUTER_KEYS = (
    "provider",
    "plugins",
    "transforms",
    "models",
    "route",
    "top_k",
    "min_p",
    "top_a",
    "repetition_penalty",
)


@dataclass
class OpenRouterRequest(ChatRequest):
    _side_fields = ChatRequest._side_fields + ("openrouter",)

    openrouter: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        super().validate()
        check_range("top_k", self.openrouter.get("top_k"), 0)
        check_range("min_p", self.openrouter.get("min_p"), 0, 1)
        check_range("top_a", self.openrouter.get("top_a"), 0, 1)
        check_range("repetition_penalty", self.openrouter.get("repetition_penalty"), 0, 2)

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> "OpenRouterRequest":
        params = dict(params)
        extras = {k: params.pop(k) for k in OPENROUTER_KEYS if k in params}

        fmt = normalize_response_format(params.get("response_format"))
        if fmt is not None and fmt["type"] in ("json_object", "json_schema"):
            provider = dict(extras.get("provider") or {})
            provider["require_parameters"] = True
            extras["provider"] = provider

        tool_choice = params.pop("tool_choice", None)
        request = super().from_params(params)
        request.tool_choice = "any" if tool_choice in ("required", "any") else normalize_tool_choice(tool_choice)
        request.openrouter = extras
        request.validate()
        return request

    def serialize(self) -> dict[str, Any]:
        data = super().serialize()
        for key, value in self.openrouter.items():
            if value is None or (hasattr(value, "__len__") and len(value) == 0):
                continue
            data[key] = value
        return data

    def extra_body_keys(self) -> set[str]:
        return super().extra_body_keys() | set(self.openrouter)

