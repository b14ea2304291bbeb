"""
PromptLoop - Normalized token accounting.

Every provider reports usage differently. :class:`Usage` converges them on
one shape; the ``from_*`` constructors know each provider's field names and
:meth:`Usage.from_provider_usage` picks one by inspecting the keys present.

Example::

    usage = Usage.from_anthropic({"input_tokens": 2095, "output_tokens": 503})
    usage.total_tokens  # 2598
"""

from dataclasses import dataclass, field
from typing import Any, Optional


def _sum_optional(a: Optional[int], b: Optional[int]) -> Optional[int]:
    if a is None and b is None:
        return None
    return (a or 0) + (b or 0)


def _ns_to_ms(nanoseconds: Optional[int]) -> Optional[int]:
    if nanoseconds is None:
        return None
    return round(nanoseconds / 1_000_000)


def _tokens_per_second(tokens: Optional[int], duration_ns: Optional[int]) -> Optional[float]:
    if not tokens or not duration_ns or duration_ns <= 0:
        return None
    return round(tokens / (duration_ns / 1_000_000_000), 2)


def _compact(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


@dataclass
class Usage:
    """Token usage for a single provider call (or the sum of several)."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: Optional[int] = None
    cached_tokens: Optional[int] = None
    cache_creation_tokens: Optional[int] = None
    reasoning_tokens: Optional[int] = None
    audio_tokens: Optional[int] = None
    service_tier: Optional[str] = None
    duration_ms: Optional[int] = None
    provider_details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.input_tokens = self.input_tokens or 0
        self.output_tokens = self.output_tokens or 0
        if self.total_tokens is None:
            self.total_tokens = self.input_tokens + self.output_tokens

    def __add__(self, other: Optional["Usage"]) -> "Usage":
        if other is None:
            return self
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=(self.total_tokens or 0) + (other.total_tokens or 0),
            cached_tokens=_sum_optional(self.cached_tokens, other.cached_tokens),
            cache_creation_tokens=_sum_optional(
                self.cache_creation_tokens, other.cache_creation_tokens
            ),
            reasoning_tokens=_sum_optional(self.reasoning_tokens, other.reasoning_tokens),
            audio_tokens=_sum_optional(self.audio_tokens, other.audio_tokens),
            duration_ms=_sum_optional(self.duration_ms, other.duration_ms),
        )

    def __radd__(self, other: Any) -> "Usage":
        # Lets sum() start from 0.
        if other == 0 or other is None:
            return self
        return NotImplemented

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "input_tokens": self.input_tokens,
                "output_tokens": self.output_tokens,
                "total_tokens": self.total_tokens,
                "cached_tokens": self.cached_tokens,
                "cache_creation_tokens": self.cache_creation_tokens,
                "reasoning_tokens": self.reasoning_tokens,
                "audio_tokens": self.audio_tokens,
                "service_tier": self.service_tier,
                "duration_ms": self.duration_ms,
                "provider_details": self.provider_details or None,
            }
        )

    @classmethod
    def from_openai_chat(cls, usage: Optional[dict[str, Any]]) -> Optional["Usage"]:
        if not usage:
            return None
        prompt_details = usage.get("prompt_tokens_details") or {}
        completion_details = usage.get("completion_tokens_details") or {}
        audio = [
            v
            for v in (prompt_details.get("audio_tokens"), completion_details.get("audio_tokens"))
            if v is not None
        ]
        return cls(
            input_tokens=usage.get("prompt_tokens") or 0,
            output_tokens=usage.get("completion_tokens") or 0,
            total_tokens=usage.get("total_tokens"),
            cached_tokens=prompt_details.get("cached_tokens"),
            reasoning_tokens=completion_details.get("reasoning_tokens"),
            audio_tokens=sum(audio) if audio else None,
            provider_details=_compact(
                {
                    "prompt_tokens_details": usage.get("prompt_tokens_details"),
                    "completion_tokens_details": usage.get("completion_tokens_details"),
                }
            ),
        )

    @classmethod
    def from_openai_embedding(cls, usage: Optional[dict[str, Any]]) -> Optional["Usage"]:
        if not usage:
            return None
        return cls(
            input_tokens=usage.get("prompt_tokens") or 0,
            output_tokens=0,
            total_tokens=usage.get("total_tokens"),
            provider_details={
                k: v for k, v in usage.items() if k not in ("prompt_tokens", "total_tokens")
            },
        )

    @classmethod
    def from_openai_responses(cls, usage: Optional[dict[str, Any]]) -> Optional["Usage"]:
        if not usage:
            return None
        input_details = usage.get("input_tokens_details") or {}
        output_details = usage.get("output_tokens_details") or {}
        return cls(
            input_tokens=usage.get("input_tokens") or 0,
            output_tokens=usage.get("output_tokens") or 0,
            total_tokens=usage.get("total_tokens"),
            cached_tokens=input_details.get("cached_tokens"),
            reasoning_tokens=output_details.get("reasoning_tokens"),
            provider_details=_compact(
                {
                    "input_tokens_details": usage.get("input_tokens_details"),
                    "output_tokens_details": usage.get("output_tokens_details"),
                }
            ),
        )

    @classmethod
    def from_anthropic(cls, usage: Optional[dict[str, Any]]) -> Optional["Usage"]:
        """Anthropic does not report a total, so it is always computed."""
        if not usage:
            return None
        return cls(
            input_tokens=usage.get("input_tokens") or 0,
            output_tokens=usage.get("output_tokens") or 0,
            cached_tokens=usage.get("cache_read_input_tokens"),
            cache_creation_tokens=usage.get("cache_creation_input_tokens"),
            service_tier=usage.get("service_tier"),
            provider_details=_compact(
                {
                    "cache_creation": usage.get("cache_creation"),
                    "server_tool_use": usage.get("server_tool_use"),
                }
            ),
        )

    @classmethod
    def from_ollama(cls, usage: Optional[dict[str, Any]]) -> Optional["Usage"]:
        """Ollama reports durations in nanoseconds; they become milliseconds."""
        if not usage:
            return None
        return cls(
            input_tokens=usage.get("prompt_eval_count") or 0,
            output_tokens=usage.get("eval_count") or 0,
            duration_ms=_ns_to_ms(usage.get("total_duration")),
            provider_details=_compact(
                {
                    "load_duration_ms": _ns_to_ms(usage.get("load_duration")),
                    "prompt_eval_duration_ms": _ns_to_ms(usage.get("prompt_eval_duration")),
                    "eval_duration_ms": _ns_to_ms(usage.get("eval_duration")),
                    "tokens_per_second": _tokens_per_second(
                        usage.get("eval_count"), usage.get("eval_duration")
                    ),
                }
            ),
        )

    @classmethod
    def from_openrouter(cls, usage: Optional[dict[str, Any]]) -> Optional["Usage"]:
        return cls.from_openai_chat(usage)

    @classmethod
    def from_provider_usage(cls, usage: Any) -> Optional["Usage"]:
        """Pick a normalizer from the keys present in ``usage``."""
        if not isinstance(usage, dict):
            return None
        if "total_duration" in usage:
            return cls.from_ollama(usage)
        if "cache_creation" in usage or "service_tier" in usage:
            return cls.from_anthropic(usage)
        if "input_tokens" in usage and "input_tokens_details" in usage:
            return cls.from_openai_responses(usage)
        if "completion_tokens" in usage:
            return cls.from_openai_chat(usage)
        if "prompt_tokens" in usage:
            return cls.from_openai_embedding(usage)
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in usage.items() if k in known})
