"""
PromptLoop - Per-provider client options.

Options hold what is needed to build a provider client: credentials, base
URL, timeouts and extra headers. Credentials resolve in this order:

1. the value passed explicitly (``api_key`` or its alias ``access_token``)
2. the provider's environment variables
3. the SDK module's global default, when that SDK is already imported

If nothing resolves, :class:`~promptloop.exceptions.ConfigurationError` is
raised at construction time, before any network call is made.
"""

import os
import sys
from dataclasses import dataclass, fields
from typing import Any, ClassVar, Optional

from .exceptions import ConfigurationError

ALIASES = {
    "access_token": "api_key",
    "uri_base": "base_url",
    "host": "base_url",
    "request_timeout": "timeout",
}


def _sdk_default(module_name: Optional[str], attr: str) -> Optional[str]:
    if not module_name:
        return None
    module = sys.modules.get(module_name)
    value = getattr(module, attr, None) if module is not None else None
    return value if isinstance(value, str) and value else None


def _first_env(names: tuple) -> Optional[str]:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return None


@dataclass(repr=False)
class ProviderOptions:
    """Shared client options. Subclasses set the class-level lookup tables."""

    api_key: Optional[str] = None
    base_url: Optional[str] = None
    timeout: float = 600.0
    max_retries: int = 0

    provider_name: ClassVar[str] = "provider"
    env_api_keys: ClassVar[tuple] = ()
    sdk_module: ClassVar[Optional[str]] = None
    api_key_required: ClassVar[bool] = True
    default_api_key: ClassVar[Optional[str]] = None
    default_base_url: ClassVar[Optional[str]] = None
    env_base_url: ClassVar[tuple] = ()

    def __post_init__(self) -> None:
        if not self.api_key:
            self.api_key = (
                _first_env(self.env_api_keys)
                or _sdk_default(self.sdk_module, "api_key")
                or self.default_api_key
            )
        if not self.api_key and self.api_key_required:
            raise ConfigurationError(
                f"Missing {self.provider_name} api_key: pass api_key= or set "
                f"{' / '.join(self.env_api_keys) or 'an API key'}",
                field="api_key",
            )
        if not self.base_url:
            self.base_url = _first_env(self.env_base_url) or self.default_base_url
        if self.timeout is not None and self.timeout <= 0:
            raise ConfigurationError("timeout must be positive", field="timeout")

    def __repr__(self) -> str:
        parts = []
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "api_key" and value:
                value = "[REDACTED]"
            parts.append(f"{f.name}={value!r}")
        return f"{type(self).__name__}({', '.join(parts)})"

    @classmethod
    def keys(cls) -> set[str]:
        return {f.name for f in fields(cls)} | set(ALIASES)

    @classmethod
    def extract(cls, params: dict[str, Any]) -> tuple["ProviderOptions", dict[str, Any]]:
        """Split ``params`` into options and everything else."""
        names = {f.name for f in fields(cls)}
        option_kwargs: dict[str, Any] = {}
        rest: dict[str, Any] = {}
        for key, value in params.items():
            target = ALIASES.get(key, key)
            if target in names:
                if value is not None:
                    option_kwargs.setdefault(target, value)
            else:
                rest[key] = value
        return cls(**option_kwargs), rest

    def extra_headers(self) -> dict[str, str]:
        return {}

    def client_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for the provider SDK client constructor."""
        kwargs: dict[str, Any] = {
            "api_key": self.api_key,
            "base_url": self.base_url,
            "timeout": self.timeout,
            "max_retries": self.max_retries,
        }
        headers = self.extra_headers()
        if headers:
            kwargs["default_headers"] = headers
        return {k: v for k, v in kwargs.items() if v is not None}

    def secrets(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        return {f"{self.provider_name.upper()}_API_KEY": self.api_key}


@dataclass(repr=False)
class OpenAIOptions(ProviderOptions):
    organization_id: Optional[str] = None
    project_id: Optional[str] = None

    provider_name: ClassVar[str] = "openai"
    env_api_keys: ClassVar[tuple] = (
        "OPENAI_API_KEY",
        "OPENAI_ACCESS_TOKEN",
        "OPEN_AI_ACCESS_TOKEN",
    )
    sdk_module: ClassVar[Optional[str]] = "openai"
    env_base_url: ClassVar[tuple] = ("OPENAI_BASE_URL",)

    def __post_init__(self) -> None:
        super().__post_init__()
        if not self.organization_id:
            self.organization_id = _first_env(
                ("OPENAI_ORGANIZATION_ID", "OPEN_AI_ORGANIZATION_ID")
            ) or _sdk_default(self.sdk_module, "organization")

    def client_kwargs(self) -> dict[str, Any]:
        kwargs = super().client_kwargs()
        if self.organization_id:
            kwargs["organization"] = self.organization_id
        if self.project_id:
            kwargs["project"] = self.project_id
        return kwargs


@dataclass(repr=False)
class AnthropicOptions(ProviderOptions):
    max_retries: int = 2
    anthropic_beta: Optional[str] = None

    provider_name: ClassVar[str] = "anthropic"
    env_api_keys: ClassVar[tuple] = ("ANTHROPIC_ACCESS_TOKEN", "ANTHROPIC_API_KEY")
    sdk_module: ClassVar[Optional[str]] = "anthropic"
    default_base_url: ClassVar[Optional[str]] = "https://api.anthropic.com"

    def extra_headers(self) -> dict[str, str]:
        if self.anthropic_beta:
            return {"anthropic-beta": self.anthropic_beta}
        return {}


@dataclass(repr=False)
class OpenRouterOptions(OpenAIOptions):
    app_name: Optional[str] = None
    site_url: Optional[str] = None

    provider_name: ClassVar[str] = "openrouter"
    env_api_keys: ClassVar[tuple] = (
        "OPENROUTER_API_KEY",
        "OPEN_ROUTER_API_KEY",
        "OPENROUTER_ACCESS_TOKEN",
        "OPEN_ROUTER_ACCESS_TOKEN",
    )
    sdk_module: ClassVar[Optional[str]] = None
    default_base_url: ClassVar[Optional[str]] = "https://openrouter.ai/api/v1"
    env_base_url: ClassVar[tuple] = ()

    def __post_init__(self) -> None:
        ProviderOptions.__post_init__(self)
        self.organization_id = None

    def extra_headers(self) -> dict[str, str]:
        headers = {"HTTP-Referer": self.site_url, "X-Title": self.app_name}
        return {k: v for k, v in headers.items() if v}


@dataclass(repr=False)
class OllamaOptions(ProviderOptions):
    provider_name: ClassVar[str] = "ollama"
    env_api_keys: ClassVar[tuple] = ("OLLAMA_API_KEY", "OLLAMA_ACCESS_TOKEN")
    api_key_required: ClassVar[bool] = False
    default_api_key: ClassVar[Optional[str]] = "ollama"
    default_base_url: ClassVar[Optional[str]] = "http://127.0.0.1:11434"
    env_base_url: ClassVar[tuple] = ("OLLAMA_HOST",)

    def extra_headers(self) -> dict[str, str]:
        if self.api_key and self.api_key != self.default_api_key:
            return {"Authorization": f"Bearer {self.api_key}"}
        return {}


@dataclass(repr=False)
class MockOptions(ProviderOptions):
    provider_name: ClassVar[str] = "mock"
    api_key_required: ClassVar[bool] = False


# Secrets shorter than this are left in place.
MIN_SECRET_LENGTH = 8


def sanitize_credentials(text: str, *options: ProviderOptions) -> str:
    """Replace every configured secret in ``text`` with a placeholder."""
    for opts in options:
        for placeholder, secret in opts.secrets().items():
            if secret and len(secret) >= MIN_SECRET_LENGTH and secret != opts.default_api_key:
                text = text.replace(secret, f"<{placeholder}>")
    return text
