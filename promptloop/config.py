"""
PromptLoop - Layered configuration.

Provider settings come from four layers, lowest precedence first:

1. global configuration (:func:`configure`, YAML or environment)
2. agent-level options (``Agent.generate_with``)
3. explicit options passed when building a prompt
4. runtime options passed when generating

:func:`merge_layers` is the one place those layers are combined. It never
mutates its inputs.

Example YAML::

    development:
      openai:
        service: openai
        model: gpt-4o-mini
        api_key: ${OPENAI_API_KEY}
    production:
      anthropic:
        service: anthropic
        model: claude-sonnet-4-5
"""

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Union

import yaml

from .exceptions import ConfigurationError

logger = logging.getLogger("promptloop.config")

GLOBAL_KEYS = ("retries", "retries_count", "retries_on", "max_tool_rounds")


def merge_layers(*layers: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Deep-merge option dicts; later layers win.

    ``None`` values never erase a lower layer's value.
    """
    merged: dict[str, Any] = {}
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            if value is None:
                continue
            current = merged.get(key)
            if isinstance(current, dict) and isinstance(value, dict):
                merged[key] = merge_layers(current, value)
            else:
                merged[key] = copy.deepcopy(value)
    return merged


def _interpolate_env(value: Any) -> Any:
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        return os.environ.get(value[2:-1])
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(v) for v in value]
    return value


@dataclass
class Configuration:
    """Process-wide provider settings, read-only once generation starts."""

    providers: dict[str, dict[str, Any]] = field(default_factory=dict)
    retries: Union[bool, Callable[..., Any]] = True
    retries_count: int = 3
    retries_on: tuple = ()
    max_tool_rounds: int = 10

    def __post_init__(self) -> None:
        if self.retries_count < 0:
            raise ConfigurationError("retries_count must be >= 0", field="retries_count")
        if self.max_tool_rounds < 1:
            raise ConfigurationError("max_tool_rounds must be >= 1", field="max_tool_rounds")
        self.retries_on = tuple(self.retries_on or ())

    def provider_config(self, name: str) -> dict[str, Any]:
        """Settings for provider ``name``; a copy, so callers cannot mutate it."""
        return copy.deepcopy(self.providers.get(name, {}))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Configuration":
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration must be a mapping")
        data = _interpolate_env(data)
        kwargs = {k: data[k] for k in GLOBAL_KEYS if k in data}
        providers = {
            name: dict(settings)
            for name, settings in data.items()
            if name not in GLOBAL_KEYS and isinstance(settings, dict)
        }
        return cls(providers=providers, **kwargs)

    @classmethod
    def from_yaml(cls, path: Union[str, Path], env: Optional[str] = None) -> "Configuration":
        """Load configuration from a YAML file.

        Args:
            path: Path to the YAML file.
            env: Optional top-level section to select, e.g. ``"production"``.
                Defaults to ``PROMPTLOOP_ENV`` when set.

        Raises:
            ConfigurationError: If the file is missing or is not valid YAML.
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")

        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {path}: {e}")

        env = env or os.environ.get("PROMPTLOOP_ENV")
        if env:
            if env not in data:
                raise ConfigurationError(f"No '{env}' section in {path}")
            data = data[env]
        return cls.from_dict(data)

    @classmethod
    def from_env(cls) -> "Configuration":
        """Create configuration from environment variables.

        Only providers with credentials present in the environment are added.
        """
        providers: dict[str, dict[str, Any]] = {}
        if os.environ.get("OPENAI_API_KEY") or os.environ.get("OPENAI_ACCESS_TOKEN"):
            providers["openai"] = {"service": "openai"}
        if os.environ.get("ANTHROPIC_API_KEY") or os.environ.get("ANTHROPIC_ACCESS_TOKEN"):
            providers["anthropic"] = {"service": "anthropic"}
        if os.environ.get("OPENROUTER_API_KEY") or os.environ.get("OPEN_ROUTER_API_KEY"):
            providers["openrouter"] = {"service": "openrouter"}
        if os.environ.get("OLLAMA_HOST"):
            providers["ollama"] = {"service": "ollama"}
        return cls(
            providers=providers,
            retries=os.environ.get("PROMPTLOOP_RETRIES", "true").lower() != "false",
            retries_count=int(os.environ.get("PROMPTLOOP_RETRIES_COUNT", "3")),
            max_tool_rounds=int(os.environ.get("PROMPTLOOP_MAX_TOOL_ROUNDS", "10")),
        )


_configuration = Configuration()


def configure(config: Optional[Configuration] = None, **kwargs: Any) -> Configuration:
    """Install the global configuration.

    Pass a :class:`Configuration`, or keyword arguments understood by
    :meth:`Configuration.from_dict`.
    """
    global _configuration
    _configuration = config if config is not None else Configuration.from_dict(kwargs)
    logger.debug("Configured providers: %s", ", ".join(sorted(_configuration.providers)))
    return _configuration


def get_configuration() -> Configuration:
    return _configuration


def provider_config(name: str) -> dict[str, Any]:
    """Settings for provider ``name`` from the global configuration."""
    return _configuration.provider_config(name)
