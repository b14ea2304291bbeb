"""
PromptLoop - Embedding request transforms and response parsing.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from ..exceptions import TransformError
from ._common import check_choice, check_range, require, strip_defaults, to_dict

ENCODING_FORMATS = ("float", "base64")


@dataclass
class EmbeddingRequest:
    """OpenAI-style ``embeddings.create`` request; Ollama's ``/api/embed`` is a subset."""

    model: Optional[str] = None
    input: Any = None
    dimensions: Optional[int] = None
    encoding_format: Optional[str] = None
    user: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        require("model", self.model)
        require("input", self.input)
        check_range("dimensions", self.dimensions, 1)
        check_choice("encoding_format", self.encoding_format, ENCODING_FORMATS)
        if not isinstance(self.input, (str, list)):
            raise TransformError(
                f"Embedding input must be a string or a list, got {type(self.input).__name__}"
            )

    @classmethod
    def from_params(cls, params: dict[str, Any]) -> "EmbeddingRequest":
        params = dict(params)
        if "input" not in params:
            params["input"] = params.pop("messages", None) or params.pop("message", None)
        params.pop("messages", None)
        params.pop("message", None)
        params.pop("stream", None)
        known = ("model", "input", "dimensions", "encoding_format", "user")
        kwargs = {k: params.pop(k) for k in known if k in params}
        return cls(extra={k: v for k, v in params.items() if v is not None}, **kwargs)

    def serialize(self) -> dict[str, Any]:
        data = {
            "model": self.model,
            "input": self.input,
            "dimensions": self.dimensions,
            "encoding_format": self.encoding_format,
            "user": self.user,
            **self.extra,
        }
        return strip_defaults(data, {})


def embedding_data(raw: Any) -> list[dict[str, Any]]:
    """Extract ``[{index, object, embedding}]`` from a provider embed response.

    Raises:
        TransformError: If the response is neither a list of embeddings nor
            a single embedding.
    """
    raw = to_dict(raw) or {}
    kind = raw.get("object")
    if kind == "list":
        return [dict(item) for item in raw.get("data") or []]
    if kind == "embedding":
        return [{"index": 0, **{k: v for k, v in raw.items() if k != "index"}}]
    if "embeddings" in raw:
        return [
            {"index": i, "object": "embedding", "embedding": vector}
            for i, vector in enumerate(raw["embeddings"])
        ]
    raise TransformError(f"Unexpected embed object type: {kind!r}")
