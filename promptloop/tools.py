"""
PromptLoop - Tool definitions and the action registry.

Usage:
    ```python
    from promptloop import ActionRegistry, define_tool

    @define_tool(description="Fetch current weather.", parameters={
        "type": "object",
        "properties": {"city": {"type": "string"}},
        "required": ["city"],
    })
    def get_weather(city: str) -> dict:
        return {"temperature": 22, "unit": "C"}

    registry = ActionRegistry([get_weather])
    registry.resolve("get_weather", {"city": "Paris"})
    ```
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Union

from .exceptions import ActionNotFound

logger = logging.getLogger("promptloop.tools")

_JSON_TYPES = {
    int: "integer",
    float: "number",
    bool: "boolean",
    str: "string",
    dict: "object",
    list: "array",
}


def schema_from_signature(func: Callable) -> dict:
    """Build a JSON schema for ``func``'s keyword parameters."""
    properties: dict[str, Any] = {}
    required: list[str] = []
    for name, param in inspect.signature(func).parameters.items():
        if name == "self" or param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        json_type = _JSON_TYPES.get(param.annotation, "string")
        properties[name] = {"type": json_type}
        if param.default is param.empty:
            required.append(name)
    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


@dataclass
class ToolDef:
    """Definition for a tool that the model can call.

    Provides the model with a description and parameter schema; when the
    model calls the tool the ``handler`` is executed locally with the call's
    arguments as keyword arguments.

    Example::

        ToolDef(
            name="web_search",
            description="Search the web and return top results.",
            parameters={
                "type": "object",
                "properties": {"query": {"type": "string"}},
                "required": ["query"],
            },
            handler=my_search_function,
        )
    """

    name: str
    description: str
    parameters: dict = field(default_factory=lambda: {"type": "object", "properties": {}})
    handler: Optional[Callable] = None

    def to_schema(self) -> dict:
        """Return the tool definition as a JSON-schema dict for the model."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


def define_tool(
    name: Optional[str] = None,
    description: str = "",
    parameters: Optional[dict] = None,
) -> Callable:
    """Decorator that turns a function into a :class:`ToolDef`.

    The function's ``__name__`` is the tool name unless *name* is given, and
    the parameter schema is derived from its signature unless *parameters*
    is given.
    """

    def decorator(func: Callable) -> ToolDef:
        tool_name = name or func.__name__
        return ToolDef(
            name=tool_name,
            description=description or inspect.getdoc(func) or f"Tool: {tool_name}",
            parameters=parameters or schema_from_signature(func),
            handler=func,
        )

    return decorator


def _call_handler(handler: Callable, arguments: dict[str, Any]) -> Any:
    if asyncio.iscoroutinefunction(handler):
        return asyncio.run(handler(**arguments))
    result = handler(**arguments)
    if inspect.isawaitable(result):
        async def _await() -> Any:
            return await result

        return asyncio.run(_await())
    return result


class ActionRegistry:
    """Mapping from action name to a tool definition with a handler.

    ``resolve`` is the action resolver used by the tool loop: it looks up the
    handler by name and calls it with keyword arguments.
    """

    def __init__(self, tools: Optional[Iterable[Union[ToolDef, Callable]]] = None) -> None:
        self._tools: dict[str, ToolDef] = {}
        for entry in tools or []:
            self.register(entry)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self):
        return iter(self._tools.values())

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def register(
        self,
        entry: Union[ToolDef, Callable],
        name: Optional[str] = None,
        description: str = "",
        parameters: Optional[dict] = None,
    ) -> ToolDef:
        if isinstance(entry, ToolDef):
            tool = entry
        elif callable(entry):
            tool = define_tool(name=name, description=description, parameters=parameters)(entry)
        else:
            raise TypeError(f"Cannot register {type(entry).__name__} as an action")
        if tool.handler is None:
            raise TypeError(f"Action '{tool.name}' has no handler")
        self._tools[tool.name] = tool
        return tool

    def get(self, name: str) -> Optional[ToolDef]:
        return self._tools.get(name)

    def schemas(self, names: Optional[Iterable[str]] = None) -> list[dict]:
        if names is None:
            return [t.to_schema() for t in self._tools.values()]
        return [self._tools[n].to_schema() for n in names if n in self._tools]

    def resolve(self, name: str, arguments: Optional[dict[str, Any]] = None) -> Any:
        """Run the handler registered under ``name``.

        Raises:
            ActionNotFound: If no handler is registered under ``name``.
        """
        tool = self._tools.get(name)
        if tool is None or tool.handler is None:
            raise ActionNotFound(
                f"No action registered for '{name}'",
                action_name=name,
                arguments=arguments,
            )
        t0 = time.time()
        result = _call_handler(tool.handler, arguments or {})
        logger.info(
            "Executed action %s in %.1fms", name, (time.time() - t0) * 1000
        )
        return result

    __call__ = resolve
