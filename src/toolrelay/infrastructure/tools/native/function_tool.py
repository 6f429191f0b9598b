"""
Function Tool - wraps a plain Python callable as a local tool.

The parameter schema is generated from the function signature unless one is
given explicitly. Synchronous functions run in a worker thread so they do
not block concurrently executing tools.
"""

import asyncio
import inspect
from collections.abc import Callable
from typing import Any

_JSON_TYPES: dict[Any, str] = {
    int: "integer",
    bool: "boolean",
    float: "number",
    str: "string",
    dict: "object",
    list: "array",
}


class FunctionTool:
    """LocalToolProtocol adapter for a function."""

    def __init__(
        self,
        func: Callable[..., Any],
        name: str | None = None,
        description: str | None = None,
        parameters_schema: dict[str, Any] | None = None,
        priority: int = 0,
        requires_approval: bool = False,
    ):
        self.func = func
        self._name = name or func.__name__
        self._description = description or inspect.getdoc(func) or f"Call {self._name}"
        self._parameters_schema = parameters_schema or self._generate_schema_from_signature()
        self.priority = priority
        self.requires_approval = requires_approval

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def parameters_schema(self) -> dict[str, Any]:
        return self._parameters_schema

    def _generate_schema_from_signature(self) -> dict[str, Any]:
        """Auto-generate parameter schema from the function signature."""
        properties = {}
        required = []

        for param_name, param in inspect.signature(self.func).parameters.items():
            if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
                continue
            param_type = _JSON_TYPES.get(param.annotation, "string")
            properties[param_name] = {
                "type": param_type,
                "description": f"Parameter {param_name}",
            }
            if param.default is inspect.Parameter.empty:
                required.append(param_name)

        return {"type": "object", "properties": properties, "required": required}

    async def execute(self, **kwargs: Any) -> dict[str, Any]:
        if inspect.iscoroutinefunction(self.func):
            value = await self.func(**kwargs)
        else:
            value = await asyncio.to_thread(self.func, **kwargs)
        return {"success": True, "output": value}
