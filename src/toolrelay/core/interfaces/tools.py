"""
Tool Protocols

Contracts for the two in-process tool sources: local Python tools and MCP
tool servers. Service tools have no in-process contract; they are plain
configuration (see ``toolrelay.core.domain.registry.ServiceToolSpec``).
"""

from collections.abc import Callable
from typing import Any, Protocol


class LocalToolProtocol(Protocol):
    """
    In-process tool.

    ``execute`` returns a result dictionary in the shape
    ``{"success": True, "output": ...}`` or ``{"success": False, "error": ...}``.
    Exceptions raised by ``execute`` are caught by the dispatcher and turned
    into error tool results.

    Optional attributes read by the registry when present:
    ``priority`` (int, default 0) and ``requires_approval`` (bool, default False).
    """

    @property
    def name(self) -> str:
        ...

    @property
    def description(self) -> str:
        ...

    @property
    def parameters_schema(self) -> dict[str, Any]:
        ...

    async def execute(self, **kwargs: Any) -> dict[str, Any]:
        ...


class ToolServerProtocol(Protocol):
    """
    Tool server reached over the Model Context Protocol.

    ``list_tools`` returns dictionaries with ``name``, ``description`` and
    ``input_schema`` plus optional ``priority`` and ``requires_approval``.
    ``invoke`` returns the textual tool output and raises on failure.
    """

    @property
    def name(self) -> str:
        ...

    async def connect(self) -> None:
        ...

    async def list_tools(self) -> list[dict[str, Any]]:
        ...

    async def invoke(self, tool_name: str, arguments: dict[str, Any]) -> str:
        ...

    async def disconnect(self) -> None:
        ...


# Builds an unconnected server client. The loop calls it once per invocation
# so concurrent conversations never share a connection.
ToolServerFactory = Callable[[], ToolServerProtocol]
