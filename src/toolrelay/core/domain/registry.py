"""
Tool Registry

Merges the three tool sources into one name-addressable set:
- service tools: configuration only, executed by the surrounding event system
- protocol tools: discovered from MCP tool servers
- local tools: in-process objects following LocalToolProtocol

Each resulting ToolDefinition carries the execution binding for its kind, so
the dispatcher never inspects the source again.
"""

import re
from dataclasses import dataclass, field
from typing import Any

import structlog

from toolrelay.core.domain.errors import ToolRegistryConflictError, ToolRegistryError
from toolrelay.core.domain.models import ToolDefinition, ToolKind
from toolrelay.core.interfaces.tools import LocalToolProtocol, ToolServerProtocol

TOOL_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")

EMPTY_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


@dataclass(frozen=True)
class ServiceToolSpec:
    """
    A tool implemented by a remote service.

    Calls are emitted as DispatchRequests and answered later through
    ``ResumableAgent.resume``.
    """

    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=lambda: dict(EMPTY_SCHEMA))
    priority: int = 0
    requires_approval: bool = False


@dataclass(frozen=True)
class ProtocolToolSpec:
    """A tool advertised by a connected MCP server."""

    server: ToolServerProtocol
    name: str
    description: str
    input_schema: dict[str, Any]
    priority: int = 0
    requires_approval: bool = False


class ServiceBinding:
    """Execution strategy for service tools: nothing runs in-process."""


class LocalBinding:
    """Execution strategy for local tools."""

    def __init__(self, tool: LocalToolProtocol):
        self.tool = tool

    async def execute(self, input_data: dict[str, Any]) -> dict[str, Any]:
        result = await self.tool.execute(**input_data)
        if not isinstance(result, dict):
            return {"success": True, "output": result}
        return result


class ProtocolBinding:
    """Execution strategy for MCP tools."""

    def __init__(self, server: ToolServerProtocol, tool_name: str):
        self.server = server
        self.tool_name = tool_name

    async def execute(self, input_data: dict[str, Any]) -> dict[str, Any]:
        output = await self.server.invoke(self.tool_name, input_data)
        return {"success": True, "output": output}


class ToolRegistry:
    """Builds the per-invocation tool map and rejects invalid configurations."""

    def __init__(self, approval_tool_name: str | None = None):
        """
        Args:
            approval_tool_name: Name of the approval service tool, or None
                when approvals are disabled. Restricted tools are only valid
                when an approval tool exists.
        """
        self.approval_tool_name = approval_tool_name
        self.logger = structlog.get_logger().bind(component="tool_registry")

    def build(
        self,
        service_tools: list[ServiceToolSpec],
        protocol_tools: list[ProtocolToolSpec],
        local_tools: list[LocalToolProtocol],
    ) -> dict[str, ToolDefinition]:
        """
        Merge all tool sources.

        Args:
            service_tools: Remote service tools
            protocol_tools: Tools discovered from MCP servers
            local_tools: In-process tools

        Returns:
            Mapping of tool name to ToolDefinition

        Raises:
            ToolRegistryConflictError: If a name is defined twice
            ToolRegistryError: If a name is invalid, or a restricted tool
                exists without an approval tool
        """
        registry: dict[str, ToolDefinition] = {}

        for spec in service_tools:
            self._add(
                registry,
                ToolDefinition(
                    name=spec.name,
                    description=spec.description,
                    input_schema=spec.input_schema,
                    kind=ToolKind.SERVICE,
                    priority=spec.priority,
                    requires_approval=spec.requires_approval,
                    binding=ServiceBinding(),
                ),
            )

        for spec in protocol_tools:
            self._add(
                registry,
                ToolDefinition(
                    name=spec.name,
                    description=spec.description,
                    input_schema=spec.input_schema or dict(EMPTY_SCHEMA),
                    kind=ToolKind.PROTOCOL,
                    priority=spec.priority,
                    requires_approval=spec.requires_approval,
                    binding=ProtocolBinding(spec.server, spec.name),
                ),
            )

        for tool in local_tools:
            self._add(
                registry,
                ToolDefinition(
                    name=tool.name,
                    description=tool.description,
                    input_schema=tool.parameters_schema,
                    kind=ToolKind.LOCAL,
                    priority=getattr(tool, "priority", 0),
                    requires_approval=getattr(tool, "requires_approval", False),
                    binding=LocalBinding(tool),
                ),
            )

        if self.approval_tool_name is None:
            restricted = sorted(n for n, t in registry.items() if t.requires_approval)
            if restricted:
                raise ToolRegistryError(
                    f"Tools {restricted} require approval but no approval tool is configured"
                )

        self.logger.debug(
            "tool_registry_built",
            tool_count=len(registry),
            tools=sorted(registry),
        )
        return registry

    def _add(self, registry: dict[str, ToolDefinition], tool: ToolDefinition) -> None:
        if not TOOL_NAME_PATTERN.match(tool.name):
            raise ToolRegistryError(
                f"Invalid tool name '{tool.name}': use 1-64 letters, digits, '_' or '-'"
            )
        existing = registry.get(tool.name)
        if existing is not None:
            self.logger.error(
                "tool_name_conflict",
                tool=tool.name,
                sources=[existing.kind.value, tool.kind.value],
            )
            raise ToolRegistryConflictError(tool.name, (existing.kind.value, tool.kind.value))
        registry[tool.name] = tool


HUMAN_INTERACTION_TOOL_NAME = "request_human_input"


def human_interaction_tool_spec(
    name: str = HUMAN_INTERACTION_TOOL_NAME, priority: int = 0
) -> ServiceToolSpec:
    """
    Service tool through which the model asks the user a question.

    The expected result payload is ``{"response": str}``.
    """
    return ServiceToolSpec(
        name=name,
        description=(
            "Ask the user for missing information or a clarification. "
            "Use it only when the request cannot be completed without it."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "prompt": {
                    "type": "string",
                    "description": "Question to show the user",
                },
            },
            "required": ["prompt"],
        },
        priority=priority,
    )
