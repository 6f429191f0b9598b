"""
MCP Client - tool server adapter over the Model Context Protocol SDK

Connects to a stdio or SSE MCP server, lists its tools and invokes them.
Satisfies ToolServerProtocol. An MCPClient holds one connection; the loop
builds a fresh client per invocation through ``clone`` and disconnects it
when the invocation returns.
"""

from contextlib import AsyncExitStack
from typing import Any

import structlog
from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client


class ToolServerError(Exception):
    """The MCP server reported a failed tool call."""


class MCPClient:
    """
    Client for one MCP server.

    Per-server configuration decides how discovered tools enter the
    registry: ``tool_priorities`` maps tool names to priorities and
    ``restricted_tools`` lists tools that require approval.
    """

    def __init__(
        self,
        name: str,
        transport: str,
        command: str | None = None,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        url: str | None = None,
        tool_priorities: dict[str, int] | None = None,
        restricted_tools: list[str] | None = None,
    ):
        if transport not in ("stdio", "sse"):
            raise ValueError(f"Unknown MCP transport: {transport}")
        if transport == "stdio" and not command:
            raise ValueError("stdio MCP server requires 'command'")
        if transport == "sse" and not url:
            raise ValueError("sse MCP server requires 'url'")

        self._name = name
        self.transport = transport
        self.command = command
        self.args = args or []
        self.env = env
        self.url = url
        self.tool_priorities = tool_priorities or {}
        self.restricted_tools = set(restricted_tools or [])
        self._session: ClientSession | None = None
        self._exit_stack: AsyncExitStack | None = None
        self.logger = structlog.get_logger().bind(component="mcp_client", server=name)

    @classmethod
    def create_stdio(
        cls,
        command: str,
        args: list[str] | None = None,
        env: dict[str, str] | None = None,
        name: str | None = None,
        **options: Any,
    ) -> "MCPClient":
        return cls(name or command, "stdio", command=command, args=args, env=env, **options)

    @classmethod
    def create_sse(cls, url: str, name: str | None = None, **options: Any) -> "MCPClient":
        return cls(name or url, "sse", url=url, **options)

    @property
    def name(self) -> str:
        return self._name

    def clone(self) -> "MCPClient":
        """Unconnected client with the same server settings."""
        return MCPClient(
            self._name,
            self.transport,
            command=self.command,
            args=list(self.args),
            env=self.env,
            url=self.url,
            tool_priorities=dict(self.tool_priorities),
            restricted_tools=list(self.restricted_tools),
        )

    async def connect(self) -> None:
        """
        Open the transport and perform the MCP initialization handshake.

        Raises:
            Exception: Transport or handshake errors; the stack is closed first
        """
        if self._session is not None:
            return

        stack = AsyncExitStack()
        await stack.__aenter__()
        try:
            if self.transport == "stdio":
                params = StdioServerParameters(
                    command=self.command, args=self.args, env=self.env
                )
                read_stream, write_stream = await stack.enter_async_context(
                    stdio_client(params)
                )
            else:
                read_stream, write_stream = await stack.enter_async_context(
                    sse_client(self.url)
                )
            session = await stack.enter_async_context(
                ClientSession(read_stream, write_stream)
            )
            await session.initialize()
        except Exception as e:
            await stack.__aexit__(type(e), e, e.__traceback__)
            raise

        self._exit_stack = stack
        self._session = session
        self.logger.info("mcp_server_connected", transport=self.transport)

    async def disconnect(self) -> None:
        if self._exit_stack is None:
            return
        stack, self._exit_stack, self._session = self._exit_stack, None, None
        await stack.aclose()
        self.logger.info("mcp_server_disconnected")

    async def list_tools(self) -> list[dict[str, Any]]:
        """
        List the server's tools in registry form.

        Returns:
            Dicts with name, description, input_schema, priority and
            requires_approval
        """
        result = await self._require_session().list_tools()
        tools = [
            {
                "name": tool.name,
                "description": tool.description or "",
                "input_schema": tool.inputSchema or {"type": "object", "properties": {}},
                "priority": self.tool_priorities.get(tool.name, 0),
                "requires_approval": tool.name in self.restricted_tools,
            }
            for tool in result.tools
        ]
        self.logger.debug("mcp_tools_listed", tool_names=[t["name"] for t in tools])
        return tools

    async def invoke(self, tool_name: str, arguments: dict[str, Any]) -> str:
        """
        Call a tool and return its text output.

        Raises:
            ToolServerError: If the server flags the result as an error
        """
        result = await self._require_session().call_tool(tool_name, arguments)
        text = "\n".join(
            part.text for part in result.content if getattr(part, "type", None) == "text"
        )
        if result.isError:
            raise ToolServerError(text or f"MCP tool '{tool_name}' failed")
        return text

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise RuntimeError(f"MCP server '{self._name}' is not connected")
        return self._session
