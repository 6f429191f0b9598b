"""
Application Layer - Agent Factory

This module provides the dependency injection factory for creating
ResumableAgent instances and their executors from configuration profiles.

Key Responsibilities:
- Load configuration profiles (``configs/<profile>.yaml``)
- Instantiate infrastructure adapters (state stores, approval caches, LLM
  provider, local tools, MCP servers)
- Wire dependencies into the core domain ResumableAgent
"""

import importlib
from pathlib import Path
from typing import Any

import structlog
import yaml

from toolrelay.application.executor import AgentExecutor
from toolrelay.application.progress import ProgressBroadcaster
from toolrelay.core.domain.agent_loop import ResumableAgent
from toolrelay.core.domain.approval import APPROVAL_TOOL_PRIORITY, approval_tool_spec
from toolrelay.core.domain.budget import DEFAULT_MAX_TOOL_INTERACTIONS
from toolrelay.core.domain.registry import ServiceToolSpec, human_interaction_tool_spec
from toolrelay.core.interfaces.approval import ApprovalCacheProtocol
from toolrelay.core.interfaces.events import LoopObserverProtocol
from toolrelay.core.interfaces.llm import LLMProviderProtocol
from toolrelay.core.interfaces.state import StateStoreProtocol
from toolrelay.core.interfaces.tools import LocalToolProtocol, ToolServerFactory


class AgentFactory:
    """
    Factory for creating agents with dependency injection.

    Wires core domain objects with infrastructure adapters based on
    configuration profiles (dev/staging/prod).
    """

    def __init__(self, config_dir: str = "configs"):
        """
        Initialize AgentFactory with configuration directory.

        Args:
            config_dir: Path to directory containing profile YAML files
        """
        self.config_dir = Path(config_dir)
        self.logger = structlog.get_logger().bind(component="agent_factory")

    def create_agent(
        self,
        profile: str = "dev",
        observer: LoopObserverProtocol | None = None,
        llm_provider: LLMProviderProtocol | None = None,
    ) -> ResumableAgent:
        """
        Create a ResumableAgent from a configuration profile.

        Args:
            profile: Configuration profile name
            observer: Optional receiver of loop progress events
            llm_provider: Provider override; built from the ``llm`` section
                when omitted

        Returns:
            ResumableAgent with injected dependencies

        Raises:
            FileNotFoundError: If profile YAML not found
            ValueError: If configuration is invalid
            ToolRegistryError: If the configured tools conflict
        """
        config = self.load_profile(profile)
        return self._build_agent(config, profile, observer, llm_provider)

    def create_state_store(self, config: dict) -> StateStoreProtocol:
        """
        Create state store based on configuration.

        Args:
            config: Configuration dictionary

        Returns:
            StateStore implementation (in-memory or file-based)

        Raises:
            ValueError: If the persistence type is unknown
        """
        from toolrelay.infrastructure.persistence.locks import LockPolicy

        persistence_config = config.get("persistence", {})
        persistence_type = persistence_config.get("type", "memory")
        lock_policy = LockPolicy(
            ttl_ms=persistence_config.get("lock_ttl_ms", LockPolicy.ttl_ms),
            max_retries=persistence_config.get("lock_max_retries", LockPolicy.max_retries),
        )

        if persistence_type == "memory":
            from toolrelay.infrastructure.persistence.memory_state import InMemoryStateStore

            return InMemoryStateStore(lock_policy=lock_policy)

        elif persistence_type == "file":
            from toolrelay.infrastructure.persistence.file_state import FileStateStore

            work_dir = persistence_config.get("work_dir", ".toolrelay")
            return FileStateStore(work_dir=work_dir, lock_policy=lock_policy)

        else:
            raise ValueError(f"Unknown persistence type: {persistence_type}")

    def create_approval_cache(self, config: dict) -> ApprovalCacheProtocol:
        """
        Create approval cache based on configuration.

        Raises:
            ValueError: If the cache type is unknown
        """
        from toolrelay.infrastructure.persistence.approval_cache import (
            FileApprovalCache,
            InMemoryApprovalCache,
        )

        cache_config = config.get("approval_cache", {})
        cache_type = cache_config.get("type", "memory")

        if cache_type == "memory":
            return InMemoryApprovalCache()
        elif cache_type == "file":
            return FileApprovalCache(path=cache_config.get("path", ".toolrelay/approvals.yaml"))
        else:
            raise ValueError(f"Unknown approval cache type: {cache_type}")

    def create_executor(
        self,
        profile: str = "dev",
        llm_provider: LLMProviderProtocol | None = None,
    ) -> AgentExecutor:
        """
        Create an AgentExecutor with its agent, state store and progress broadcaster.

        Args:
            profile: Configuration profile name
            llm_provider: Provider override, mainly for tests

        Returns:
            AgentExecutor ready for start/resume and streaming calls
        """
        config = self.load_profile(profile)
        broadcaster = ProgressBroadcaster()
        agent = self._build_agent(config, profile, broadcaster, llm_provider)
        state_store = self.create_state_store(config)
        return AgentExecutor(agent=agent, state_store=state_store, broadcaster=broadcaster)

    def _build_agent(
        self,
        config: dict,
        profile: str,
        observer: LoopObserverProtocol | None,
        llm_provider: LLMProviderProtocol | None,
    ) -> ResumableAgent:
        agent_config = config.get("agent", {})
        name = agent_config.get("name", profile)

        self.logger.info("creating_agent", profile=profile, agent=name)

        approval_config = config.get("approval", {})
        approval_tool = None
        if approval_config.get("enabled", False):
            approval_tool = approval_tool_spec(
                priority=approval_config.get("priority", APPROVAL_TOOL_PRIORITY)
            )

        return ResumableAgent(
            name=name,
            llm_provider=llm_provider or self._create_llm_provider(config),
            service_tools=self._create_service_tools(config),
            local_tools=self._create_local_tools(config),
            tool_server_factories=self._create_tool_server_factories(config),
            approval_cache=self.create_approval_cache(config),
            approval_tool=approval_tool,
            system_prompt=agent_config.get("system_prompt"),
            output_schema=agent_config.get("output_schema"),
            max_tool_interactions=agent_config.get(
                "max_tool_interactions", DEFAULT_MAX_TOOL_INTERACTIONS
            ),
            observer=observer,
        )

    def load_profile(self, profile: str) -> dict:
        """
        Load configuration profile from YAML file.

        Args:
            profile: Profile name (dev/staging/prod)

        Returns:
            Configuration dictionary

        Raises:
            FileNotFoundError: If profile YAML not found
        """
        profile_path = self.config_dir / f"{profile}.yaml"

        if not profile_path.exists():
            self.logger.error(
                "profile_not_found",
                profile=profile,
                path=str(profile_path),
                hint="Ensure profile YAML exists in configs directory",
            )
            raise FileNotFoundError(f"Profile not found: {profile_path}")

        with open(profile_path, encoding="utf-8") as f:
            config = yaml.safe_load(f) or {}

        self.logger.debug("profile_loaded", profile=profile, config_keys=list(config.keys()))
        return config

    def _create_llm_provider(self, config: dict) -> LLMProviderProtocol:
        from toolrelay.infrastructure.llm.litellm_service import LiteLLMService

        llm_config = config.get("llm", {})
        return LiteLLMService(
            config_path=llm_config.get("config_path", "configs/llm_config.yaml"),
            model=llm_config.get("model"),
        )

    def _create_service_tools(self, config: dict) -> list[ServiceToolSpec]:
        service_tools = [
            ServiceToolSpec(
                name=spec["name"],
                description=spec.get("description", ""),
                input_schema=spec.get("input_schema") or {"type": "object", "properties": {}},
                priority=spec.get("priority", 0),
                requires_approval=spec.get("requires_approval", False),
            )
            for spec in config.get("service_tools", [])
        ]
        if config.get("human_interaction", {}).get("enabled", False):
            service_tools.append(human_interaction_tool_spec())
        return service_tools

    def _create_local_tools(self, config: dict) -> list[LocalToolProtocol]:
        tools = []
        for tool_spec in config.get("tools", []):
            tool = self._instantiate_tool(tool_spec)
            if tool:
                tools.append(tool)
        return tools

    def _instantiate_tool(self, tool_spec: dict) -> LocalToolProtocol | None:
        """
        Instantiate a local tool from configuration specification.

        Args:
            tool_spec: Tool specification dict with type, module, and params.
                Optional ``priority`` and ``requires_approval`` are set on the
                instance.

        Returns:
            Tool instance or None if instantiation fails
        """
        tool_type = tool_spec.get("type")
        tool_module = tool_spec.get("module")
        tool_params = dict(tool_spec.get("params", {}))

        if not tool_type or not tool_module:
            self.logger.warning(
                "invalid_tool_spec",
                tool_type=tool_type,
                tool_module=tool_module,
                hint="Tool spec must include 'type' and 'module'",
            )
            return None

        try:
            module = importlib.import_module(tool_module)
            tool_class = getattr(module, tool_type)
            tool_instance = tool_class(**tool_params)
        except Exception as e:
            self.logger.error(
                "tool_instantiation_failed",
                tool_type=tool_type,
                tool_module=tool_module,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        if "priority" in tool_spec:
            tool_instance.priority = tool_spec["priority"]
        if "requires_approval" in tool_spec:
            tool_instance.requires_approval = tool_spec["requires_approval"]

        self.logger.debug("tool_instantiated", tool_type=tool_type, tool_name=tool_instance.name)
        return tool_instance

    def _create_tool_server_factories(self, config: dict) -> list[ToolServerFactory]:
        """
        Create MCP client factories from configuration.

        Each server config is validated once here by building a template
        client; the agent clones it for every invocation.

        Example config:
            mcp_servers:
              - type: stdio
                command: python
                args: ["server.py"]
                env: {"API_KEY": "value"}
                restricted_tools: ["delete_file"]
              - type: sse
                url: http://localhost:8000/sse
                tool_priorities: {"search": 10}

        Raises:
            ValueError: If a server type is unknown or its settings are incomplete
        """
        from toolrelay.infrastructure.tools.mcp.client import MCPClient

        factories: list[ToolServerFactory] = []
        for server_config in config.get("mcp_servers", []):
            server_type = server_config.get("type")
            options: dict[str, Any] = {
                "name": server_config.get("name"),
                "tool_priorities": server_config.get("tool_priorities"),
                "restricted_tools": server_config.get("restricted_tools"),
            }

            if server_type == "stdio":
                client = MCPClient.create_stdio(
                    server_config.get("command"),
                    server_config.get("args", []),
                    server_config.get("env"),
                    **options,
                )
            elif server_type == "sse":
                client = MCPClient.create_sse(server_config.get("url"), **options)
            else:
                raise ValueError(
                    f"Unknown MCP server type: {server_type}. Supported types: 'stdio', 'sse'"
                )

            self.logger.debug("mcp_server_configured", server=client.name, server_type=server_type)
            factories.append(client.clone)
        return factories
