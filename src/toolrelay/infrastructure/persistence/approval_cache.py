"""
Approval caches

ApprovalCacheProtocol implementations keyed by (agent identity, tool name):
- InMemoryApprovalCache: process-local dict
- FileApprovalCache: one YAML document, rewritten atomically on every change
"""

import os
import tempfile
from pathlib import Path
from typing import Any

import structlog
import yaml

from toolrelay.core.domain.models import ApprovalDecision

logger = structlog.get_logger()


class InMemoryApprovalCache:
    def __init__(self):
        self._decisions: dict[tuple[str, str], ApprovalDecision] = {}

    async def get_batched(
        self, agent_identity: str, tool_names: list[str]
    ) -> dict[str, ApprovalDecision]:
        found = {}
        for name in tool_names:
            decision = self._decisions.get((agent_identity, name))
            if decision is not None:
                found[name] = decision
        return found

    async def set_batched(
        self, agent_identity: str, decisions: list[ApprovalDecision]
    ) -> None:
        for decision in decisions:
            self._decisions[(agent_identity, decision.tool_name)] = decision


class FileApprovalCache:
    """
    YAML-backed approval cache.

    File layout::

        agent-name:
          tool_name: {approved: true, comment: "..."}

    Not safe for concurrent writers in separate processes.
    """

    def __init__(self, path: str = ".toolrelay/approvals.yaml"):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.logger = logger.bind(component="file_approval_cache")

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data or {}

    def _atomic_write_yaml(self, data: dict[str, Any]) -> None:
        temp_fd, temp_path = tempfile.mkstemp(
            dir=self.path.parent, suffix=".tmp", prefix=".approvals_"
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, default_flow_style=False, allow_unicode=True)
            os.replace(temp_path, self.path)
        except Exception:
            if Path(temp_path).exists():
                Path(temp_path).unlink()
            raise

    async def get_batched(
        self, agent_identity: str, tool_names: list[str]
    ) -> dict[str, ApprovalDecision]:
        agent_entries = self._load().get(agent_identity, {})
        return {
            name: ApprovalDecision(
                tool_name=name,
                approved=bool(agent_entries[name].get("approved", False)),
                comment=agent_entries[name].get("comment"),
            )
            for name in tool_names
            if name in agent_entries
        }

    async def set_batched(
        self, agent_identity: str, decisions: list[ApprovalDecision]
    ) -> None:
        data = self._load()
        agent_entries = data.setdefault(agent_identity, {})
        for decision in decisions:
            entry: dict[str, Any] = {"approved": decision.approved}
            if decision.comment:
                entry["comment"] = decision.comment
            agent_entries[decision.tool_name] = entry
        self._atomic_write_yaml(data)
        self.logger.debug(
            "approvals_written",
            agent=agent_identity,
            tools=[d.tool_name for d in decisions],
        )
