"""Approval Cache Protocol."""

from typing import Protocol

from toolrelay.core.domain.models import ApprovalDecision


class ApprovalCacheProtocol(Protocol):
    """
    Persistent store of approval decisions keyed by (agent identity, tool name).

    Reads happen without locking; concurrent conversations of different
    agents never share keys.
    """

    async def get_batched(
        self, agent_identity: str, tool_names: list[str]
    ) -> dict[str, ApprovalDecision]:
        """Return the known decisions for ``tool_names``; unknown tools are omitted."""
        ...

    async def set_batched(
        self, agent_identity: str, decisions: list[ApprovalDecision]
    ) -> None:
        """Store decisions, replacing earlier ones for the same tools."""
        ...
