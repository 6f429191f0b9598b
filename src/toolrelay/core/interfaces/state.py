"""
State Store Protocol

Durable storage for AgentState between loop invocations.
"""

from typing import Protocol

from toolrelay.core.domain.models import AgentState


class StateStoreProtocol(Protocol):
    """
    Key-value store for AgentState with optimistic concurrency and TTL locks.

    ``write`` compares ``previous_state.version`` (or "absent" when
    ``previous_state`` is None) with the stored version and raises
    StateConflictError on mismatch. The stored copy gets the next version and
    is returned.
    """

    async def read(self, conversation_id: str) -> AgentState | None:
        ...

    async def write(
        self,
        conversation_id: str,
        new_state: AgentState,
        previous_state: AgentState | None,
    ) -> AgentState:
        ...

    async def lock(self, conversation_id: str) -> bool:
        """Acquire the conversation lock; False if it is held elsewhere."""
        ...

    async def unlock(self, conversation_id: str) -> None:
        """Release the conversation lock; releasing an unheld lock is a no-op."""
        ...

    async def list_conversations(self) -> list[str]:
        ...
