"""In-memory state store for tests and single-process deployments."""

import copy

import structlog

from toolrelay.core.domain.errors import StateConflictError
from toolrelay.core.domain.models import AgentState
from toolrelay.infrastructure.persistence.locks import LockPolicy, TTLLockTable


class InMemoryStateStore:
    """
    StateStoreProtocol implementation backed by a dict.

    States are kept in their serialized form so readers never share objects
    with writers.
    """

    def __init__(self, lock_policy: LockPolicy | None = None):
        self._states: dict[str, dict] = {}
        self._locks = TTLLockTable(lock_policy)
        self.logger = structlog.get_logger().bind(component="memory_state_store")

    async def read(self, conversation_id: str) -> AgentState | None:
        data = self._states.get(conversation_id)
        if data is None:
            return None
        return AgentState.from_dict(copy.deepcopy(data))

    async def write(
        self,
        conversation_id: str,
        new_state: AgentState,
        previous_state: AgentState | None,
    ) -> AgentState:
        stored = self._states.get(conversation_id)
        actual = stored["version"] if stored is not None else None
        expected = previous_state.version if previous_state is not None else None
        if actual != expected:
            raise StateConflictError(conversation_id, expected, actual)

        data = new_state.to_dict()
        data["version"] = (actual or 0) + 1
        self._states[conversation_id] = copy.deepcopy(data)
        self.logger.debug("state_saved", conversation_id=conversation_id, version=data["version"])
        return AgentState.from_dict(data)

    async def lock(self, conversation_id: str) -> bool:
        return await self._locks.acquire(conversation_id)

    async def unlock(self, conversation_id: str) -> None:
        self._locks.release(conversation_id)

    async def list_conversations(self) -> list[str]:
        return sorted(self._states)
