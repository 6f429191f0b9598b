"""
Domain Errors

Fatal conditions of the execution loop. Non-fatal problems (unknown tools,
invalid tool input, failing local or MCP tools, invalid final output) never
raise: they are folded into the conversation as tool results or feedback
messages so the model can react.

Every loop error carries the AgentState current at the time of failure so
callers can persist it for diagnostics.
"""

from toolrelay.core.domain.models import AgentState


class AgentLoopError(Exception):
    """Base class for fatal errors raised from the loop entry points."""

    def __init__(self, message: str, state: AgentState | None = None):
        super().__init__(message)
        self.state = state


class ToolRegistryError(AgentLoopError):
    """Invalid tool configuration detected while building the registry."""


class ToolRegistryConflictError(ToolRegistryError):
    """Two tool sources expose the same tool name."""

    def __init__(self, tool_name: str, sources: tuple[str, str]):
        super().__init__(
            f"Tool name '{tool_name}' is defined by both {sources[0]} and {sources[1]} tools"
        )
        self.tool_name = tool_name
        self.sources = sources


class BudgetExceededError(AgentLoopError):
    """The model-call budget ran out before a final answer was produced."""


class RemoteToolFailureError(AgentLoopError):
    """A service tool reported failure of its remote leg."""

    def __init__(
        self,
        correlation_id: str,
        tool_name: str,
        reason: str,
        state: AgentState | None = None,
    ):
        super().__init__(
            f"Service tool '{tool_name}' failed (correlation id {correlation_id}): {reason}",
            state,
        )
        self.correlation_id = correlation_id
        self.tool_name = tool_name


class ModelInvocationError(AgentLoopError):
    """The model adapter could not produce a response."""


class StateConflictError(Exception):
    """A state write was based on a stale snapshot."""

    def __init__(self, conversation_id: str, expected: int | None, actual: int | None):
        super().__init__(
            f"Stale write for conversation {conversation_id}: "
            f"expected version {expected}, store has {actual}"
        )
        self.conversation_id = conversation_id


class ConversationBusyError(Exception):
    """Another execution holds the lock for this conversation."""


class ConversationNotFoundError(Exception):
    """No persisted state exists for the conversation."""


class ConversationExistsError(Exception):
    """A conversation with this id has already been started."""


class ConversationClosedError(AgentLoopError):
    """The conversation already ended in FINAL or ERROR and cannot be resumed."""


class InvalidConversationIdError(ValueError):
    """A conversation id is not usable as a storage key."""
