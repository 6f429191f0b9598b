"""
Application Layer - Agent Executor Service

This module provides the service layer that runs the resumable loop against
a state store. Both CLI and API entrypoints use it.

The AgentExecutor:
- Serializes work per conversation through the store's TTL lock
- Reads the persisted AgentState, runs ``start`` or ``resume``, and writes
  the new state with optimistic concurrency
- Persists the failing state of fatal loop errors before re-raising
- Streams loop progress as ProgressUpdate items
"""

import asyncio
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import structlog

from toolrelay.application.progress import ProgressBroadcaster, ProgressUpdate, event_to_update
from toolrelay.core.domain.agent_loop import ResumableAgent
from toolrelay.core.domain.errors import (
    AgentLoopError,
    ConversationBusyError,
    ConversationExistsError,
    ConversationNotFoundError,
    StateConflictError,
)
from toolrelay.core.domain.identifiers import validate_conversation_id
from toolrelay.core.domain.models import (
    AgentState,
    ExecutionResult,
    ExecutionStatus,
    Message,
    ToolResultSubmission,
)
from toolrelay.core.interfaces.state import StateStoreProtocol

logger = structlog.get_logger()


class AgentExecutor:
    """Service layer orchestrating conversations of one ResumableAgent.

    Decouples the domain loop from the presentation layer (CLI/API): the loop
    never touches storage, the executor never touches model or tools.
    """

    def __init__(
        self,
        agent: ResumableAgent,
        state_store: StateStoreProtocol,
        broadcaster: ProgressBroadcaster | None = None,
    ):
        """Initialize AgentExecutor.

        Args:
            agent: Loop to drive
            state_store: Persistence for AgentState between invocations
            broadcaster: Observer the agent was built with; needed for the
                streaming methods
        """
        self.agent = agent
        self.state_store = state_store
        self.broadcaster = broadcaster
        self.logger = logger.bind(component="agent_executor", agent=agent.name)

    async def start_conversation(
        self, message: str | Message, conversation_id: str | None = None
    ) -> ExecutionResult:
        """Open a conversation and run the loop until it completes or suspends.

        Args:
            message: First user message
            conversation_id: Optional id; generated when omitted

        Returns:
            ExecutionResult whose state carries the persisted version

        Raises:
            InvalidConversationIdError: If the id is not a valid storage key
            ConversationExistsError: If the id is already in use
            ConversationBusyError: If the conversation is locked
            AgentLoopError: On fatal loop errors (state persisted first)
        """
        conversation_id = validate_conversation_id(
            conversation_id or self._generate_conversation_id()
        )
        start_time = datetime.now()
        self.logger.info("conversation.start.started", conversation_id=conversation_id)

        async with self._conversation_lock(conversation_id):
            previous = await self.state_store.read(conversation_id)
            if previous is not None:
                raise ConversationExistsError(
                    f"Conversation already exists: {conversation_id}"
                )
            result = await self._run_and_persist(
                conversation_id,
                previous,
                lambda: self.agent.start(conversation_id, message),
            )

        self.logger.info(
            "conversation.start.completed",
            conversation_id=conversation_id,
            status=result.status.value,
            duration_seconds=(datetime.now() - start_time).total_seconds(),
        )
        return result

    async def submit_tool_results(
        self, conversation_id: str, results: list[ToolResultSubmission]
    ) -> ExecutionResult:
        """Deliver service tool results and continue the conversation.

        Raises:
            InvalidConversationIdError: If the id is not a valid storage key
            ConversationNotFoundError: If nothing is persisted for the id
            ConversationBusyError: If the conversation is locked
            AgentLoopError: On fatal loop errors (state persisted first)
        """
        validate_conversation_id(conversation_id)
        start_time = datetime.now()
        self.logger.info(
            "conversation.resume.started",
            conversation_id=conversation_id,
            correlation_ids=[r.correlation_id for r in results],
        )

        async with self._conversation_lock(conversation_id):
            previous = await self.state_store.read(conversation_id)
            if previous is None:
                raise ConversationNotFoundError(f"Conversation not found: {conversation_id}")
            result = await self._run_and_persist(
                conversation_id,
                previous,
                lambda: self.agent.resume(conversation_id, previous, results),
            )

        self.logger.info(
            "conversation.resume.completed",
            conversation_id=conversation_id,
            status=result.status.value,
            duration_seconds=(datetime.now() - start_time).total_seconds(),
        )
        return result

    async def get_state(self, conversation_id: str) -> AgentState:
        validate_conversation_id(conversation_id)
        state = await self.state_store.read(conversation_id)
        if state is None:
            raise ConversationNotFoundError(f"Conversation not found: {conversation_id}")
        return state

    async def list_conversations(self) -> list[str]:
        return await self.state_store.list_conversations()

    async def list_tools(self) -> list[dict[str, Any]]:
        return await self.agent.list_tools()

    async def stream_start_conversation(
        self, message: str | Message, conversation_id: str | None = None
    ) -> AsyncIterator[ProgressUpdate]:
        """Start a conversation, yielding progress updates and a closing "result" update."""
        conversation_id = conversation_id or self._generate_conversation_id()
        async for update in self._stream(
            conversation_id, lambda: self.start_conversation(message, conversation_id)
        ):
            yield update

    async def stream_submit_tool_results(
        self, conversation_id: str, results: list[ToolResultSubmission]
    ) -> AsyncIterator[ProgressUpdate]:
        """Resume a conversation, yielding progress updates and a closing "result" update."""
        async for update in self._stream(
            conversation_id, lambda: self.submit_tool_results(conversation_id, results)
        ):
            yield update

    async def _run_and_persist(
        self,
        conversation_id: str,
        previous: AgentState | None,
        run: Callable[[], Awaitable[ExecutionResult]],
    ) -> ExecutionResult:
        try:
            result = await run()
        except AgentLoopError as e:
            await self._persist_failure(conversation_id, e, previous)
            raise

        if result.state is not previous:
            result.state = await self.state_store.write(
                conversation_id, result.state, previous
            )
        return result

    async def _persist_failure(
        self, conversation_id: str, error: AgentLoopError, previous: AgentState | None
    ) -> None:
        self.logger.error(
            "conversation.failed",
            conversation_id=conversation_id,
            error=str(error),
            error_type=type(error).__name__,
        )
        if error.state is None or error.state is previous:
            return
        try:
            error.state = await self.state_store.write(conversation_id, error.state, previous)
        except StateConflictError as conflict:
            self.logger.warning(
                "conversation.failure_state_not_saved",
                conversation_id=conversation_id,
                error=str(conflict),
            )

    @asynccontextmanager
    async def _conversation_lock(self, conversation_id: str):
        if not await self.state_store.lock(conversation_id):
            raise ConversationBusyError(
                f"Conversation {conversation_id} is being processed by another execution"
            )
        try:
            yield
        finally:
            await self.state_store.unlock(conversation_id)

    async def _stream(
        self,
        conversation_id: str,
        run: Callable[[], Awaitable[ExecutionResult]],
    ) -> AsyncIterator[ProgressUpdate]:
        if self.broadcaster is None:
            raise RuntimeError("Streaming requires an executor built with a ProgressBroadcaster")

        with self.broadcaster.subscribe(conversation_id) as queue:
            task = asyncio.create_task(run())
            while not task.done() or not queue.empty():
                getter = asyncio.create_task(queue.get())
                done, _ = await asyncio.wait(
                    {task, getter}, return_when=asyncio.FIRST_COMPLETED
                )
                if getter in done:
                    yield event_to_update(getter.result())
                else:
                    getter.cancel()

            try:
                result = task.result()
            except Exception as e:
                yield ProgressUpdate(
                    timestamp=datetime.now(),
                    event_type="error",
                    message=f"Execution failed: {e}",
                    details={"error": str(e), "error_type": type(e).__name__},
                )
                raise

        yield ProgressUpdate(
            timestamp=datetime.now(),
            event_type="result",
            message=f"Conversation {result.status.value}",
            details=result_summary(result),
        )

    def _generate_conversation_id(self) -> str:
        return str(uuid.uuid4())


def result_summary(result: ExecutionResult) -> dict[str, Any]:
    """JSON-compatible view of an ExecutionResult for CLI and API output."""
    summary: dict[str, Any] = {
        "conversation_id": result.conversation_id,
        "status": result.status.value,
        "phase": result.state.phase.value,
        "tool_interactions": {
            "current": result.state.tool_interactions.current,
            "max": result.state.tool_interactions.max,
        },
        "usage_units": result.state.total_usage_units,
    }
    if result.status is ExecutionStatus.COMPLETED:
        summary["final_output"] = result.final_output
    elif result.status is ExecutionStatus.SUSPENDED:
        summary["pending_tool_requests"] = [r.to_dict() for r in result.pending_tool_requests]
    else:
        summary["awaiting"] = result.state.pending_correlation_ids
    return summary
