"""
Resumable Agent - tool-calling execution loop with suspend/resume

The loop drives one conversation turn by turn:
1. Resolve tools (registry + approval gate) and build the model context
2. Call the model once per iteration (counted against the budget)
3. Tool calls → dispatch; local/MCP results are folded in and the loop
   continues, service calls suspend the loop and return their requests
4. Final content → validate; invalid output is fed back and retried

All progress lives in AgentState, a frozen value returned to the caller in
every ExecutionResult. Between ``start`` and any number of ``resume`` calls
nothing is kept on this object, so one ResumableAgent can serve many
conversations and any process can resume a persisted state.

Phases: INIT → AWAITING_MODEL → DISPATCHING → (AWAITING_MODEL |
SUSPENDED_FOR_TOOL_RESULTS) → ... → FINAL | ERROR
"""

from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import replace
from typing import Any

import structlog

from toolrelay.core.domain.approval import ApprovalGate, parse_approval_result
from toolrelay.core.domain.budget import DEFAULT_MAX_TOOL_INTERACTIONS, BudgetEnforcer
from toolrelay.core.domain.context import ContextBuilder
from toolrelay.core.domain.dispatcher import ToolDispatcher, serialize_tool_result
from toolrelay.core.domain.emitter import LoopEventEmitter
from toolrelay.core.domain.errors import (
    AgentLoopError,
    BudgetExceededError,
    ConversationClosedError,
    ModelInvocationError,
    RemoteToolFailureError,
)
from toolrelay.core.domain.events import LoopEventType
from toolrelay.core.domain.models import (
    AgentState,
    AwaitingToolCall,
    ExecutionResult,
    ExecutionStatus,
    LoopPhase,
    Message,
    ModelContext,
    ModelResponse,
    ResponseKind,
    ToolResultSubmission,
)
from toolrelay.core.domain.output import OutputValidator
from toolrelay.core.domain.registry import (
    ProtocolToolSpec,
    ServiceToolSpec,
    ToolRegistry,
)
from toolrelay.core.interfaces.approval import ApprovalCacheProtocol
from toolrelay.core.interfaces.events import LoopObserverProtocol
from toolrelay.core.interfaces.llm import LLMProviderProtocol
from toolrelay.core.interfaces.tools import LocalToolProtocol, ToolServerFactory
from toolrelay.core.prompts.loop_prompts import OUTPUT_VALIDATION_FEEDBACK


class ResumableAgent:
    """
    Tool-calling agent whose execution can pause for external tool results.

    ``start`` opens a conversation, ``resume`` continues it with service tool
    results. Both return an ExecutionResult that is COMPLETED (final output),
    SUSPENDED (service tool requests to dispatch) or WAITING (some results
    are still outstanding). Fatal conditions raise an AgentLoopError carrying
    the AgentState at the point of failure.
    """

    def __init__(
        self,
        name: str,
        llm_provider: LLMProviderProtocol,
        service_tools: list[ServiceToolSpec] | None = None,
        local_tools: list[LocalToolProtocol] | None = None,
        tool_server_factories: list[ToolServerFactory] | None = None,
        approval_cache: ApprovalCacheProtocol | None = None,
        approval_tool: ServiceToolSpec | None = None,
        system_prompt: str | None = None,
        output_schema: dict[str, Any] | None = None,
        max_tool_interactions: int = DEFAULT_MAX_TOOL_INTERACTIONS,
        observer: LoopObserverProtocol | None = None,
    ):
        """
        Initialize ResumableAgent with injected collaborators.

        Args:
            name: Agent identity; also the approval cache key
            llm_provider: Model invocation adapter
            service_tools: Tools executed by remote services
            local_tools: In-process tools
            tool_server_factories: Builders of MCP server clients; each
                invocation connects its own fresh client per server
            approval_cache: Cache of approval decisions
            approval_tool: Service tool used to request approvals; required
                when any tool is restricted
            system_prompt: Base system prompt
            output_schema: JSON schema the final answer must satisfy
            max_tool_interactions: Maximum number of model calls
            observer: Receiver of progress events

        Raises:
            ToolRegistryError: If the static tool configuration is invalid
            ValueError: If max_tool_interactions is below 1
        """
        if max_tool_interactions < 1:
            raise ValueError("max_tool_interactions must be at least 1")

        self.name = name
        self.llm_provider = llm_provider
        self.local_tools = list(local_tools or [])
        self.tool_server_factories = list(tool_server_factories or [])
        self.approval_tool_name = approval_tool.name if approval_tool else None
        self.service_tools = list(service_tools or [])
        if approval_tool is not None:
            self.service_tools.append(approval_tool)
        self.output_schema = output_schema
        self.max_tool_interactions = max_tool_interactions
        self.observer = observer
        self.logger = structlog.get_logger().bind(component="resumable_agent", agent=name)

        self.registry = ToolRegistry(approval_tool_name=self.approval_tool_name)
        self.approval_gate = ApprovalGate(agent_identity=name, cache=approval_cache)
        self.context_builder = ContextBuilder(
            system_prompt=system_prompt,
            approval_tool_name=self.approval_tool_name,
            output_schema=output_schema,
        )
        self.dispatcher = ToolDispatcher(approval_tool_name=self.approval_tool_name)
        self.validator = OutputValidator(output_schema)

        # Static sources are checked once so conflicts fail before any run
        self.registry.build(self.service_tools, [], self.local_tools)

    async def start(self, conversation_id: str, message: str | Message) -> ExecutionResult:
        """
        Open a conversation with its first user message and run the loop.

        Args:
            conversation_id: Identity of the conversation (for logs and events)
            message: First user message, as text or a prepared Message

        Returns:
            COMPLETED or SUSPENDED ExecutionResult

        Raises:
            AgentLoopError: On budget exhaustion, registry conflicts or model
                failures
        """
        first = message if isinstance(message, Message) else Message.user_text(message)
        state = AgentState.initial(first, self.max_tool_interactions)
        emitter = LoopEventEmitter(self.observer, conversation_id)

        self.logger.info("conversation_start", conversation_id=conversation_id)
        await emitter.emit(LoopEventType.EXECUTION_STARTED, resumed=False)
        return await self._run(conversation_id, state, emitter)

    async def resume(
        self,
        conversation_id: str,
        state: AgentState,
        results: list[ToolResultSubmission],
    ) -> ExecutionResult:
        """
        Continue a suspended conversation with service tool results.

        Results are matched by correlation id. Unknown and already-resolved
        ids are ignored. Approval decisions are written to the approval cache
        as soon as they arrive. The model is called again only when every
        awaited result is present; before that the result is WAITING.

        Args:
            conversation_id: Identity of the conversation
            state: Persisted AgentState returned by the previous invocation
            results: Newly delivered tool results

        Returns:
            WAITING, COMPLETED or SUSPENDED ExecutionResult

        Raises:
            ConversationClosedError: If the state already ended in FINAL or ERROR
            RemoteToolFailureError: If a delivered result reports failure
            AgentLoopError: Any fatal error of the continued run
        """
        emitter = LoopEventEmitter(self.observer, conversation_id)

        if state.phase in (LoopPhase.FINAL, LoopPhase.ERROR):
            self.logger.warning(
                "resume_of_closed_conversation",
                conversation_id=conversation_id,
                phase=state.phase.value,
                correlation_ids=[r.correlation_id for r in results],
            )
            raise ConversationClosedError(
                f"Conversation {conversation_id} ended in phase {state.phase.value}",
                state,
            )

        if not state.is_suspended:
            self.logger.warning(
                "resume_without_pending_calls",
                conversation_id=conversation_id,
                phase=state.phase.value,
                correlation_ids=[r.correlation_id for r in results],
            )
            return ExecutionResult(
                conversation_id=conversation_id,
                status=ExecutionStatus.WAITING,
                state=state,
            )

        awaiting = dict(state.awaiting_tool_calls)
        decisions = []
        for submission in results:
            call = awaiting.get(submission.correlation_id)
            if call is None:
                self.logger.warning(
                    "tool_result_unknown_correlation_id",
                    conversation_id=conversation_id,
                    correlation_id=submission.correlation_id,
                )
                continue
            if call.resolved:
                self.logger.warning(
                    "tool_result_duplicate",
                    conversation_id=conversation_id,
                    correlation_id=submission.correlation_id,
                )
                continue
            if submission.is_error:
                failed = replace(state, awaiting_tool_calls=awaiting, phase=LoopPhase.ERROR)
                reason = submission.error_message or "remote tool reported a failure"
                await emitter.emit(
                    LoopEventType.EXECUTION_FAILED,
                    error=reason,
                    tool=call.tool_name,
                    correlation_id=submission.correlation_id,
                )
                self.logger.error(
                    "service_tool_failed",
                    conversation_id=conversation_id,
                    tool=call.tool_name,
                    correlation_id=submission.correlation_id,
                    error=reason,
                )
                await self.approval_gate.record(decisions)
                raise RemoteToolFailureError(
                    submission.correlation_id, call.tool_name, reason, failed
                )

            result_data = submission.result_data if submission.result_data is not None else {}
            if call.tool_name == self.approval_tool_name:
                decisions.extend(parse_approval_result(result_data))
            awaiting[submission.correlation_id] = replace(call, result=result_data)

        await self.approval_gate.record(decisions)

        merged = replace(state, awaiting_tool_calls=awaiting)
        pending = merged.pending_correlation_ids
        if pending:
            self.logger.info(
                "conversation_waiting",
                conversation_id=conversation_id,
                pending=pending,
            )
            await emitter.emit(LoopEventType.EXECUTION_WAITING, pending=pending)
            return ExecutionResult(
                conversation_id=conversation_id,
                status=ExecutionStatus.WAITING,
                state=merged,
            )

        folded = [
            Message.tool_result(correlation_id, serialize_tool_result(call.result))
            for correlation_id, call in awaiting.items()
        ]
        resumed = replace(
            merged.append(*folded),
            awaiting_tool_calls={},
            phase=LoopPhase.AWAITING_MODEL,
        )
        self.logger.info(
            "conversation_resume",
            conversation_id=conversation_id,
            results=len(folded),
        )
        await emitter.emit(LoopEventType.EXECUTION_STARTED, resumed=True)
        return await self._run(conversation_id, resumed, emitter)

    async def list_tools(self) -> list[dict[str, Any]]:
        """Describe every tool the model can currently see, approval applied."""
        async with self._protocol_tools() as protocol_tools:
            registry = self.registry.build(self.service_tools, protocol_tools, self.local_tools)
            tools = await self.approval_gate.resolve(registry)
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "kind": tool.kind.value,
                "priority": tool.priority,
                "requires_approval": tool.requires_approval,
                "input_schema": tool.input_schema,
            }
            for tool in tools.values()
        ]

    async def _run(
        self, conversation_id: str, state: AgentState, emitter: LoopEventEmitter
    ) -> ExecutionResult:
        try:
            async with self._protocol_tools() as protocol_tools:
                registry = self.registry.build(
                    self.service_tools, protocol_tools, self.local_tools
                )
                return await self._loop(conversation_id, state, registry, emitter)
        except AgentLoopError as e:
            if e.state is None:
                e.state = replace(state, phase=LoopPhase.ERROR)
            self.logger.error(
                "conversation_failed",
                conversation_id=conversation_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            await emitter.emit(
                LoopEventType.EXECUTION_FAILED, error=str(e), error_type=type(e).__name__
            )
            raise

    async def _loop(
        self,
        conversation_id: str,
        state: AgentState,
        registry: dict,
        emitter: LoopEventEmitter,
    ) -> ExecutionResult:
        while True:
            if BudgetEnforcer.check(state.tool_interactions).exhausted:
                raise BudgetExceededError(
                    f"Tool interaction budget of {state.tool_interactions.max} model "
                    "calls exhausted without a final answer",
                    replace(state, phase=LoopPhase.ERROR),
                )

            tools = await self.approval_gate.resolve(registry)
            context = self.context_builder.build(
                state.messages, tools, state.tool_interactions
            )
            if len(context.messages) > len(state.messages):
                self.logger.info(
                    "tool_limit_directive_injected",
                    conversation_id=conversation_id,
                    current=state.tool_interactions.current,
                    max=state.tool_interactions.max,
                )
                await emitter.emit(
                    LoopEventType.TOOL_BUDGET_WARNING,
                    current=state.tool_interactions.current,
                    max=state.tool_interactions.max,
                )
            state = replace(state, messages=context.messages, phase=LoopPhase.AWAITING_MODEL)

            await emitter.emit(
                LoopEventType.LLM_CALL_STARTED,
                call=state.tool_interactions.current + 1,
                max=state.tool_interactions.max,
            )
            response = await self._invoke_model(context, state)
            state = replace(
                state,
                tool_interactions=BudgetEnforcer.consume(state.tool_interactions),
                total_usage_units=state.total_usage_units + response.usage.units,
            )
            await emitter.emit(
                LoopEventType.LLM_CALL_COMPLETED,
                kind=response.kind.value,
                usage_units=response.usage.units,
            )
            self.logger.info(
                "model_response_received",
                conversation_id=conversation_id,
                kind=response.kind.value,
                call=state.tool_interactions.current,
                tools=[r.name for r in response.tool_requests],
            )

            if response.kind is ResponseKind.TOOL_CALL:
                state = replace(state, phase=LoopPhase.DISPATCHING)
                outcome = await self.dispatcher.dispatch(
                    list(response.tool_requests), tools, emitter
                )
                state = state.append(*outcome.messages)

                if outcome.service_requests:
                    state = replace(
                        state,
                        awaiting_tool_calls={
                            r.correlation_id: AwaitingToolCall(tool_name=r.tool_name)
                            for r in outcome.service_requests
                        },
                        phase=LoopPhase.SUSPENDED_FOR_TOOL_RESULTS,
                    )
                    self.logger.info(
                        "conversation_suspended",
                        conversation_id=conversation_id,
                        pending=[r.correlation_id for r in outcome.service_requests],
                    )
                    await emitter.emit(
                        LoopEventType.EXECUTION_SUSPENDED,
                        pending=[r.to_dict() for r in outcome.service_requests],
                    )
                    return ExecutionResult(
                        conversation_id=conversation_id,
                        status=ExecutionStatus.SUSPENDED,
                        state=state,
                        pending_tool_requests=outcome.service_requests,
                    )
                continue

            validation = self.validator.validate(response)
            if response.content:
                state = state.append(Message.assistant_text(response.content))
            if not validation.valid:
                self.logger.warning(
                    "output_validation_failed",
                    conversation_id=conversation_id,
                    error=validation.error,
                )
                await emitter.emit(LoopEventType.OUTPUT_VALIDATION_FAILED, error=validation.error)
                state = state.append(
                    Message.user_text(OUTPUT_VALIDATION_FEEDBACK.format(error=validation.error))
                )
                continue

            state = replace(state, phase=LoopPhase.FINAL)
            self.logger.info(
                "conversation_completed",
                conversation_id=conversation_id,
                model_calls=state.tool_interactions.current,
                usage_units=state.total_usage_units,
            )
            await emitter.emit(LoopEventType.EXECUTION_COMPLETED, output=validation.output)
            return ExecutionResult(
                conversation_id=conversation_id,
                status=ExecutionStatus.COMPLETED,
                state=state,
                final_output=validation.output,
            )

    async def _invoke_model(self, context: ModelContext, state: AgentState) -> ModelResponse:
        try:
            return await self.llm_provider.invoke(context, self.output_schema)
        except AgentLoopError as e:
            if e.state is None:
                e.state = replace(state, phase=LoopPhase.ERROR)
            raise
        except Exception as e:
            raise ModelInvocationError(
                f"Model invocation failed: {e}", replace(state, phase=LoopPhase.ERROR)
            ) from e

    @asynccontextmanager
    async def _protocol_tools(self) -> AsyncIterator[list[ProtocolToolSpec]]:
        """Connect a fresh client per MCP server for one invocation and list its tools."""
        async with AsyncExitStack() as stack:
            specs: list[ProtocolToolSpec] = []
            for make_server in self.tool_server_factories:
                server = make_server()
                try:
                    await server.connect()
                    stack.push_async_callback(server.disconnect)
                    listed = await server.list_tools()
                except Exception as e:
                    self.logger.warning(
                        "tool_server_connection_failed",
                        server=server.name,
                        error=str(e),
                        error_type=type(e).__name__,
                        hint="Agent will continue without this tool server",
                    )
                    continue

                for tool in listed:
                    specs.append(
                        ProtocolToolSpec(
                            server=server,
                            name=tool["name"],
                            description=tool.get("description") or "",
                            input_schema=tool.get("input_schema") or {},
                            priority=tool.get("priority", 0),
                            requires_approval=tool.get("requires_approval", False),
                        )
                    )
            yield specs
