"""
Unit Tests for ResumableAgent

Tests the execution loop end to end with a scripted model: completion,
suspension and resumption, prioritization, approvals, budget enforcement,
output validation and error handling.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from toolrelay.core.domain.agent_loop import ResumableAgent
from toolrelay.core.domain.approval import approval_tool_spec
from toolrelay.core.domain.errors import (
    BudgetExceededError,
    ConversationClosedError,
    ModelInvocationError,
    RemoteToolFailureError,
    ToolRegistryConflictError,
)
from toolrelay.core.domain.events import LoopEventType
from toolrelay.core.domain.models import (
    ExecutionStatus,
    LoopPhase,
    Message,
    TextContent,
    ToolResultContent,
    ToolResultSubmission,
    ToolUseContent,
)
from toolrelay.core.domain.registry import ServiceToolSpec
from toolrelay.core.prompts.loop_prompts import APPROVAL_MARKER, TOOL_LIMIT_DIRECTIVE
from toolrelay.infrastructure.persistence.approval_cache import InMemoryApprovalCache
from toolrelay.infrastructure.tools.native.calculator_tool import CalculatorTool


@pytest.fixture
def weather_tool():
    return ServiceToolSpec(
        name="get_weather",
        description="Weather lookup",
        input_schema={
            "type": "object",
            "properties": {"city": {"type": "string"}},
            "required": ["city"],
        },
    )


@pytest.fixture
def observer():
    return AsyncMock()


@pytest.fixture
def agent(mock_llm_provider, weather_tool, add_tool, observer):
    """Agent with one service tool and one local tool."""
    return ResumableAgent(
        name="test-agent",
        llm_provider=mock_llm_provider,
        service_tools=[weather_tool],
        local_tools=[add_tool],
        max_tool_interactions=5,
        observer=observer,
    )


def contexts(llm):
    """Model contexts passed to each invoke call."""
    return [call.args[0] for call in llm.invoke.await_args_list]


def tool_results(state):
    return [m.content for m in state.messages if isinstance(m.content, ToolResultContent)]


def emitted(observer):
    return [call.args[0].event_type for call in observer.notify.await_args_list]


class TestConstruction:
    """Tests for ResumableAgent initialization."""

    def test_registry_conflict_fails_at_construction(self, mock_llm_provider, add_tool):
        """Test a service tool shadowing a local tool fails before any run."""
        with pytest.raises(ToolRegistryConflictError):
            ResumableAgent(
                name="a",
                llm_provider=mock_llm_provider,
                service_tools=[ServiceToolSpec(name="add", description="remote add")],
                local_tools=[add_tool],
            )

    def test_budget_must_allow_one_call(self, mock_llm_provider):
        """Test a budget below one model call is rejected."""
        with pytest.raises(ValueError):
            ResumableAgent(name="a", llm_provider=mock_llm_provider, max_tool_interactions=0)

    def test_approval_tool_registered_as_service_tool(self, mock_llm_provider):
        """Test the approval tool joins the service tools."""
        agent = ResumableAgent(
            name="a", llm_provider=mock_llm_provider, approval_tool=approval_tool_spec()
        )

        assert agent.approval_tool_name == "request_tool_approval"
        assert "request_tool_approval" in [t.name for t in agent.service_tools]


class TestStart:
    """Tests for ResumableAgent.start()."""

    @pytest.mark.asyncio
    async def test_direct_answer(self, agent, mock_llm_provider, text_response, observer):
        """Test a text answer completes the conversation in one call."""
        mock_llm_provider.invoke.side_effect = [text_response("Hello!")]

        result = await agent.start("conv-1", "Hi")

        assert result.status is ExecutionStatus.COMPLETED
        assert result.final_output == "Hello!"
        assert result.pending_tool_requests == []
        assert result.state.phase is LoopPhase.FINAL
        assert result.state.tool_interactions.current == 1
        assert result.state.total_usage_units == 15
        assert result.state.messages == (Message.user_text("Hi"), Message.assistant_text("Hello!"))
        assert emitted(observer)[0] is LoopEventType.EXECUTION_STARTED
        assert emitted(observer)[-1] is LoopEventType.EXECUTION_COMPLETED

    @pytest.mark.asyncio
    async def test_local_tool_then_answer(
        self, agent, mock_llm_provider, tool_call, text_response
    ):
        """Test local results are folded in and the model is called again."""
        mock_llm_provider.invoke.side_effect = [
            tool_call(("call_1", "add", {"a": 2, "b": 3})),
            text_response("2 + 3 = 5"),
        ]

        result = await agent.start("conv-1", "What is 2 + 3?")

        assert result.status is ExecutionStatus.COMPLETED
        assert result.state.tool_interactions.current == 2
        [tool_result] = tool_results(result.state)
        assert json.loads(tool_result.content) == {"success": True, "output": 5}
        second_context = contexts(mock_llm_provider)[1]
        assert isinstance(second_context.messages[-1].content, ToolResultContent)

    @pytest.mark.asyncio
    async def test_local_tool_failure_does_not_terminate(
        self, mock_llm_provider, tool_call, text_response
    ):
        """Test a throwing local tool becomes an error result and the loop continues."""
        agent = ResumableAgent(
            name="calc", llm_provider=mock_llm_provider, local_tools=[CalculatorTool()]
        )
        mock_llm_provider.invoke.side_effect = [
            tool_call(("call_1", "calculator", {"expression": "1 / 0"})),
            text_response("Division by zero is undefined."),
        ]

        result = await agent.start("conv-1", "What is 1 / 0?")

        assert result.status is ExecutionStatus.COMPLETED
        [tool_result] = tool_results(result.state)
        assert tool_result.is_error
        assert json.loads(tool_result.content)["error"] == "division by zero"

    @pytest.mark.asyncio
    async def test_unknown_tool_is_non_fatal(
        self, agent, mock_llm_provider, tool_call, text_response
    ):
        """Test an unknown tool yields an error result and the loop continues."""
        mock_llm_provider.invoke.side_effect = [
            tool_call(("call_1", "teleport", {})),
            text_response("I cannot do that."),
        ]

        result = await agent.start("conv-1", "Beam me up")

        assert result.status is ExecutionStatus.COMPLETED
        assert tool_results(result.state)[0].is_error
        assert mock_llm_provider.invoke.await_count == 2

    @pytest.mark.asyncio
    async def test_service_tool_suspends(self, agent, mock_llm_provider, tool_call, observer):
        """Test a service call suspends with its dispatch request."""
        mock_llm_provider.invoke.side_effect = [
            tool_call(("abc", "get_weather", {"city": "Graz"})),
        ]

        result = await agent.start("conv-1", "Weather in Graz?")

        assert result.status is ExecutionStatus.SUSPENDED
        assert result.final_output is None
        [request] = result.pending_tool_requests
        assert request.correlation_id == "abc"
        assert request.tool_name == "get_weather"
        assert request.input_data == {"city": "Graz"}
        assert result.state.phase is LoopPhase.SUSPENDED_FOR_TOOL_RESULTS
        assert result.state.pending_correlation_ids == ["abc"]
        assert isinstance(result.state.messages[-1].content, ToolUseContent)
        assert LoopEventType.EXECUTION_SUSPENDED in emitted(observer)

    @pytest.mark.asyncio
    async def test_only_highest_priority_tools_run(
        self, mock_llm_provider, tool_call, text_response
    ):
        """Test mixed-priority requests only execute the top-priority group."""
        search = MagicMock()
        search.name = "search"
        search.description = "Search"
        search.parameters_schema = {"type": "object", "properties": {}}
        search.priority = 0
        search.requires_approval = False
        search.execute = AsyncMock(return_value={"success": True, "output": "results"})
        approve = MagicMock()
        approve.name = "approve"
        approve.description = "Approve"
        approve.parameters_schema = {"type": "object", "properties": {}}
        approve.priority = 1
        approve.requires_approval = False
        approve.execute = AsyncMock(return_value={"success": True, "output": "approved"})

        agent = ResumableAgent(
            name="a", llm_provider=mock_llm_provider, local_tools=[search, approve]
        )
        mock_llm_provider.invoke.side_effect = [
            tool_call(("1", "search", {}), ("2", "approve", {})),
            text_response("done"),
        ]

        result = await agent.start("conv-1", "go")

        approve.execute.assert_awaited_once()
        search.execute.assert_not_awaited()
        assert [r.tool_use_id for r in tool_results(result.state)] == ["2"]

    @pytest.mark.asyncio
    async def test_output_validation_retry(self, mock_llm_provider, text_response, observer):
        """Test invalid JSON output is fed back and the next valid answer completes."""
        schema = {
            "type": "object",
            "properties": {"answer": {"type": "string"}},
            "required": ["answer"],
        }
        agent = ResumableAgent(
            name="a", llm_provider=mock_llm_provider, output_schema=schema, observer=observer
        )
        mock_llm_provider.invoke.side_effect = [
            text_response('{"answer": 42}'),
            text_response('{"answer": "42"}'),
        ]

        result = await agent.start("conv-1", "Answer?")

        assert result.status is ExecutionStatus.COMPLETED
        assert result.final_output == {"answer": "42"}
        assert result.state.phase is LoopPhase.FINAL
        assert result.state.tool_interactions.current == 2
        feedback = result.state.messages[2].content
        assert isinstance(feedback, TextContent)
        assert feedback.text.startswith("Your response failed validation")
        assert LoopEventType.OUTPUT_VALIDATION_FAILED in emitted(observer)
        for call in mock_llm_provider.invoke.await_args_list:
            assert call.args[1] == schema

    @pytest.mark.asyncio
    async def test_model_failure_raises_with_state(self, agent, mock_llm_provider, observer):
        """Test adapter exceptions become ModelInvocationError carrying the state."""
        mock_llm_provider.invoke.side_effect = RuntimeError("connection reset")

        with pytest.raises(ModelInvocationError) as exc_info:
            await agent.start("conv-1", "Hi")

        assert exc_info.value.state.phase is LoopPhase.ERROR
        assert exc_info.value.state.messages[0] == Message.user_text("Hi")
        assert emitted(observer)[-1] is LoopEventType.EXECUTION_FAILED


class TestBudget:
    """Tests for budget enforcement."""

    @pytest.mark.asyncio
    async def test_budget_of_three_calls(self, mock_llm_provider, add_tool, tool_call, observer):
        """Test max=3 allows three calls and injects the directive once, before call #3."""
        agent = ResumableAgent(
            name="a",
            llm_provider=mock_llm_provider,
            local_tools=[add_tool],
            max_tool_interactions=3,
            observer=observer,
        )
        mock_llm_provider.invoke.side_effect = [
            tool_call((f"call_{i}", "add", {"a": i, "b": i})) for i in range(1, 4)
        ]

        with pytest.raises(BudgetExceededError) as exc_info:
            await agent.start("conv-1", "Keep adding")

        assert mock_llm_provider.invoke.await_count == 3
        state = exc_info.value.state
        assert state.phase is LoopPhase.ERROR
        assert state.tool_interactions.current == 3
        directives = [m for m in state.messages if m == Message.user_text(TOOL_LIMIT_DIRECTIVE)]
        assert len(directives) == 1

        first, second, third = contexts(mock_llm_provider)
        assert Message.user_text(TOOL_LIMIT_DIRECTIVE) not in first.messages
        assert Message.user_text(TOOL_LIMIT_DIRECTIVE) not in second.messages
        assert third.messages[-1] == Message.user_text(TOOL_LIMIT_DIRECTIVE)
        assert emitted(observer).count(LoopEventType.TOOL_BUDGET_WARNING) == 1

    @pytest.mark.asyncio
    async def test_validation_retries_consume_budget(self, mock_llm_provider, text_response):
        """Test repeated invalid output ends in BudgetExceededError."""
        agent = ResumableAgent(
            name="a",
            llm_provider=mock_llm_provider,
            output_schema={"type": "object", "required": ["answer"]},
            max_tool_interactions=2,
        )
        mock_llm_provider.invoke.side_effect = [text_response("nope"), text_response("still no")]

        with pytest.raises(BudgetExceededError):
            await agent.start("conv-1", "Answer?")

        assert mock_llm_provider.invoke.await_count == 2


class TestResume:
    """Tests for ResumableAgent.resume()."""

    @pytest.mark.asyncio
    async def test_resume_folds_result_and_continues(
        self, agent, mock_llm_provider, tool_call, text_response
    ):
        """Test a delivered result is folded in and the model is called again."""
        mock_llm_provider.invoke.side_effect = [
            tool_call(("abc", "get_weather", {"city": "Graz"})),
            text_response("It is sunny in Graz."),
        ]
        suspended = await agent.start("conv-1", "Weather in Graz?")

        result = await agent.resume(
            "conv-1",
            suspended.state,
            [ToolResultSubmission(correlation_id="abc", result_data={"sky": "sunny"})],
        )

        assert result.status is ExecutionStatus.COMPLETED
        assert result.final_output == "It is sunny in Graz."
        assert result.state.awaiting_tool_calls == {}
        [tool_result] = tool_results(result.state)
        assert tool_result.tool_use_id == "abc"
        assert json.loads(tool_result.content) == {"sky": "sunny"}
        assert contexts(mock_llm_provider)[1].messages[-1].content == tool_result
        # The suspended snapshot is never mutated
        assert suspended.state.pending_correlation_ids == ["abc"]

    @pytest.mark.asyncio
    async def test_partial_results_wait_without_model_call(
        self, agent, mock_llm_provider, tool_call, text_response, observer
    ):
        """Test a strict subset of results returns WAITING and skips the model."""
        mock_llm_provider.invoke.side_effect = [
            tool_call(
                ("a", "get_weather", {"city": "Graz"}),
                ("b", "get_weather", {"city": "Wien"}),
            ),
            text_response("Both sunny."),
        ]
        suspended = await agent.start("conv-1", "Weather in Graz and Wien?")
        assert len(suspended.pending_tool_requests) == 2

        waiting = await agent.resume(
            "conv-1", suspended.state, [ToolResultSubmission("a", {"sky": "sunny"})]
        )

        assert waiting.status is ExecutionStatus.WAITING
        assert waiting.final_output is None
        assert waiting.pending_tool_requests == []
        assert waiting.state.pending_correlation_ids == ["b"]
        assert mock_llm_provider.invoke.await_count == 1
        assert LoopEventType.EXECUTION_WAITING in emitted(observer)

        done = await agent.resume(
            "conv-1", waiting.state, [ToolResultSubmission("b", {"sky": "sunny"})]
        )

        assert done.status is ExecutionStatus.COMPLETED
        assert [r.tool_use_id for r in tool_results(done.state)] == ["a", "b"]
        assert mock_llm_provider.invoke.await_count == 2

    @pytest.mark.asyncio
    async def test_unknown_and_duplicate_ids_ignored(self, agent, mock_llm_provider, tool_call):
        """Test unknown ids and already-resolved ids leave the state waiting."""
        mock_llm_provider.invoke.side_effect = [
            tool_call(("a", "get_weather", {"city": "Graz"}), ("b", "get_weather", {"city": "Wien"}))
        ]
        suspended = await agent.start("conv-1", "Weather?")
        waiting = await agent.resume("conv-1", suspended.state, [ToolResultSubmission("a", {"x": 1})])

        again = await agent.resume(
            "conv-1",
            waiting.state,
            [ToolResultSubmission("a", {"x": 2}), ToolResultSubmission("zzz", {"x": 3})],
        )

        assert again.status is ExecutionStatus.WAITING
        assert again.state.awaiting_tool_calls["a"].result == {"x": 1}
        assert again.state.pending_correlation_ids == ["b"]
        assert mock_llm_provider.invoke.await_count == 1

    @pytest.mark.asyncio
    async def test_null_result_counts_as_delivered(
        self, agent, mock_llm_provider, tool_call, text_response
    ):
        """Test a result without payload still resolves its call."""
        mock_llm_provider.invoke.side_effect = [
            tool_call(("a", "get_weather", {"city": "Graz"})),
            text_response("ok"),
        ]
        suspended = await agent.start("conv-1", "Weather?")

        result = await agent.resume("conv-1", suspended.state, [ToolResultSubmission("a")])

        assert result.status is ExecutionStatus.COMPLETED
        assert tool_results(result.state)[0].content == "{}"

    @pytest.mark.asyncio
    async def test_remote_failure_is_fatal(self, agent, mock_llm_provider, tool_call):
        """Test a failed remote leg raises RemoteToolFailureError with the state."""
        mock_llm_provider.invoke.side_effect = [tool_call(("abc", "get_weather", {"city": "Graz"}))]
        suspended = await agent.start("conv-1", "Weather?")

        with pytest.raises(RemoteToolFailureError) as exc_info:
            await agent.resume(
                "conv-1",
                suspended.state,
                [ToolResultSubmission("abc", is_error=True, error_message="service down")],
            )

        error = exc_info.value
        assert error.correlation_id == "abc"
        assert error.tool_name == "get_weather"
        assert "service down" in str(error)
        assert error.state.phase is LoopPhase.ERROR
        assert mock_llm_provider.invoke.await_count == 1

    @pytest.mark.asyncio
    async def test_resume_of_finished_conversation_rejected(
        self, agent, mock_llm_provider, text_response
    ):
        """Test a FINAL state cannot be resumed."""
        mock_llm_provider.invoke.side_effect = [text_response("done")]
        finished = await agent.start("conv-1", "Hi")

        with pytest.raises(ConversationClosedError) as exc_info:
            await agent.resume("conv-1", finished.state, [ToolResultSubmission("a", {})])

        assert exc_info.value.state is finished.state
        assert mock_llm_provider.invoke.await_count == 1

    @pytest.mark.asyncio
    async def test_resume_of_failed_conversation_rejected(
        self, agent, mock_llm_provider, tool_call, text_response, observer
    ):
        """Test an ERROR state stays failed even when its other calls are answered."""
        mock_llm_provider.invoke.side_effect = [
            tool_call(
                ("a", "get_weather", {"city": "Graz"}),
                ("b", "get_weather", {"city": "Wien"}),
            ),
            text_response("should not be reached"),
        ]
        suspended = await agent.start("conv-1", "Weather?")
        with pytest.raises(RemoteToolFailureError) as failure:
            await agent.resume(
                "conv-1", suspended.state, [ToolResultSubmission("a", is_error=True)]
            )
        failed = failure.value.state
        assert "b" in failed.pending_correlation_ids

        with pytest.raises(ConversationClosedError) as exc_info:
            await agent.resume("conv-1", failed, [ToolResultSubmission("b", {"sky": "sunny"})])

        assert exc_info.value.state.phase is LoopPhase.ERROR
        assert mock_llm_provider.invoke.await_count == 1
        assert emitted(observer).count(LoopEventType.EXECUTION_STARTED) == 1


class TestApprovalFlow:
    """Tests for restricted tools and the approval tool."""

    @pytest.fixture
    def email_tool(self):
        return ServiceToolSpec(
            name="send_email",
            description="Send an email",
            input_schema={"type": "object", "properties": {"to": {"type": "string"}}},
            requires_approval=True,
        )

    @pytest.fixture
    def cache(self):
        return InMemoryApprovalCache()

    @pytest.fixture
    def gated_agent(self, mock_llm_provider, email_tool, cache):
        return ResumableAgent(
            name="mailer",
            llm_provider=mock_llm_provider,
            service_tools=[email_tool],
            approval_cache=cache,
            approval_tool=approval_tool_spec(),
        )

    @pytest.mark.asyncio
    async def test_restricted_tool_marked_for_model(
        self, gated_agent, mock_llm_provider, text_response
    ):
        """Test restricted tools reach the model with the approval marker."""
        mock_llm_provider.invoke.side_effect = [text_response("ok")]

        await gated_agent.start("conv-1", "Send a mail")

        tools = {t.name: t for t in contexts(mock_llm_provider)[0].tools}
        assert tools["send_email"].description.startswith(APPROVAL_MARKER)
        assert "request_tool_approval" in tools

    @pytest.mark.asyncio
    async def test_direct_call_of_restricted_tool_rejected(
        self, gated_agent, mock_llm_provider, tool_call, text_response
    ):
        """Test calling a gated tool yields an error result instead of dispatch."""
        mock_llm_provider.invoke.side_effect = [
            tool_call(("1", "send_email", {"to": "a@b.c"})),
            text_response("I need approval first."),
        ]

        result = await gated_agent.start("conv-1", "Send a mail")

        assert result.status is ExecutionStatus.COMPLETED
        assert tool_results(result.state)[0].is_error

    @pytest.mark.asyncio
    async def test_approval_unlocks_tool(
        self, gated_agent, mock_llm_provider, tool_call, cache
    ):
        """Test an approval result is cached and the tool becomes callable."""
        mock_llm_provider.invoke.side_effect = [
            tool_call(
                (
                    "appr_1",
                    "request_tool_approval",
                    {"message": "Need to send mail", "tools": ["send_email"]},
                )
            ),
            tool_call(("mail_1", "send_email", {"to": "a@b.c"})),
        ]
        suspended = await gated_agent.start("conv-1", "Send a mail")
        assert suspended.pending_tool_requests[0].tool_name == "request_tool_approval"

        result = await gated_agent.resume(
            "conv-1",
            suspended.state,
            [
                ToolResultSubmission(
                    "appr_1", {"approvals": [{"tool": "send_email", "value": True}]}
                )
            ],
        )

        decisions = await cache.get_batched("mailer", ["send_email"])
        assert decisions["send_email"].approved is True
        tools = {t.name: t for t in contexts(mock_llm_provider)[1].tools}
        assert tools["send_email"].requires_approval is False
        assert tools["send_email"].description == "Send an email"
        assert result.status is ExecutionStatus.SUSPENDED
        assert result.pending_tool_requests[0].tool_name == "send_email"

    @pytest.mark.asyncio
    async def test_approval_kept_when_batch_contains_failure(
        self, mock_llm_provider, email_tool, cache, tool_call
    ):
        """Test decisions delivered next to a failed result still reach the cache."""
        agent = ResumableAgent(
            name="mailer",
            llm_provider=mock_llm_provider,
            service_tools=[
                email_tool,
                ServiceToolSpec(name="get_weather", description="Weather lookup", priority=100),
            ],
            approval_cache=cache,
            approval_tool=approval_tool_spec(),
        )
        mock_llm_provider.invoke.side_effect = [
            tool_call(
                (
                    "appr_1",
                    "request_tool_approval",
                    {"message": "Need to send mail", "tools": ["send_email"]},
                ),
                ("w_1", "get_weather", {"city": "Graz"}),
            )
        ]
        suspended = await agent.start("conv-1", "Send a mail")
        assert suspended.state.pending_correlation_ids == ["appr_1", "w_1"]

        with pytest.raises(RemoteToolFailureError):
            await agent.resume(
                "conv-1",
                suspended.state,
                [
                    ToolResultSubmission(
                        "appr_1", {"approvals": [{"tool": "send_email", "value": True}]}
                    ),
                    ToolResultSubmission("w_1", is_error=True, error_message="timeout"),
                ],
            )

        decisions = await cache.get_batched("mailer", ["send_email"])
        assert decisions["send_email"].approved is True


class FakeFileServer:
    """Tool server that only answers while its own connection is open."""

    name = "files"

    def __init__(self, gate=None, entered=None):
        self.gate = gate
        self.entered = entered
        self.connected = False

    async def connect(self):
        self.connected = True

    async def disconnect(self):
        self.connected = False

    async def list_tools(self):
        return [{"name": "read_file", "description": "Read a file", "input_schema": {}}]

    async def invoke(self, tool_name, arguments):
        if self.entered is not None:
            self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if not self.connected:
            raise RuntimeError("not connected")
        return "contents"


class TestToolServers:
    """Tests for MCP tool servers."""

    @pytest.fixture
    def server(self):
        server = MagicMock()
        server.name = "files"
        server.connect = AsyncMock()
        server.disconnect = AsyncMock()
        server.list_tools = AsyncMock(
            return_value=[
                {
                    "name": "read_file",
                    "description": "Read a file",
                    "input_schema": {"type": "object", "properties": {"path": {"type": "string"}}},
                }
            ]
        )
        server.invoke = AsyncMock(return_value="hello world")
        return server

    @pytest.mark.asyncio
    async def test_protocol_tool_invoked(
        self, mock_llm_provider, server, tool_call, text_response
    ):
        """Test MCP tools are listed, invoked and the server disconnected."""
        agent = ResumableAgent(
            name="a", llm_provider=mock_llm_provider, tool_server_factories=[lambda: server]
        )
        mock_llm_provider.invoke.side_effect = [
            tool_call(("1", "read_file", {"path": "a.txt"})),
            text_response("The file says hello world."),
        ]

        result = await agent.start("conv-1", "Read a.txt")

        assert result.status is ExecutionStatus.COMPLETED
        server.invoke.assert_awaited_once_with("read_file", {"path": "a.txt"})
        assert json.loads(tool_results(result.state)[0].content)["output"] == "hello world"
        server.connect.assert_awaited_once()
        server.disconnect.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unreachable_server_skipped(self, mock_llm_provider, server, text_response):
        """Test a server that fails to connect is left out of the registry."""
        server.connect.side_effect = OSError("not found")
        agent = ResumableAgent(
            name="a", llm_provider=mock_llm_provider, tool_server_factories=[lambda: server]
        )
        mock_llm_provider.invoke.side_effect = [text_response("ok")]

        result = await agent.start("conv-1", "Hi")

        assert result.status is ExecutionStatus.COMPLETED
        assert contexts(mock_llm_provider)[0].tools == ()
        server.disconnect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_list_tools(self, mock_llm_provider, server, add_tool):
        """Test list_tools describes every source."""
        agent = ResumableAgent(
            name="a",
            llm_provider=mock_llm_provider,
            local_tools=[add_tool],
            tool_server_factories=[lambda: server],
        )

        tools = {t["name"]: t for t in await agent.list_tools()}

        assert tools["add"]["kind"] == "local"
        assert tools["read_file"]["kind"] == "protocol"
        mock_llm_provider.invoke.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_concurrent_conversations_use_own_connections(
        self, mock_llm_provider, tool_call, text_response
    ):
        """Test one conversation finishing does not close another one's server connection."""
        gate = asyncio.Event()
        entered = asyncio.Event()
        servers = []

        def make_server():
            server = FakeFileServer(gate, entered) if not servers else FakeFileServer()
            servers.append(server)
            return server

        async def respond(context, output_schema):
            if isinstance(context.messages[-1].content, ToolResultContent):
                return text_response("done")
            return tool_call(("r1", "read_file", {"path": "a.txt"}))

        mock_llm_provider.invoke.side_effect = respond
        agent = ResumableAgent(
            name="a", llm_provider=mock_llm_provider, tool_server_factories=[make_server]
        )

        first = asyncio.create_task(agent.start("conv-a", "Read a.txt"))
        await asyncio.wait_for(entered.wait(), timeout=1)
        second = await agent.start("conv-b", "Read a.txt")
        gate.set()
        first_result = await first

        assert first_result.status is ExecutionStatus.COMPLETED
        assert second.status is ExecutionStatus.COMPLETED
        assert not tool_results(first_result.state)[0].is_error
        assert len(servers) == 2
        assert servers[0] is not servers[1]
        assert not any(s.connected for s in servers)
