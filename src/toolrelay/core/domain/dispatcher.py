"""
Tool Dispatcher

Executes the tool calls of one model response:
1. Keep only the requests targeting the highest-priority tools
2. Record every kept request as an assistant tool_use message
3. Reject unknown, still-restricted or invalid calls with error tool results
4. Run local and MCP tools concurrently, isolating their failures
5. Turn service tool calls into DispatchRequests for the event system
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

import structlog

from toolrelay.core.domain.emitter import LoopEventEmitter
from toolrelay.core.domain.events import LoopEventType
from toolrelay.core.domain.models import (
    DispatchRequest,
    Message,
    ToolDefinition,
    ToolKind,
    ToolRequest,
)
from toolrelay.core.domain.output import schema_violations
from toolrelay.core.prompts.loop_prompts import (
    APPROVAL_REQUIRED_ERROR,
    INVALID_TOOL_INPUT_ERROR,
    UNKNOWN_TOOL_ERROR,
)


def serialize_tool_result(result: Any) -> str:
    return json.dumps(result, ensure_ascii=False, default=str)


def error_tool_result(request_id: str, error: str, **details: Any) -> Message:
    payload = {"success": False, "error": error, **details}
    return Message.tool_result(request_id, serialize_tool_result(payload), is_error=True)


def prioritize(
    requests: list[ToolRequest], tools: dict[str, ToolDefinition]
) -> tuple[list[ToolRequest], list[ToolRequest]]:
    """
    Split requests into the highest-priority group and the rest.

    Requests for unknown tools count as priority 0.

    Returns:
        Tuple of (selected, discarded), each in request order
    """
    if not requests:
        return [], []

    def priority_of(request: ToolRequest) -> int:
        tool = tools.get(request.name)
        return tool.priority if tool is not None else 0

    top = max(priority_of(r) for r in requests)
    selected = [r for r in requests if priority_of(r) == top]
    discarded = [r for r in requests if priority_of(r) != top]
    return selected, discarded


@dataclass
class DispatchOutcome:
    """
    Attributes:
        messages: tool_use messages followed by the in-process tool results
        service_requests: Calls to hand to the event system
        discarded: Requests dropped by prioritization or as duplicates
    """

    messages: list[Message] = field(default_factory=list)
    service_requests: list[DispatchRequest] = field(default_factory=list)
    discarded: list[ToolRequest] = field(default_factory=list)


class ToolDispatcher:
    def __init__(self, approval_tool_name: str | None = None):
        self.approval_tool_name = approval_tool_name
        self.logger = structlog.get_logger().bind(component="tool_dispatcher")

    async def dispatch(
        self,
        requests: list[ToolRequest],
        tools: dict[str, ToolDefinition],
        emitter: LoopEventEmitter,
    ) -> DispatchOutcome:
        """
        Dispatch one batch of tool requests.

        Args:
            requests: Tool requests from the model, in model order
            tools: Approval-resolved tool definitions
            emitter: Event emitter of the running conversation

        Returns:
            DispatchOutcome; never raises for tool-level failures
        """
        selected, discarded = prioritize(requests, tools)
        outcome = DispatchOutcome(discarded=discarded)

        unique: list[ToolRequest] = []
        seen_ids: set[str] = set()
        for request in selected:
            if request.id in seen_ids:
                outcome.discarded.append(request)
                continue
            seen_ids.add(request.id)
            unique.append(request)

        if outcome.discarded:
            self.logger.info(
                "tool_requests_discarded",
                kept=[r.name for r in unique],
                discarded=[r.name for r in outcome.discarded],
            )

        # Transcript first: every kept call appears as tool_use, valid or not
        outcome.messages.extend(Message.tool_use(request) for request in unique)

        rejected: list[Message] = []
        in_process: list[tuple[ToolRequest, ToolDefinition]] = []
        for request in unique:
            tool = tools.get(request.name)
            rejection = self._reject(request, tool)
            if rejection is not None:
                rejected.append(rejection)
                continue

            if tool.kind is ToolKind.SERVICE:
                outcome.service_requests.append(
                    DispatchRequest(
                        correlation_id=request.id,
                        tool_name=tool.name,
                        input_data=dict(request.input_data),
                    )
                )
                await emitter.emit(
                    LoopEventType.TOOL_DISPATCHED,
                    tool=tool.name,
                    correlation_id=request.id,
                )
            else:
                in_process.append((request, tool))

        results = await asyncio.gather(
            *(self._execute(request, tool, emitter) for request, tool in in_process)
        )
        outcome.messages.extend(rejected)
        outcome.messages.extend(results)
        return outcome

    def _reject(self, request: ToolRequest, tool: ToolDefinition | None) -> Message | None:
        if tool is None:
            self.logger.warning("tool_not_found", tool=request.name, request_id=request.id)
            return error_tool_result(request.id, UNKNOWN_TOOL_ERROR.format(name=request.name))

        if tool.requires_approval:
            self.logger.warning("tool_requires_approval", tool=tool.name, request_id=request.id)
            return error_tool_result(
                request.id,
                APPROVAL_REQUIRED_ERROR.format(
                    name=tool.name, approval_tool=self.approval_tool_name
                ),
            )

        violations = schema_violations(tool.input_schema, request.input_data)
        if violations:
            self.logger.warning(
                "tool_input_invalid",
                tool=tool.name,
                request_id=request.id,
                violations=violations,
            )
            return error_tool_result(
                request.id,
                INVALID_TOOL_INPUT_ERROR.format(
                    name=tool.name, violations="\n".join(violations)
                ),
            )
        return None

    async def _execute(
        self, request: ToolRequest, tool: ToolDefinition, emitter: LoopEventEmitter
    ) -> Message:
        await emitter.emit(LoopEventType.TOOL_EXECUTING, tool=tool.name, kind=tool.kind.value)
        self.logger.info("tool_execute", tool=tool.name, kind=tool.kind.value)
        try:
            result = await tool.binding.execute(request.input_data)
        except Exception as e:
            self.logger.warning(
                "tool_failed",
                tool=tool.name,
                error=str(e),
                error_type=type(e).__name__,
            )
            return error_tool_result(request.id, str(e), error_type=type(e).__name__)

        return Message.tool_result(
            request.id,
            serialize_tool_result(result),
            is_error=not result.get("success", True),
        )
