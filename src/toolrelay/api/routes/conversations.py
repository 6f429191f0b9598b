import json
from collections.abc import AsyncIterator
from dataclasses import asdict
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from toolrelay.api.dependencies import get_executor
from toolrelay.application.executor import AgentExecutor, result_summary
from toolrelay.application.progress import ProgressUpdate
from toolrelay.core.domain.errors import (
    AgentLoopError,
    ConversationBusyError,
    ConversationClosedError,
    ConversationExistsError,
    ConversationNotFoundError,
    InvalidConversationIdError,
    StateConflictError,
)
from toolrelay.core.domain.models import ToolResultSubmission

router = APIRouter()
logger = structlog.get_logger().bind(component="conversations_api")

CONFLICT_ERRORS = (
    ConversationBusyError,
    ConversationClosedError,
    ConversationExistsError,
    StateConflictError,
)
HANDLED_ERRORS = (
    AgentLoopError,
    ConversationNotFoundError,
    InvalidConversationIdError,
    *CONFLICT_ERRORS,
)


class StartConversationRequest(BaseModel):
    """Request to open a conversation."""
    message: str = Field(..., min_length=1)
    conversation_id: Optional[str] = None


class ToolResultModel(BaseModel):
    """Outcome of one dispatched service tool call."""
    correlation_id: str
    result_data: Optional[Any] = None
    is_error: bool = False
    error_message: Optional[str] = None


class SubmitToolResultsRequest(BaseModel):
    """Results for some or all outstanding correlation ids."""
    results: List[ToolResultModel] = Field(..., min_length=1)


class ExecutionResponse(BaseModel):
    """Outcome of a start or resume call."""
    conversation_id: str
    status: str
    phase: str
    tool_interactions: Dict[str, int]
    usage_units: int
    final_output: Optional[Any] = None
    pending_tool_requests: Optional[List[Dict[str, Any]]] = None
    awaiting: Optional[List[str]] = None


class ConversationStateResponse(BaseModel):
    """Persisted state of a conversation."""
    conversation_id: str
    state: Dict[str, Any]


def _to_submissions(request: SubmitToolResultsRequest) -> list[ToolResultSubmission]:
    return [
        ToolResultSubmission(
            correlation_id=r.correlation_id,
            result_data=r.result_data,
            is_error=r.is_error,
            error_message=r.error_message,
        )
        for r in request.results
    ]


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, InvalidConversationIdError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, CONFLICT_ERRORS):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ConversationNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    phase = e.state.phase.value if isinstance(e, AgentLoopError) and e.state else None
    return HTTPException(
        status_code=422,
        detail={"error": str(e), "error_type": type(e).__name__, "phase": phase},
    )


async def _sse(updates: AsyncIterator[ProgressUpdate]) -> AsyncIterator[str]:
    try:
        async for update in updates:
            # Serialize dataclass to JSON, handling datetime
            data = json.dumps(asdict(update), default=str)
            yield f"data: {data}\n\n"
    except HANDLED_ERRORS as e:
        # The error update has already been sent to the client
        logger.warning("stream_terminated", error=str(e), error_type=type(e).__name__)


@router.post("/conversations", response_model=ExecutionResponse)
async def start_conversation(
    request: StartConversationRequest,
    executor: AgentExecutor = Depends(get_executor),
):
    """Open a conversation and run until it completes or suspends."""
    try:
        result = await executor.start_conversation(request.message, request.conversation_id)
    except HANDLED_ERRORS as e:
        raise _http_error(e) from e
    return ExecutionResponse(**result_summary(result))


@router.post("/conversations/stream")
async def start_conversation_stream(
    request: StartConversationRequest,
    executor: AgentExecutor = Depends(get_executor),
):
    """Open a conversation with streaming progress via SSE."""
    updates = executor.stream_start_conversation(request.message, request.conversation_id)
    return StreamingResponse(_sse(updates), media_type="text/event-stream")


@router.post("/conversations/{conversation_id}/tool-results", response_model=ExecutionResponse)
async def submit_tool_results(
    conversation_id: str,
    request: SubmitToolResultsRequest,
    executor: AgentExecutor = Depends(get_executor),
):
    """Deliver service tool results; continues once every awaited result is in."""
    try:
        result = await executor.submit_tool_results(conversation_id, _to_submissions(request))
    except HANDLED_ERRORS as e:
        raise _http_error(e) from e
    return ExecutionResponse(**result_summary(result))


@router.post("/conversations/{conversation_id}/tool-results/stream")
async def submit_tool_results_stream(
    conversation_id: str,
    request: SubmitToolResultsRequest,
    executor: AgentExecutor = Depends(get_executor),
):
    """Deliver service tool results with streaming progress via SSE."""
    updates = executor.stream_submit_tool_results(conversation_id, _to_submissions(request))
    return StreamingResponse(_sse(updates), media_type="text/event-stream")


@router.get("/conversations", response_model=List[str])
async def list_conversations(executor: AgentExecutor = Depends(get_executor)):
    """List persisted conversation ids."""
    return await executor.list_conversations()


@router.get("/conversations/{conversation_id}", response_model=ConversationStateResponse)
async def get_conversation(
    conversation_id: str,
    executor: AgentExecutor = Depends(get_executor),
):
    """Return the persisted AgentState of a conversation."""
    try:
        state = await executor.get_state(conversation_id)
    except (ConversationNotFoundError, InvalidConversationIdError) as e:
        raise _http_error(e) from e
    return ConversationStateResponse(conversation_id=conversation_id, state=state.to_dict())


@router.get("/tools")
async def list_tools(executor: AgentExecutor = Depends(get_executor)):
    """Tools visible to the model, approval applied."""
    return await executor.list_tools()
