"""
Domain Events for Loop Execution

Immutable facts the loop reports to its observer while it runs. They carry
no control flow: the loop behaves identically with or without an observer.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class LoopEventType(str, Enum):
    """Kind of progress event emitted by the loop."""

    EXECUTION_STARTED = "execution.started"
    EXECUTION_COMPLETED = "execution.completed"
    EXECUTION_SUSPENDED = "execution.suspended"
    EXECUTION_WAITING = "execution.waiting"
    EXECUTION_FAILED = "execution.failed"
    LLM_CALL_STARTED = "llm.call.started"
    LLM_CALL_COMPLETED = "llm.call.completed"
    TOOL_EXECUTING = "tool.executing"
    TOOL_DISPATCHED = "tool.dispatched"
    TOOL_BUDGET_WARNING = "tool.budget.warning"
    OUTPUT_VALIDATION_FAILED = "output.validation.failed"


@dataclass(frozen=True)
class LoopEvent:
    """
    A single progress event.

    Attributes:
        event_type: What happened
        conversation_id: Conversation the event belongs to
        data: Event-specific details (JSON-compatible)
        timestamp: When the event was created
    """

    event_type: LoopEventType
    conversation_id: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)
