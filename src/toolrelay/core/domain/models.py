"""
Core Domain Models

This module defines the data model of the resumable tool-calling loop:
- Message content variants (text, media, tool_use, tool_result)
- ToolDefinition / ToolRequest / DispatchRequest for the three tool kinds
- AgentState, the only entity that crosses the suspend/resume boundary
- ExecutionResult, the tagged outcome of one loop invocation
- ModelContext / ModelResponse exchanged with the model adapter

AgentState and the message types are frozen values. Every transition in the
loop builds a new instance with ``dataclasses.replace``; a snapshot read from
the state store is never mutated in place.
"""

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, ClassVar


class Role(str, Enum):
    """Author of a conversation message."""

    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class TextContent:
    text: str

    kind: ClassVar[str] = "text"


@dataclass(frozen=True)
class MediaContent:
    """Binary or remote media attached to a message (base64 payload or URL)."""

    content: str
    content_type: str

    kind: ClassVar[str] = "media"


@dataclass(frozen=True)
class ToolUseContent:
    """A tool call requested by the model, recorded before dispatch."""

    id: str
    name: str
    input: dict[str, Any]

    kind: ClassVar[str] = "tool_use"


@dataclass(frozen=True)
class ToolResultContent:
    """Result of a tool call, paired with its ToolUseContent by id."""

    tool_use_id: str
    content: str
    is_error: bool = False

    kind: ClassVar[str] = "tool_result"


MessageContent = TextContent | MediaContent | ToolUseContent | ToolResultContent

_CONTENT_TYPES: dict[str, type] = {
    cls.kind: cls
    for cls in (TextContent, MediaContent, ToolUseContent, ToolResultContent)
}


@dataclass(frozen=True)
class Message:
    """
    One entry of the conversation transcript.

    The transcript is append-only and replayed verbatim into every model
    call, so it doubles as the audit trail of the conversation.

    Attributes:
        role: USER or ASSISTANT
        content: Exactly one content variant
    """

    role: Role
    content: MessageContent

    @classmethod
    def user_text(cls, text: str) -> "Message":
        return cls(role=Role.USER, content=TextContent(text=text))

    @classmethod
    def assistant_text(cls, text: str) -> "Message":
        return cls(role=Role.ASSISTANT, content=TextContent(text=text))

    @classmethod
    def tool_use(cls, request: "ToolRequest") -> "Message":
        return cls(
            role=Role.ASSISTANT,
            content=ToolUseContent(
                id=request.id, name=request.name, input=dict(request.input_data)
            ),
        )

    @classmethod
    def tool_result(
        cls, tool_use_id: str, content: str, is_error: bool = False
    ) -> "Message":
        return cls(
            role=Role.USER,
            content=ToolResultContent(
                tool_use_id=tool_use_id, content=content, is_error=is_error
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "content": {"type": self.content.kind, **asdict(self.content)},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        """
        Rebuild a message from its ``to_dict`` form.

        Raises:
            ValueError: If the content type is unknown
        """
        content = dict(data["content"])
        content_type = content.pop("type", None)
        content_cls = _CONTENT_TYPES.get(content_type)
        if content_cls is None:
            raise ValueError(f"Unknown message content type: {content_type}")
        return cls(role=Role(data["role"]), content=content_cls(**content))


class ToolKind(str, Enum):
    """
    Source of a tool, which fixes how it is executed.

    - SERVICE: dispatched to the surrounding event system; the loop suspends
    - PROTOCOL: discovered from and invoked on an MCP tool server
    - LOCAL: in-process Python callable
    """

    SERVICE = "service"
    PROTOCOL = "protocol"
    LOCAL = "local"


@dataclass(frozen=True)
class ToolDefinition:
    """
    A tool as seen by the loop for one invocation.

    Built by the ToolRegistry from the configured sources and never
    persisted. ``binding`` is the execution strategy matching ``kind``,
    attached once at registry build time.
    """

    name: str
    description: str
    input_schema: dict[str, Any]
    kind: ToolKind
    priority: int = 0
    requires_approval: bool = False
    binding: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class ToolRequest:
    """A tool call produced by the model. ``id`` is the correlation key."""

    id: str
    name: str
    input_data: dict[str, Any]


@dataclass(frozen=True)
class DispatchRequest:
    """A service-tool call handed to the event system."""

    correlation_id: str
    tool_name: str
    input_data: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ToolResultSubmission:
    """
    A service-tool result delivered back to the loop on resumption.

    Attributes:
        correlation_id: Id of the DispatchRequest this answers
        result_data: Result payload (any JSON-compatible value)
        is_error: True when the remote leg failed
        error_message: Failure description when ``is_error`` is set
    """

    correlation_id: str
    result_data: Any = None
    is_error: bool = False
    error_message: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ToolResultSubmission":
        return cls(
            correlation_id=data["correlation_id"],
            result_data=data.get("result_data"),
            is_error=bool(data.get("is_error", False)),
            error_message=data.get("error_message"),
        )


@dataclass(frozen=True)
class AwaitingToolCall:
    tool_name: str
    result: Any = None

    @property
    def resolved(self) -> bool:
        return self.result is not None


@dataclass(frozen=True)
class ToolInteractions:
    """Model-call budget: ``current`` calls made out of ``max`` allowed."""

    current: int = 0
    max: int = 5


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def units(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class LoopPhase(str, Enum):
    """State machine phases of the execution loop."""

    INIT = "init"
    AWAITING_MODEL = "awaiting_model"
    DISPATCHING = "dispatching"
    SUSPENDED_FOR_TOOL_RESULTS = "suspended_for_tool_results"
    FINAL = "final"
    ERROR = "error"


@dataclass(frozen=True)
class AgentState:
    """
    Durable progress of one conversation.

    Owned exclusively by the loop and persisted wholesale by a state store
    keyed by conversation id. ``version`` is assigned by the store and used
    for optimistic concurrency on write.

    Invariant: while suspended every entry of ``awaiting_tool_calls`` has
    ``result is None``. The loop calls the model again only once all
    entries are resolved.
    """

    messages: tuple[Message, ...] = ()
    tool_interactions: ToolInteractions = field(default_factory=ToolInteractions)
    awaiting_tool_calls: Mapping[str, AwaitingToolCall] = field(default_factory=dict)
    total_usage_units: int = 0
    phase: LoopPhase = LoopPhase.INIT
    version: int = 0

    @classmethod
    def initial(cls, message: Message, max_tool_interactions: int) -> "AgentState":
        return cls(
            messages=(message,),
            tool_interactions=ToolInteractions(current=0, max=max_tool_interactions),
        )

    @property
    def pending_correlation_ids(self) -> list[str]:
        return [
            correlation_id
            for correlation_id, call in self.awaiting_tool_calls.items()
            if not call.resolved
        ]

    @property
    def is_suspended(self) -> bool:
        return bool(self.awaiting_tool_calls)

    def append(self, *messages: Message) -> "AgentState":
        return replace(self, messages=self.messages + tuple(messages))

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages": [message.to_dict() for message in self.messages],
            "tool_interactions": asdict(self.tool_interactions),
            "awaiting_tool_calls": {
                correlation_id: asdict(call)
                for correlation_id, call in self.awaiting_tool_calls.items()
            },
            "total_usage_units": self.total_usage_units,
            "phase": self.phase.value,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AgentState":
        return cls(
            messages=tuple(Message.from_dict(m) for m in data.get("messages", [])),
            tool_interactions=ToolInteractions(**data.get("tool_interactions", {})),
            awaiting_tool_calls={
                correlation_id: AwaitingToolCall(**call)
                for correlation_id, call in data.get("awaiting_tool_calls", {}).items()
            },
            total_usage_units=data.get("total_usage_units", 0),
            phase=LoopPhase(data.get("phase", LoopPhase.INIT.value)),
            version=data.get("version", 0),
        )


@dataclass(frozen=True)
class ApprovalDecision:
    """A human (or cached) decision about using a restricted tool."""

    tool_name: str
    approved: bool
    comment: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ApprovalDecision":
        return cls(
            tool_name=data["tool_name"],
            approved=bool(data["approved"]),
            comment=data.get("comment"),
        )


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"
    SUSPENDED = "suspended"
    WAITING = "waiting"


@dataclass
class ExecutionResult:
    """
    Outcome of one loop invocation (start or resume).

    Exactly one of ``final_output`` (COMPLETED) or ``pending_tool_requests``
    (SUSPENDED) is populated. WAITING carries neither: more tool results are
    expected and nothing changed apart from the merged results.

    Attributes:
        conversation_id: Conversation this result belongs to
        status: COMPLETED, SUSPENDED or WAITING
        state: AgentState to persist
        final_output: Validated final answer (str, or dict when a JSON
            output schema is configured)
        pending_tool_requests: Service-tool calls to hand to the event system
    """

    conversation_id: str
    status: ExecutionStatus
    state: AgentState
    final_output: Any = None
    pending_tool_requests: list[DispatchRequest] = field(default_factory=list)

    def __post_init__(self) -> None:
        has_output = self.final_output is not None
        has_pending = bool(self.pending_tool_requests)
        if self.status is ExecutionStatus.COMPLETED and (not has_output or has_pending):
            raise ValueError("Completed result must carry only a final output")
        if self.status is ExecutionStatus.SUSPENDED and (has_output or not has_pending):
            raise ValueError("Suspended result must carry only pending tool requests")
        if self.status is ExecutionStatus.WAITING and (has_output or has_pending):
            raise ValueError("Waiting result must carry neither output nor requests")


@dataclass(frozen=True)
class ModelContext:
    """Everything the model adapter needs for one call."""

    system_prompt: str
    messages: tuple[Message, ...]
    tools: tuple[ToolDefinition, ...]


class ResponseKind(str, Enum):
    TOOL_CALL = "tool_call"
    TEXT = "text"
    JSON = "json"


@dataclass(frozen=True)
class ModelResponse:
    """
    Result of one model call.

    A TOOL_CALL response carries tool requests and no content; TEXT and JSON
    responses carry content and no tool requests.

    Raises:
        ValueError: On construction when the two are mixed
    """

    kind: ResponseKind
    tool_requests: tuple[ToolRequest, ...] = ()
    content: str | None = None
    usage: Usage = field(default_factory=Usage)

    def __post_init__(self) -> None:
        if self.kind is ResponseKind.TOOL_CALL:
            if not self.tool_requests:
                raise ValueError("Tool call response without tool requests")
            if self.content is not None:
                raise ValueError("Tool call response must not carry content")
        elif self.tool_requests:
            raise ValueError(f"{self.kind.value} response must not carry tool requests")
