# models.py
# Data contracts for the tool-calling orchestrator.
# No business logic lives here. Pure schema and validation.

import time
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


class ToolCall(BaseModel):
    """A single tool invocation requested by the model."""

    id: str = Field(..., description="Unique per call within a session.")
    name: str = Field(..., description="Tool name as listed in the registry.")
    input: dict[str, Any] = Field(default_factory=dict, description="Structured tool arguments.")


class ToolResult(BaseModel):
    """Outcome of one tool call, fed back to the model as context."""

    tool_call_id: str
    content: str = ""
    is_error: bool = False
    is_task_complete: bool = False


class ToolCallRecord(BaseModel):
    """Append-only history entry. `input_hash` drives repeat detection."""

    name: str
    input: dict[str, Any] = Field(default_factory=dict)
    input_hash: str
    success: bool
    timestamp: float = Field(default_factory=time.time)


# ---------------------------------------------------------------------------
# Loop state and configuration
# ---------------------------------------------------------------------------


class AgentState(BaseModel):
    """Mutable per-loop state, owned by exactly one orchestrator session."""

    current_round: int = 0
    start_time: float = Field(default_factory=time.monotonic)
    tool_call_history: list[ToolCallRecord] = Field(default_factory=list)
    last_model_response: str = ""
    is_active: bool = True

    def elapsed_ms(self, now: Optional[float] = None) -> float:
        return ((now if now is not None else time.monotonic()) - self.start_time) * 1000.0


class AgentLoopConfig(BaseModel):
    """Tunables for one agent loop."""

    max_rounds: int = Field(default=6, ge=1)
    timeout_ms: int = Field(default=120_000, ge=1)
    repeat_threshold: int = Field(default=5, ge=1)
    failure_threshold: int = Field(default=3, ge=1)
    enable_planner: bool = False
    enable_reviewer: bool = False
    stop_on_tool_success: bool = True
    temperature: float = 0.2
    max_tokens: int = Field(default=4096, ge=1)
    sensitive_commands: Optional[tuple[str, ...]] = Field(
        default=None,
        description="Command prefixes that require approval. None gates every command.",
    )


class TerminationReason(str, Enum):
    TASK_COMPLETE = "task_complete"
    NO_TOOLS = "no_tools"
    TOOL_SUCCESS = "tool_success"
    REPEATED_TOOL = "repeated_tool"
    HIGH_FAILURE_RATE = "high_failure_rate"
    NO_PROGRESS = "no_progress"
    TIMEOUT = "timeout"
    MAX_ROUNDS = "max_rounds"
    SUMMARIZING = "summarizing"
    USER_CANCEL = "user_cancel"
    MENTIONED_TOOL = "mentioned_tool"


class CheckPhase(str, Enum):
    AFTER_MODEL_RESPONSE = "after_model_response"
    AFTER_TOOL_EXECUTION = "after_tool_execution"


class TerminationResult(BaseModel):
    """Immutable verdict of one termination check."""

    model_config = ConfigDict(frozen=True)

    should_terminate: bool
    reason: Optional[TerminationReason] = None
    message: str = ""


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------


class ApprovalRequest(BaseModel):
    """A gated tool call awaiting a human decision."""

    id: str
    type: Literal["command", "patch"]
    title: str
    detail: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Patch documents
# ---------------------------------------------------------------------------


class HunkLine(BaseModel):
    op: Literal["context", "remove", "add"]
    text: str


class Hunk(BaseModel):
    """One `@@ -a,b +c,d @@` block and its line operations."""

    old_start: int = Field(..., ge=0)
    old_count: int = Field(..., ge=0)
    new_start: int = Field(..., ge=0)
    new_count: int = Field(..., ge=0)
    lines: list[HunkLine] = Field(default_factory=list)


class PatchFile(BaseModel):
    path: str
    is_new: bool = Field(default=False, description="Source side was /dev/null.")
    hunks: list[Hunk] = Field(..., min_length=1)


class AppliedFile(BaseModel):
    """Summary of one file written by a successful patch."""

    path: str
    created: bool
    added: int
    removed: int


# ---------------------------------------------------------------------------
# Model capability
# ---------------------------------------------------------------------------


class ChatRequest(BaseModel):
    messages: list[dict[str, Any]]
    tools: Optional[list[dict[str, Any]]] = None
    temperature: float = 0.2
    max_tokens: int = 4096


class ChatResponse(BaseModel):
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Events
#
# One tagged union carries everything a session emits. The model stream
# reuses the text_delta / tool_use_* / error members.
# ---------------------------------------------------------------------------


class RoundStartEvent(BaseModel):
    type: Literal["round_start"] = "round_start"
    round: int


class RoundEndEvent(BaseModel):
    type: Literal["round_end"] = "round_end"
    round: int


class TextDeltaEvent(BaseModel):
    type: Literal["text_delta"] = "text_delta"
    text: str


class ToolUseStartEvent(BaseModel):
    type: Literal["tool_use_start"] = "tool_use_start"
    tool_call: ToolCall


class ToolUseEndEvent(BaseModel):
    type: Literal["tool_use_end"] = "tool_use_end"
    tool_call: ToolCall


class ToolExecutingEvent(BaseModel):
    type: Literal["tool_executing"] = "tool_executing"
    tool_call: ToolCall


class ToolExecutedEvent(BaseModel):
    type: Literal["tool_executed"] = "tool_executed"
    tool_call: ToolCall
    result: ToolResult
    duration_ms: float = 0.0


class ToolErrorEvent(BaseModel):
    type: Literal["tool_error"] = "tool_error"
    tool_call: ToolCall
    result: ToolResult
    duration_ms: float = 0.0


class AgentCompleteEvent(BaseModel):
    type: Literal["agent_complete"] = "agent_complete"
    reason: TerminationReason
    total_rounds: int
    message: str = ""


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str


AgentEvent = Annotated[
    Union[
        RoundStartEvent,
        RoundEndEvent,
        TextDeltaEvent,
        ToolUseStartEvent,
        ToolUseEndEvent,
        ToolExecutingEvent,
        ToolExecutedEvent,
        ToolErrorEvent,
        AgentCompleteEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]

StreamEvent = Union[TextDeltaEvent, ToolUseStartEvent, ToolUseEndEvent, ErrorEvent]
