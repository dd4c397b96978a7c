# orchestrator.py
# Round-based agent state machine.
#
# The orchestrator is the kernel. The model is a passive responder: this
# module owns control flow, state, retries and termination. Nothing here
# formats output for humans; every observable step is an event on the
# session's channel.
#
# Control flow:
#   planner? → assistant → tools → reviewer? → assistant …
#                ↺ (forced retry)
#   Any node may end the session. The session's active flag is checked
#   before every transition; once cleared the next checkpoint ends the run
#   with user_cancel.

import asyncio
import contextlib
import logging
import re
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from tool_orchestrator import extraction
from tool_orchestrator.approval import ApprovalGate
from tool_orchestrator.errors import MalformedPatch, ModelCallFailed, SessionError, UnsupportedPatchFormat
from tool_orchestrator.executor import ToolExecutor
from tool_orchestrator.llm import ModelClient
from tool_orchestrator.models import (
    AgentCompleteEvent,
    AgentLoopConfig,
    AgentState,
    ChatRequest,
    CheckPhase,
    ErrorEvent,
    RoundEndEvent,
    RoundStartEvent,
    TerminationReason,
    TerminationResult,
    TextDeltaEvent,
    ToolCall,
    ToolResult,
    ToolUseEndEvent,
    ToolUseStartEvent,
)
from tool_orchestrator.termination import TerminationDetector
from tool_orchestrator.tools import APPLY_PATCH, ToolRegistry

LOGGER = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

AGENT_SYSTEM_PROMPT = """\
## Agent Mode
You are a task execution agent with terminal, file and workspace tools.

### Tool Usage Rules
1. When you need to perform an operation, call the tool directly.
2. After calling a tool, wait for the system to return the actual result.
3. To create or modify files, call apply_patch with a unified diff. New files use '--- /dev/null'.
4. After completing all tasks, call the task_complete tool.

### Prohibited Behaviors
- Describing tool calls in text (e.g. <invoke>, <parameter> tags)
- Pretending that a tool ran successfully
- Replying to the user before receiving actual results\
"""

PLANNER_PROMPT = """\
Before doing anything, write a short numbered plan (at most five steps) for \
the request above. Do not call tools and do not execute anything yet.\
"""

REVIEWER_PROMPT = """\
Review the work so far against the user's original request.
Respond with ONLY one of:
  APPROVED
  REVISE: <what is still missing or wrong>\
"""

INVOKE_CORRECTION = """\
[System notice] You wrote a tool call as <invoke> text. That is not a tool \
call. Call the tool directly; the system processes tool calls automatically.\
"""

FULL_CONTENT_REQUEST = """\
[System notice] You mentioned a patch but did not include any code. Provide \
the full file contents by calling apply_patch with a complete unified diff.\
"""

NOT_CREATED_NOTICE = """\
[System notice] The requested file has not been created yet. Call \
apply_patch with a '--- /dev/null' unified diff containing the full file.\
"""

TOOL_RESULT_FOOTER = (
    "Please check the user's original request. If there are still incomplete tasks, "
    "please continue calling the appropriate tools to complete them. If all tasks are "
    "completed, please summarize the results and reply to the user."
)

_REVISE = re.compile(r"^\s*REVISE\s*:\s*(.*)$", re.IGNORECASE | re.DOTALL)


def build_tool_result_message(tool_calls: list[ToolCall], results: list[ToolResult]) -> dict[str, Any]:
    """One synthetic message summarizing every outcome of a tool round."""
    names = {call.id: call.name for call in tool_calls}
    blocks = []
    for result in results:
        status = "Execution failed" if result.is_error else "Execution successful"
        blocks.append(f"[{names.get(result.tool_call_id, result.tool_call_id)}] {status}.\nResult: {result.content}")
    return {
        "role": "tool",
        "content": "Tool execution completed:\n\n" + "\n\n".join(blocks) + "\n\n" + TOOL_RESULT_FOOTER,
        "tool_results": [
            {
                "tool_call_id": result.tool_call_id,
                "name": names.get(result.tool_call_id, ""),
                "content": result.content,
                "is_error": result.is_error,
            }
            for result in results
        ],
    }


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass
class _Run:
    """Everything one loop owns. Never shared between sessions."""

    config: AgentLoopConfig
    messages: list[dict[str, Any]]
    state: AgentState = field(default_factory=AgentState)
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    pending_tool_calls: list[ToolCall] = field(default_factory=list)
    executing: list[ToolCall] = field(default_factory=list)
    planned: bool = False
    invoke_retry_used: bool = False
    content_retry_used: bool = False
    action_retry_used: bool = False
    patch_applied: bool = False
    any_tool_ran: bool = False
    done: bool = False

    async def emit(self, event: Any) -> None:
        await self.queue.put(event)

    def last_user_message(self) -> str:
        for message in reversed(self.messages):
            if message.get("role") == "user" and not message.get("synthetic"):
                return str(message.get("content") or "")
        return ""

    def add_notice(self, text: str) -> None:
        self.messages.append({"role": "user", "content": text, "synthetic": True})


class AgentSession:
    """
    Handle on one running loop.

    Iterate `events()` to drive it; call `cancel()` from anywhere to stop
    at the next checkpoint.
    """

    def __init__(self, orchestrator: "AgentOrchestrator", run: _Run) -> None:
        self._orchestrator = orchestrator
        self._run = run
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> AgentState:
        return self._run.state

    @property
    def messages(self) -> list[dict[str, Any]]:
        return self._run.messages

    def cancel(self) -> None:
        LOGGER.info("session_cancel_requested", extra={"round": self._run.state.current_round})
        self._run.state.is_active = False
        # a gated call of this session must not keep waiting on a human
        for tool_call in self._run.executing:
            self._orchestrator.gate.deny(tool_call.id)

    async def events(self) -> AsyncIterator[Any]:
        if self._task is not None:
            raise RuntimeError("A session can only be iterated once.")
        self._task = asyncio.create_task(self._orchestrator._drive(self._run))
        try:
            while True:
                event = await self._run.queue.get()
                if event is None:
                    break
                yield event
            await self._task
        finally:
            self._run.state.is_active = False
            if not self._task.done():
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

Node = Callable[[_Run], Awaitable[str]]


class AgentOrchestrator:
    """
    Drives a model through planner → assistant → tools → reviewer rounds.

    Example:
        orchestrator = AgentOrchestrator(model, ToolRegistry.for_workdir("."), ApprovalGate())
        async for event in orchestrator.run([{"role": "user", "content": "hi"}]):
            ...
    """

    def __init__(
        self,
        model: ModelClient,
        registry: ToolRegistry,
        gate: ApprovalGate,
        config: Optional[AgentLoopConfig] = None,
        detector: Optional[TerminationDetector] = None,
    ) -> None:
        self.model = model
        self.registry = registry
        self.gate = gate
        self.config = config or AgentLoopConfig()
        self.detector = detector or TerminationDetector(tool_names=registry.names)
        self._nodes: dict[str, Node] = {
            "planner": self._planner,
            "assistant": self._assistant,
            "tools": self._tools,
            "reviewer": self._reviewer,
            "end": self._end,
        }

    def start(
        self,
        initial_messages: list[dict[str, Any]],
        config: Optional[AgentLoopConfig] = None,
    ) -> AgentSession:
        messages = [{"role": "system", "content": AGENT_SYSTEM_PROMPT}]
        messages.extend(dict(m) for m in initial_messages)
        return AgentSession(self, _Run(config=config or self.config, messages=messages))

    def run(
        self,
        initial_messages: list[dict[str, Any]],
        config: Optional[AgentLoopConfig] = None,
    ) -> AsyncIterator[Any]:
        return self.start(initial_messages, config).events()

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def _drive(self, run: _Run) -> None:
        node = "planner" if run.config.enable_planner else "assistant"
        try:
            while not run.done:
                if not run.state.is_active:
                    await self._finish(run, TerminationReason.USER_CANCEL, "Cancelled by the user.")
                    break
                node = await self._nodes[node](run)
        except (SessionError, MalformedPatch, UnsupportedPatchFormat) as exc:
            LOGGER.error(
                "session_failed",
                extra={"error": str(exc), "round": run.state.current_round},
            )
            await run.emit(ErrorEvent(message=str(exc)))
        finally:
            run.state.is_active = False
            await run.emit(None)

    async def _finish(self, run: _Run, reason: TerminationReason, message: str) -> str:
        run.done = True
        LOGGER.info(
            "agent_complete",
            extra={"reason": reason.value, "rounds": run.state.current_round},
        )
        await run.emit(
            AgentCompleteEvent(reason=reason, total_rounds=run.state.current_round, message=message)
        )
        return "end"

    async def _finish_with(self, run: _Run, verdict: TerminationResult) -> str:
        return await self._finish(run, verdict.reason or TerminationReason.NO_TOOLS, verdict.message)

    def _request(self, run: _Run, messages: list[dict[str, Any]], with_tools: bool) -> ChatRequest:
        return ChatRequest(
            messages=messages,
            tools=self.registry.definitions() if with_tools else None,
            temperature=run.config.temperature,
            max_tokens=run.config.max_tokens,
        )

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def _planner(self, run: _Run) -> str:
        run.planned = True
        messages = run.messages + [{"role": "user", "content": PLANNER_PROMPT}]
        response = await self.model.chat(self._request(run, messages, with_tools=False))
        if response.content:
            run.messages.append({"role": "assistant", "content": f"Plan:\n{response.content}"})
            await run.emit(TextDeltaEvent(text=f"Plan:\n{response.content}\n\n"))
        LOGGER.info("plan_created", extra={"chars": len(response.content)})
        return "assistant"

    async def _assistant(self, run: _Run) -> str:
        state, config = run.state, run.config

        if state.elapsed_ms() > config.timeout_ms:
            return await self._finish(
                run, TerminationReason.TIMEOUT, f"Execution timed out after {round(state.elapsed_ms() / 1000)}s."
            )
        if state.current_round >= config.max_rounds:
            return await self._finish(
                run, TerminationReason.MAX_ROUNDS, f"Maximum rounds reached ({config.max_rounds})."
            )

        state.current_round += 1
        await run.emit(RoundStartEvent(round=state.current_round))
        LOGGER.info("round_started", extra={"round": state.current_round})

        text, calls = await self._stream_assistant(run)
        await run.emit(RoundEndEvent(round=state.current_round))
        if not state.is_active:
            return "end"

        state.last_model_response = text
        assistant_message: Optional[dict[str, Any]] = None
        if text or calls:
            assistant_message = {"role": "assistant", "content": text}
            run.messages.append(assistant_message)

        user_message = run.last_user_message()

        if not calls and text:
            calls = extraction.extract_fallback_calls(text, self.registry.names)

            if not calls and extraction.contains_invoke_markup(text):
                if not run.invoke_retry_used and state.current_round < config.max_rounds:
                    run.invoke_retry_used = True
                    run.add_notice(INVOKE_CORRECTION)
                    await run.emit(TextDeltaEvent(text="\n\n[tool call written as text, retrying]\n"))
                    LOGGER.warning("invoke_text_retry", extra={"round": state.current_round})
                    return "assistant"

            if not calls and extraction.mentions_patch_without_code(text):
                if not run.content_retry_used and state.current_round < config.max_rounds:
                    run.content_retry_used = True
                    run.add_notice(FULL_CONTENT_REQUEST)
                    LOGGER.warning("patch_without_code_retry", extra={"round": state.current_round})
                    return "assistant"

            if not calls and not run.patch_applied and extraction.user_wants_file_creation(user_message):
                claimed = extraction.detect_hallucination(text, 0) or extraction.claims_file_written(text)
                synthesized = extraction.synthesize_creation_patch(user_message, text) if claimed else None
                if synthesized and extraction.patch_parses(synthesized):
                    LOGGER.info("creation_patch_synthesized", extra={"round": state.current_round})
                    calls = [ToolCall(id=extraction.new_call_id(), name=APPLY_PATCH, input={"patch": synthesized})]

        if calls and assistant_message is not None:
            assistant_message["tool_calls"] = [call.model_dump() for call in calls]

        if calls and any(call.name not in self.registry for call in calls):
            if self.detector.is_simple_conversation(text, user_message):
                return await self._finish(
                    run, TerminationReason.NO_TOOLS, "Simple conversation, invalid tool call ignored."
                )

        verdict = self.detector.check(
            state, calls, [], config, CheckPhase.AFTER_MODEL_RESPONSE, user_message
        )

        if verdict.should_terminate:
            if self._should_nudge_creation(run, verdict, user_message):
                run.action_retry_used = True
                run.add_notice(NOT_CREATED_NOTICE)
                LOGGER.warning("file_not_created_retry", extra={"round": state.current_round})
                return "assistant"
            return await self._finish_with(run, verdict)

        if calls:
            run.pending_tool_calls = calls
            return "tools"

        LOGGER.info(
            "assistant_continue_without_tools",
            extra={"round": state.current_round, "hint": verdict.reason.value if verdict.reason else None},
        )
        return "assistant"

    def _should_nudge_creation(self, run: _Run, verdict: TerminationResult, user_message: str) -> bool:
        return (
            verdict.reason in (TerminationReason.NO_TOOLS, TerminationReason.SUMMARIZING)
            and not run.action_retry_used
            and not run.patch_applied
            and not run.any_tool_ran
            and run.state.current_round < run.config.max_rounds
            and extraction.user_wants_file_creation(user_message)
        )

    async def _stream_assistant(self, run: _Run) -> tuple[str, list[ToolCall]]:
        parts: list[str] = []
        calls: list[ToolCall] = []
        stream = self.model.chat_stream(self._request(run, run.messages, with_tools=True))
        try:
            async for event in stream:
                if not run.state.is_active:
                    break
                if isinstance(event, TextDeltaEvent):
                    parts.append(event.text)
                    await run.emit(event)
                elif isinstance(event, ToolUseStartEvent):
                    await run.emit(event)
                elif isinstance(event, ToolUseEndEvent):
                    calls.append(event.tool_call)
                    await run.emit(event)
                elif isinstance(event, ErrorEvent):
                    raise ModelCallFailed(event.message)
        finally:
            close = getattr(stream, "aclose", None)
            if close is not None:
                await close()
        return "".join(parts).strip(), calls

    async def _tools(self, run: _Run) -> str:
        calls, run.pending_tool_calls = run.pending_tool_calls, []
        executor = ToolExecutor(self.registry, self.gate, run.config.sensitive_commands)

        run.executing = calls
        try:
            results = await executor.execute_sequentially(calls, run.state, run.emit)
        finally:
            run.executing = []
        run.any_tool_ran = run.any_tool_ran or bool(results)
        for call, result in zip(calls, results):
            if call.name == APPLY_PATCH and not result.is_error:
                run.patch_applied = True

        run.messages.append(build_tool_result_message(calls, results))
        if not run.state.is_active:
            return "end"

        verdict = self.detector.check(
            run.state, [], results, run.config, CheckPhase.AFTER_TOOL_EXECUTION
        )
        if verdict.should_terminate:
            return await self._finish_with(run, verdict)
        return "reviewer" if run.config.enable_reviewer else "assistant"

    async def _reviewer(self, run: _Run) -> str:
        messages = run.messages + [{"role": "user", "content": REVIEWER_PROMPT}]
        response = await self.model.chat(self._request(run, messages, with_tools=False))
        verdict = response.content.strip()
        LOGGER.info("review_received", extra={"verdict": verdict[:40]})

        if verdict.upper().startswith("APPROVED"):
            return await self._finish(run, TerminationReason.SUMMARIZING, "Reviewer approved the result.")

        match = _REVISE.match(verdict)
        if match and match.group(1).strip():
            run.add_notice(f"Reviewer feedback: {match.group(1).strip()}")
        return "assistant"

    async def _end(self, run: _Run) -> str:
        return await self._finish(run, TerminationReason.NO_TOOLS, "No further actions.")
