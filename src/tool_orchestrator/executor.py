# executor.py
# Strictly sequential tool execution with approval gating.
#
# Per call:
#   emit tool_executing → gate (if sensitive) → registry.execute
#   → append ToolCallRecord → emit tool_executed | tool_error
#
# Tool-level failures become error results the model can react to. Patch
# parse failures (MalformedPatch, UnsupportedPatchFormat) are re-raised and
# end the session.

import logging
import time
from typing import Awaitable, Callable, Optional

from tool_orchestrator import approval as approval_policy
from tool_orchestrator.approval import ApprovalGate
from tool_orchestrator.errors import (
    ApprovalDenied,
    HunkMismatch,
    MalformedPatch,
    PathOutsideWorkdir,
    ToolError,
    UnsupportedPatchFormat,
)
from tool_orchestrator.fingerprint import hash_input
from tool_orchestrator.models import (
    AgentState,
    ToolCall,
    ToolCallRecord,
    ToolErrorEvent,
    ToolExecutedEvent,
    ToolExecutingEvent,
    ToolResult,
)
from tool_orchestrator.tools import ToolRegistry

LOGGER = logging.getLogger(__name__)

Emit = Callable[[object], Awaitable[None]]


class ToolExecutor:
    """Runs one round's tool calls in order against a ToolRegistry."""

    def __init__(
        self,
        registry: ToolRegistry,
        gate: ApprovalGate,
        sensitive_commands: Optional[tuple[str, ...]] = None,
    ) -> None:
        self.registry = registry
        self.gate = gate
        self.sensitive_commands = sensitive_commands

    async def execute_sequentially(
        self,
        tool_calls: list[ToolCall],
        state: AgentState,
        emit: Emit,
    ) -> list[ToolResult]:
        results: list[ToolResult] = []
        for tool_call in tool_calls:
            if not state.is_active:
                LOGGER.info("tool_execution_skipped_inactive", extra={"tool": tool_call.name})
                break
            results.append(await self._execute_one(tool_call, state, emit))
        return results

    async def _execute_one(self, tool_call: ToolCall, state: AgentState, emit: Emit) -> ToolResult:
        await emit(ToolExecutingEvent(tool_call=tool_call))
        started = time.monotonic()

        try:
            if approval_policy.requires_approval(tool_call, self.sensitive_commands):
                approved = await self.gate.request(approval_policy.build_request(tool_call))
                if not approved:
                    raise ApprovalDenied(f"The user denied '{tool_call.name}'.")

            output = await self.registry.execute(tool_call.name, tool_call.input)
            result = ToolResult(
                tool_call_id=tool_call.id,
                content=output.content,
                is_error=output.is_error,
                is_task_complete=output.is_task_complete,
            )
        except (MalformedPatch, UnsupportedPatchFormat):
            self._record(tool_call, state, success=False)
            raise
        except (ToolError, HunkMismatch, PathOutsideWorkdir) as exc:
            result = ToolResult(tool_call_id=tool_call.id, content=str(exc), is_error=True)

        duration_ms = (time.monotonic() - started) * 1000.0
        self._record(tool_call, state, success=not result.is_error)

        if not state.is_active:
            # cancelled while the call was in flight: the result is discarded
            return result

        if result.is_error:
            LOGGER.warning(
                "tool_error",
                extra={"tool": tool_call.name, "duration_ms": round(duration_ms, 1)},
            )
            await emit(ToolErrorEvent(tool_call=tool_call, result=result, duration_ms=duration_ms))
        else:
            LOGGER.info(
                "tool_executed",
                extra={"tool": tool_call.name, "duration_ms": round(duration_ms, 1)},
            )
            await emit(ToolExecutedEvent(tool_call=tool_call, result=result, duration_ms=duration_ms))
        return result

    @staticmethod
    def _record(tool_call: ToolCall, state: AgentState, success: bool) -> None:
        state.tool_call_history.append(
            ToolCallRecord(
                name=tool_call.name,
                input=tool_call.input,
                input_hash=hash_input(tool_call.input),
                success=success,
            )
        )
