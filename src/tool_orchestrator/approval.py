# approval.py
# Human approval for state-mutating tool calls.
#
# ApprovalGate holds exactly one in-flight request. Further requests wait in
# FIFO order; resolve() settles only the current request and then promotes
# the next one, so a user never sees two prompts at once.
#
# The policy half decides which calls need the gate at all:
#   apply_patch        → always
#   write_to_terminal  → every command, or only denylisted ones when a
#                        denylist is configured

import asyncio
import logging
import re
from collections import deque
from typing import Callable, Optional

from tool_orchestrator.models import ApprovalRequest, ToolCall

LOGGER = logging.getLogger(__name__)

COMMAND_TOOLS = frozenset({"write_to_terminal"})
PATCH_TOOLS = frozenset({"apply_patch"})

_COMMAND_SEPARATORS = re.compile(r"&&|\|\||;|\||\n")

PendingCallback = Callable[[Optional[ApprovalRequest]], None]


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class ApprovalGate:
    """
    Single-slot FIFO approval queue.

    `on_pending` is called with the request that just became current, or
    with None once the queue drains. A UI uses it to show or clear a prompt.
    """

    def __init__(self, on_pending: Optional[PendingCallback] = None) -> None:
        self._queue: deque[tuple[ApprovalRequest, asyncio.Future]] = deque()
        self._current: Optional[tuple[ApprovalRequest, asyncio.Future]] = None
        self.on_pending = on_pending

    @property
    def current(self) -> Optional[ApprovalRequest]:
        return self._current[0] if self._current else None

    @property
    def pending_count(self) -> int:
        return len(self._queue) + (1 if self._current else 0)

    async def request(self, approval: ApprovalRequest) -> bool:
        """Queue a request and wait for the human decision."""
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queue.append((approval, future))
        LOGGER.info(
            "approval_requested",
            extra={"request_id": approval.id, "request_type": approval.type},
        )
        if self._current is None:
            self._promote()

        try:
            return await future
        except asyncio.CancelledError:
            self._discard(future)
            raise

    def resolve(self, approved: bool) -> Optional[ApprovalRequest]:
        """Settle the current request only. Returns it, or None if idle."""
        if self._current is None:
            LOGGER.warning("approval_resolve_without_request")
            return None

        approval, future = self._current
        self._current = None
        if not future.done():
            future.set_result(approved)
        LOGGER.info(
            "approval_resolved",
            extra={"request_id": approval.id, "approved": approved},
        )
        self._promote()
        return approval

    def deny(self, request_id: str) -> bool:
        """Deny one request by id, current or queued. False if it is not pending."""
        if self._current is not None and self._current[0].id == request_id:
            self.resolve(False)
            return True
        for approval, future in self._queue:
            if approval.id == request_id:
                self._queue = deque(item for item in self._queue if item[1] is not future)
                if not future.done():
                    future.set_result(False)
                LOGGER.info("approval_resolved", extra={"request_id": request_id, "approved": False})
                return True
        return False

    def deny_all(self) -> None:
        """Deny the current request and everything queued behind it."""
        while self._current is not None:
            self.resolve(False)

    def _promote(self) -> None:
        while self._queue:
            approval, future = self._queue.popleft()
            if future.done():
                continue
            self._current = (approval, future)
            self._notify(approval)
            return
        self._notify(None)

    def _discard(self, future: asyncio.Future) -> None:
        if self._current is not None and self._current[1] is future:
            self._current = None
            self._promote()
            return
        self._queue = deque(item for item in self._queue if item[1] is not future)

    def _notify(self, approval: Optional[ApprovalRequest]) -> None:
        if self.on_pending is not None:
            self.on_pending(approval)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


def command_matches(command: str, sensitive_commands: tuple[str, ...]) -> bool:
    """True when any segment of a shell command starts with a denylisted entry."""
    for segment in _COMMAND_SEPARATORS.split(command):
        segment = segment.strip()
        if not segment:
            continue
        for entry in sensitive_commands:
            entry = entry.strip()
            if entry and (segment == entry or segment.startswith(entry + " ")):
                return True
    return False


def requires_approval(
    tool_call: ToolCall,
    sensitive_commands: Optional[tuple[str, ...]] = None,
) -> bool:
    if tool_call.name in PATCH_TOOLS:
        return True
    if tool_call.name in COMMAND_TOOLS:
        if sensitive_commands is None:
            return True
        return command_matches(str(tool_call.input.get("command", "")), sensitive_commands)
    return False


def build_request(tool_call: ToolCall) -> ApprovalRequest:
    if tool_call.name in PATCH_TOOLS:
        patch = tool_call.input.get("patch") or ""
        cmd = tool_call.input.get("cmd")
        if not patch and isinstance(cmd, list) and cmd:
            patch = cmd[-1]
        return ApprovalRequest(
            id=tool_call.id,
            type="patch",
            title="Apply patch",
            detail=patch if isinstance(patch, str) else str(patch),
            payload=dict(tool_call.input),
        )
    command = str(tool_call.input.get("command", ""))
    return ApprovalRequest(
        id=tool_call.id,
        type="command",
        title="Run command",
        detail=command,
        payload=dict(tool_call.input),
    )
