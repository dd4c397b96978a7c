# termination.py
# Decides, after each model response and each tool round, whether the agent
# loop should stop and why.
#
# Pure: no I/O beyond debug logging, no state of its own between calls.
# Every call returns a fresh, frozen TerminationResult.
#
# The linguistic part is table-driven. RESPONSE_RULES is an ordered list of
# (pattern, label) pairs scanned once per response; the classifier then reads
# only the set of labels that fired. These rules are heuristics. The hard
# ceilings (repeat, failure, timeout, max_rounds) always get the final say.

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from tool_orchestrator.fingerprint import hash_input
from tool_orchestrator.models import (
    AgentLoopConfig,
    AgentState,
    CheckPhase,
    TerminationReason,
    TerminationResult,
    ToolCall,
    ToolResult,
)

LOGGER = logging.getLogger(__name__)

# Labels produced by the response scan.
NO_FUNCTION = "no_function"
CANNOT_COMPLETE = "cannot_complete"
INCOMPLETE = "incomplete"
SUMMARY = "summary"
TOOL_INTENT = "tool_intent"
TOOL_MENTION = "tool_mention"
GREETING_WORD = "greeting_word"

IDLE_ROUND_FLOOR = 10
NO_PROGRESS_WINDOW = 5
NO_PROGRESS_MIN_ATTEMPTS = 3


def _rules(label: str, *patterns: str, flags: int = re.IGNORECASE) -> list[tuple[re.Pattern, str]]:
    return [(re.compile(p, flags), label) for p in patterns]


# ---------------------------------------------------------------------------
# Rule tables
# ---------------------------------------------------------------------------

RESPONSE_RULES: tuple[tuple[re.Pattern, str], ...] = tuple(
    _rules(
        NO_FUNCTION,
        r"\b(no function|there is no function|unable to|cannot|can't|don't have|doesn't have)",
        r"\b(unfortunately|however).*no.*function",
        r"\bhowever.*i.*can.*suggest",
        r"没有.*函数|无法.*执行|不能.*执行",
    )
    + _rules(
        CANNOT_COMPLETE,
        r"\bi (don't|do not) have (access to|the ability to|a way to|tools to|the capability to)",
        r"\bi (cannot|cant|can't) (access|get|retrieve|obtain|fetch|find|check)",
        r"\bthere is no (way|tool|function|method|capability) (to|for|that)",
        r"\bi('m| am) (unable|not able) to",
        r"\bi (don't|do not) (have|possess) (the|any) (tools|functions|capabilities|access)",
        r"\bno (tool|function|method|way) (is|are) (available|provided|accessible)",
        r"\bi (cannot|cant|can't) (help|assist|provide|give|tell) (you|with)",
        r"\bsorry,? i (don't|do not|cannot|cant|can't)",
        r"\bi (apologize|regret),? (but|however) i (cannot|cant|can't|don't|do not)",
        r"\bunfortunately,? i (cannot|cant|can't|don't|do not|am unable)",
        r"\bmy (capabilities|abilities|tools|functions) (are|is) (limited|restricted) to",
        r"(我没有|无法|不能|不可以)(访问|获取|检索|查找|检查|使用)",
        r"(抱歉|对不起|很遗憾)，?(我|本)(无法|不能|不可以|没有)",
    )
    + _rules(
        INCOMPLETE,
        r"\blet me(?! know)\b",
        r"\bi('ll| will| am going to)\b",
        r"\b(now i|first i|next i)\b",
        r"\b(going to|about to|starting to|ready to)\b",
        r"\b(will now|shall now|let's)\b",
        r"\b(proceed(ing)? to|continu(e|ing) to)\b",
        r"\b(executing|running|checking|fetching)\b",
        r"\bstep \d\b",
        r"\b(hold on|stand by|just a moment|one moment)\b",
        r"\b(i need to|i have to)\b",
        r"\blooking (at|into|for)\b",
        r"\b(need|have|should|must) to (try|check|search|find)\b",
        r"\battempt(ing)? to\b",
        r"(让我|我来|我将|我会).{0,6}(查看|执行|检查|获取|创建|修改)",
        r"(接下来|然后|之后).{0,4}(将|会|要)",
        r"现在.{0,6}(为您|帮您|执行|检查)",
        r"(稍等|请稍候|继续执行)",
    )
    + _rules(
        SUMMARY,
        r"\b(completed?|finished|done|all set)\b",
        r"\b(in summary|to summarize|here('s| is) (the|a) summary)\b",
        r"\bsuccessfully (completed?|executed?|created|updated|applied)\b",
        r"\b(that's (all|it)|we('re| are) done)\b",
        r"\bhere('s| is| are) (the|your) (result|results|answer|information)\b",
        r"\blet me know if you need anything else\b",
        r"\bfeel free to ask\b",
        r"(已经|已|均已).{0,4}(完成|结束|执行完)",
        r"(总结|汇总|综上|以上是)",
        r"任务.{0,4}(完成|结束)",
    )
    + _rules(
        TOOL_INTENT,
        r"\b(execut|run|call|invoke|use tool)",
        r"(使用工具|执行|调用)",
    )
    + _rules(
        GREETING_WORD,
        r"\b(hi|hello|hey|greetings|how can i help|what can i do|how are you)\b",
        r"(你好|您好|嗨|哈喽|我可以|我能帮)",
    )
)

GREETING_PATTERNS: tuple[re.Pattern, ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"^(h?i|h?ello|hey|greetings|good (morning|afternoon|evening|day))[!.,]?$",
        r"^(h?i|h?ello|hey)[!.,]?\s*(there|how can i help|what can i do|how are you)",
        r"^(thanks?|thank you|thx)[!.,]?",
        r"^(you're welcome|no problem|my pleasure|anytime)[!.,]?$",
        r"^(ok|okay|sure|alright|got it|understood)[!.,]?$",
        r"^(yes|yeah|yep|no|nope|maybe)[!.,]?$",
        r"^(ello|hlo|helo|hii|hiii)[!.,]?$",
        r"^(你好|您好|嗨|哈喽|早上好|下午好|晚上好)[！。，]?$",
        r"^(谢谢|多谢|感谢)",
        r"^(好的|明白了|知道了|收到)[！。，]?$",
    )
)

USER_ACTION_PATTERN = re.compile(r"\b(execut|run|call|invoke|command)|命令|执行|运行", re.IGNORECASE)

REASON_LABELS: dict[TerminationReason, str] = {
    TerminationReason.TASK_COMPLETE: "Task completed",
    TerminationReason.NO_TOOLS: "Execution completed",
    TerminationReason.TOOL_SUCCESS: "Tools succeeded",
    TerminationReason.SUMMARIZING: "Summary completed",
    TerminationReason.REPEATED_TOOL: "Repeated operation detected",
    TerminationReason.HIGH_FAILURE_RATE: "Multiple failures",
    TerminationReason.NO_PROGRESS: "No progress made",
    TerminationReason.TIMEOUT: "Execution timeout",
    TerminationReason.MAX_ROUNDS: "Maximum rounds reached",
    TerminationReason.USER_CANCEL: "User cancelled",
    TerminationReason.MENTIONED_TOOL: "Tool mentioned but not called",
}

# The agent stopped itself rather than finishing the job.
GAVE_UP_REASONS = frozenset(
    {
        TerminationReason.REPEATED_TOOL,
        TerminationReason.HIGH_FAILURE_RATE,
        TerminationReason.NO_PROGRESS,
        TerminationReason.TIMEOUT,
        TerminationReason.MAX_ROUNDS,
    }
)


def reason_label(reason: TerminationReason) -> str:
    return REASON_LABELS.get(reason, "Completed")


def gave_up(reason: TerminationReason) -> bool:
    return reason in GAVE_UP_REASONS


# ---------------------------------------------------------------------------
# Response classification
# ---------------------------------------------------------------------------


def tool_mention_rules(tool_names: Iterable[str]) -> tuple[tuple[re.Pattern, str], ...]:
    patterns = [r"\bmcp_\w+"] + [rf"\b{re.escape(name)}\b" for name in tool_names]
    return tuple(_rules(TOOL_MENTION, *patterns))


def scan(text: str, rules: Iterable[tuple[re.Pattern, str]]) -> frozenset[str]:
    """Single pass over the rule table. Returns every label that fired."""
    if not text or len(text) < 2:
        return frozenset()
    found: set[str] = set()
    for pattern, label in rules:
        if label not in found and pattern.search(text):
            found.add(label)
    return frozenset(found)


def _is_greeting(text: str) -> bool:
    return any(p.search(text) for p in GREETING_PATTERNS)


def is_simple_conversation(response: str, user_message: str, labels: frozenset[str]) -> bool:
    """Greetings, thanks and small talk that need no tool at all."""
    if not response or len(response) < 2:
        return False

    response_lower = response.lower().strip()
    user_lower = (user_message or "").lower().strip()

    user_greeting = _is_greeting(user_lower) or (
        0 < len(user_lower) <= 5 and user_lower.isalpha() and user_lower.isascii()
    )
    ai_greeting = _is_greeting(response_lower) or (
        len(response_lower) < 100 and GREETING_WORD in labels
    )
    no_function = NO_FUNCTION in labels
    incomplete = INCOMPLETE in labels

    if user_greeting and no_function:
        return True
    if no_function and len(user_lower) <= 10 and not USER_ACTION_PATTERN.search(user_lower):
        return True
    if user_greeting and ai_greeting:
        return True
    if len(response_lower) < 100 and no_function and not incomplete:
        return True
    if (
        len(response_lower) < 50
        and not incomplete
        and TOOL_MENTION not in labels
        and TOOL_INTENT not in labels
    ):
        return True
    return False


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Check:
    state: AgentState
    tool_calls: list[ToolCall]
    tool_results: list[ToolResult]
    config: AgentLoopConfig
    phase: CheckPhase
    last_user_message: str
    now: float


DEFAULT_ORDER: tuple[str, ...] = (
    "task_complete",
    "response",
    "tool_success",
    "repeated_tool",
    "failure_rate",
    "no_progress",
    "timeout",
    "max_rounds",
    "idle_rounds",
)


def _stop(reason: TerminationReason, message: str) -> TerminationResult:
    return TerminationResult(should_terminate=True, reason=reason, message=message)


class TerminationDetector:
    """
    First matching check wins. `order` names the checks to run and their
    order; DEFAULT_ORDER is task_complete → response classification →
    tool_success → repeat → failure rate → no progress → timeout →
    max_rounds → idle rounds.

    A "keep going" verdict from the response classifier is advisory: it is
    held back while the remaining checks run, and only returned when none of
    them fires.
    """

    def __init__(
        self,
        tool_names: Iterable[str] = (),
        order: tuple[str, ...] = DEFAULT_ORDER,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        unknown = [name for name in order if not hasattr(self, f"_check_{name}")]
        if unknown:
            raise ValueError(f"Unknown termination checks: {unknown}")
        self.order = order
        self.rules = RESPONSE_RULES + tool_mention_rules(tool_names)
        self._clock = clock

    def check(
        self,
        state: AgentState,
        current_tool_calls: list[ToolCall],
        tool_results: list[ToolResult],
        config: AgentLoopConfig,
        phase: CheckPhase,
        last_user_message: str = "",
    ) -> TerminationResult:
        ctx = _Check(
            state=state,
            tool_calls=current_tool_calls,
            tool_results=tool_results,
            config=config,
            phase=phase,
            last_user_message=last_user_message,
            now=self._clock(),
        )

        hint: Optional[TerminationResult] = None
        for name in self.order:
            result = getattr(self, f"_check_{name}")(ctx)
            if result is None:
                continue
            if result.should_terminate:
                LOGGER.info(
                    "termination_decided",
                    extra={
                        "reason": result.reason.value if result.reason else None,
                        "round": state.current_round,
                        "phase": phase.value,
                    },
                )
                return result
            hint = hint or result

        return hint or TerminationResult(should_terminate=False)

    def is_simple_conversation(self, response: str, last_user_message: str) -> bool:
        return is_simple_conversation(response, last_user_message, scan(response, self.rules))

    def classify_response(self, response: str, last_user_message: str) -> TerminationResult:
        """Step-two verdict for a response that carried no tool calls."""
        labels = scan(response, self.rules)

        if is_simple_conversation(response, last_user_message, labels):
            return _stop(TerminationReason.NO_TOOLS, "Simple conversation, no tools needed.")

        if len(response) >= 10 and CANNOT_COMPLETE in labels:
            return _stop(
                TerminationReason.NO_TOOLS,
                "The model cannot complete this task with the available tools.",
            )

        if INCOMPLETE in labels and NO_FUNCTION not in labels:
            LOGGER.debug("response_announces_more_work", extra={"preview": response[:100]})
            return TerminationResult(
                should_terminate=False,
                message="The response announces more work but called no tool.",
            )

        if TOOL_MENTION in labels:
            LOGGER.debug("response_mentions_tool", extra={"preview": response[:100]})
            return TerminationResult(
                should_terminate=False,
                reason=TerminationReason.MENTIONED_TOOL,
                message="The response mentions a tool without calling it.",
            )

        if SUMMARY in labels:
            return _stop(TerminationReason.SUMMARIZING, "The model is summarizing; the task is done.")

        return _stop(TerminationReason.NO_TOOLS, "No tool calls in this round; the task is done.")

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _check_task_complete(self, ctx: _Check) -> Optional[TerminationResult]:
        for result in ctx.tool_results:
            if result.is_task_complete:
                return _stop(TerminationReason.TASK_COMPLETE, result.content or "Task completed.")
        return None

    def _check_response(self, ctx: _Check) -> Optional[TerminationResult]:
        if ctx.phase is not CheckPhase.AFTER_MODEL_RESPONSE:
            return None
        if ctx.tool_calls or not ctx.state.last_model_response:
            return None
        return self.classify_response(ctx.state.last_model_response, ctx.last_user_message)

    def _check_tool_success(self, ctx: _Check) -> Optional[TerminationResult]:
        if not ctx.config.stop_on_tool_success:
            return None
        if ctx.phase is not CheckPhase.AFTER_TOOL_EXECUTION or not ctx.tool_results:
            return None
        if any(result.is_error for result in ctx.tool_results):
            return None
        return _stop(TerminationReason.TOOL_SUCCESS, "All tools in this round succeeded.")

    def _check_repeated_tool(self, ctx: _Check) -> Optional[TerminationResult]:
        threshold = ctx.config.repeat_threshold
        recent = ctx.state.tool_call_history[-threshold * 2:]
        for tool_call in ctx.tool_calls:
            digest = hash_input(tool_call.input)
            repeats = sum(1 for r in recent if r.name == tool_call.name and r.input_hash == digest)
            # the current call counts as one more
            if repeats >= threshold - 1:
                return _stop(
                    TerminationReason.REPEATED_TOOL,
                    f"Tool '{tool_call.name}' was called {repeats + 1} times with the same input; "
                    "the agent appears to be stuck in a loop.",
                )
        return None

    def _check_failure_rate(self, ctx: _Check) -> Optional[TerminationResult]:
        threshold = ctx.config.failure_threshold
        recent = ctx.state.tool_call_history[-threshold * 2:]
        failures = sum(1 for r in recent if not r.success)
        if failures >= threshold:
            return _stop(
                TerminationReason.HIGH_FAILURE_RATE,
                f"{failures} of the last {len(recent)} tool calls failed; stopping.",
            )
        return None

    def _check_no_progress(self, ctx: _Check) -> Optional[TerminationResult]:
        if ctx.state.current_round < IDLE_ROUND_FLOOR:
            return None
        if ctx.phase is not CheckPhase.AFTER_TOOL_EXECUTION:
            return None
        recent = ctx.state.tool_call_history[-NO_PROGRESS_WINDOW:]
        if len(recent) >= NO_PROGRESS_MIN_ATTEMPTS and not any(r.success for r in recent):
            return _stop(
                TerminationReason.NO_PROGRESS,
                f"{ctx.state.current_round} rounds run and the last {len(recent)} "
                "tool calls all failed; no progress is being made.",
            )
        return None

    def _check_timeout(self, ctx: _Check) -> Optional[TerminationResult]:
        elapsed_ms = ctx.state.elapsed_ms(ctx.now)
        if elapsed_ms > ctx.config.timeout_ms:
            return _stop(
                TerminationReason.TIMEOUT,
                f"Execution timed out after {round(elapsed_ms / 1000)}s.",
            )
        return None

    def _check_max_rounds(self, ctx: _Check) -> Optional[TerminationResult]:
        if ctx.state.current_round >= ctx.config.max_rounds:
            return _stop(
                TerminationReason.MAX_ROUNDS,
                f"Maximum rounds reached ({ctx.config.max_rounds}). The task may be too "
                "complex or the agent is stuck.",
            )
        return None

    def _check_idle_rounds(self, ctx: _Check) -> Optional[TerminationResult]:
        if (
            ctx.state.current_round >= IDLE_ROUND_FLOOR
            and ctx.phase is CheckPhase.AFTER_MODEL_RESPONSE
            and not ctx.tool_calls
        ):
            return _stop(
                TerminationReason.NO_TOOLS,
                f"{ctx.state.current_round} rounds run without tool calls; stopping.",
            )
        return None
