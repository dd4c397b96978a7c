import pytest
from tool_orchestrator import termination
from tool_orchestrator.fingerprint import hash_input
from tool_orchestrator.models import (
    AgentLoopConfig,
    AgentState,
    CheckPhase,
    TerminationReason,
    ToolCall,
    ToolCallRecord,
    ToolResult,
)
from tool_orchestrator.termination import TerminationDetector

TOOLS = ["read_file", "list_files", "apply_patch", "task_complete"]
AFTER_MODEL = CheckPhase.AFTER_MODEL_RESPONSE
AFTER_TOOLS = CheckPhase.AFTER_TOOL_EXECUTION


def _record(name="read_file", tool_input=None, success=True):
    tool_input = tool_input if tool_input is not None else {"path": "a.txt"}
    return ToolCallRecord(name=name, input=tool_input, input_hash=hash_input(tool_input), success=success)


def _respond(text, user, round_=1, config=None):
    state = AgentState(current_round=round_, last_model_response=text)
    return TerminationDetector(TOOLS).check(
        state, [], [], config or AgentLoopConfig(), AFTER_MODEL, user
    )

# ---------------------------------------------------------------------------
# Response classification
# ---------------------------------------------------------------------------

def test_greeting_ends_with_no_tools():
    result = _respond("Hello! How can I help?", "hi")
    assert result.should_terminate is True
    assert result.reason is TerminationReason.NO_TOOLS

def test_summary_ends_as_summarizing():
    result = _respond(
        "I have finished updating the configuration file and all tests pass now.",
        "update the config file and rerun the tests",
    )
    assert result.reason is TerminationReason.SUMMARIZING

def test_cannot_complete_ends_with_no_tools():
    result = _respond(
        "I'm unable to access the internet from this environment, so I can't fetch that page.",
        "fetch example.com and summarize it for me",
    )
    assert result.should_terminate is True
    assert result.reason is TerminationReason.NO_TOOLS

def test_announced_work_keeps_going():
    result = _respond("Let me check the files first.", "please fix the build")
    assert result.should_terminate is False

def test_tool_mention_keeps_going_with_hint():
    result = _respond("You could use read_file to see it.", "what is inside a.txt")
    assert result.should_terminate is False
    assert result.reason is TerminationReason.MENTIONED_TOOL

def test_advisory_continue_does_not_override_max_rounds():
    result = _respond("Let me check the files first.", "please fix the build", round_=6)
    assert result.should_terminate is True
    assert result.reason is TerminationReason.MAX_ROUNDS

def test_idle_rounds_stop_after_floor():
    config = AgentLoopConfig(max_rounds=50)
    result = _respond(
        "Let me check the files first.", "please fix the build", round_=termination.IDLE_ROUND_FLOOR, config=config
    )
    assert result.should_terminate is True
    assert result.reason is TerminationReason.NO_TOOLS

def test_scan_collects_labels():
    labels = termination.scan("Let me know if you need anything else, it is done.", termination.RESPONSE_RULES)
    assert termination.SUMMARY in labels
    assert termination.INCOMPLETE not in labels

def test_simple_conversation_helper():
    detector = TerminationDetector(TOOLS)
    assert detector.is_simple_conversation("Hello!", "hi") is True
    assert detector.is_simple_conversation(
        "I will now run the test suite and report the failing tests back to you in detail.",
        "run the tests",
    ) is False

# ---------------------------------------------------------------------------
# Hard ceilings
# ---------------------------------------------------------------------------

def test_task_complete_wins_first():
    state = AgentState(current_round=99)
    results = [ToolResult(tool_call_id="1", content="Wrote the file.", is_task_complete=True)]
    result = TerminationDetector(TOOLS).check(state, [], results, AgentLoopConfig(), AFTER_TOOLS)
    assert result.reason is TerminationReason.TASK_COMPLETE
    assert result.message == "Wrote the file."

def test_tool_success_after_clean_round():
    results = [ToolResult(tool_call_id="1", content="ok")]
    result = TerminationDetector(TOOLS).check(
        AgentState(current_round=1), [], results, AgentLoopConfig(), AFTER_TOOLS
    )
    assert result.reason is TerminationReason.TOOL_SUCCESS

def test_tool_success_can_be_disabled():
    results = [ToolResult(tool_call_id="1", content="ok")]
    config = AgentLoopConfig(stop_on_tool_success=False)
    result = TerminationDetector(TOOLS).check(AgentState(current_round=1), [], results, config, AFTER_TOOLS)
    assert result.should_terminate is False

def test_repeated_tool_counts_current_call():
    state = AgentState(current_round=5, tool_call_history=[_record() for _ in range(4)])
    call = ToolCall(id="5", name="read_file", input={"path": "a.txt"})
    result = TerminationDetector(TOOLS).check(state, [call], [], AgentLoopConfig(), AFTER_MODEL)
    assert result.reason is TerminationReason.REPEATED_TOOL
    assert "5 times" in result.message

def test_repeated_tool_below_threshold():
    state = AgentState(current_round=4, tool_call_history=[_record() for _ in range(3)])
    call = ToolCall(id="4", name="read_file", input={"path": "a.txt"})
    result = TerminationDetector(TOOLS).check(state, [call], [], AgentLoopConfig(), AFTER_MODEL)
    assert result.should_terminate is False

def test_repeat_ignores_key_order():
    state = AgentState(
        current_round=2,
        tool_call_history=[_record("lsp_query", {"kind": "symbols", "path": "a.py"}) for _ in range(4)],
    )
    call = ToolCall(id="5", name="lsp_query", input={"path": "a.py", "kind": "symbols"})
    result = TerminationDetector(TOOLS).check(state, [call], [], AgentLoopConfig(), AFTER_MODEL)
    assert result.reason is TerminationReason.REPEATED_TOOL

def test_high_failure_rate():
    state = AgentState(current_round=3, tool_call_history=[_record(success=False) for _ in range(3)])
    results = [ToolResult(tool_call_id="3", content="boom", is_error=True)]
    result = TerminationDetector(TOOLS).check(state, [], results, AgentLoopConfig(), AFTER_TOOLS)
    assert result.reason is TerminationReason.HIGH_FAILURE_RATE

def test_no_progress_after_many_failed_rounds():
    history = [_record(success=False, tool_input={"path": str(i)}) for i in range(5)]
    state = AgentState(current_round=12, tool_call_history=history)
    config = AgentLoopConfig(max_rounds=50, failure_threshold=10)
    results = [ToolResult(tool_call_id="x", content="boom", is_error=True)]
    result = TerminationDetector(TOOLS).check(state, [], results, config, AFTER_TOOLS)
    assert result.reason is TerminationReason.NO_PROGRESS

def test_timeout_uses_injected_clock():
    state = AgentState(current_round=1)
    detector = TerminationDetector(TOOLS, clock=lambda: state.start_time + 200)
    call = ToolCall(id="1", name="list_files", input={})
    result = detector.check(state, [call], [], AgentLoopConfig(), AFTER_MODEL)
    assert result.reason is TerminationReason.TIMEOUT

def test_max_rounds():
    call = ToolCall(id="1", name="list_files", input={})
    result = TerminationDetector(TOOLS).check(
        AgentState(current_round=6), [call], [], AgentLoopConfig(), AFTER_MODEL
    )
    assert result.reason is TerminationReason.MAX_ROUNDS

def test_custom_order_only_runs_named_checks():
    detector = TerminationDetector(TOOLS, order=("max_rounds",))
    result = detector.check(
        AgentState(current_round=1, last_model_response="Hello!"), [], [], AgentLoopConfig(), AFTER_MODEL, "hi"
    )
    assert result.should_terminate is False

def test_unknown_check_name_rejected():
    with pytest.raises(ValueError, match="Unknown termination checks"):
        TerminationDetector(order=("vibes",))

def test_results_are_frozen():
    result = _respond("Hello! How can I help?", "hi")
    with pytest.raises(Exception):
        result.should_terminate = False

# ---------------------------------------------------------------------------
# Presentation
# ---------------------------------------------------------------------------

def test_reason_labels_and_categories():
    assert termination.reason_label(TerminationReason.TASK_COMPLETE) == "Task completed"
    assert termination.gave_up(TerminationReason.MAX_ROUNDS) is True
    assert termination.gave_up(TerminationReason.SUMMARIZING) is False
