import pytest
from rich.console import Console
from tool_orchestrator import display
from tool_orchestrator.models import (
    AgentCompleteEvent,
    AgentState,
    ErrorEvent,
    TerminationReason,
    ToolCall,
    ToolCallRecord,
    ToolErrorEvent,
    ToolResult,
    ToolUseStartEvent,
)


@pytest.fixture
def recorded(monkeypatch):
    console = Console(record=True, width=120, color_system=None)
    monkeypatch.setattr(display, "console", console)
    return console

# ---------------------------------------------------------------------------
# Secret masking
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "message, hidden",
    [
        ("auth failed for sk-abcdef1234567890", "abcdef1234567890"),
        ("url?api_key=hunter2&x=1", "hunter2"),
        ("password: swordfish", "swordfish"),
        ("Authorization: Bearer abc.def.ghi", "abc.def.ghi"),
    ],
)
def test_sanitize_error_message(message, hidden):
    cleaned = display.sanitize_error_message(message)
    assert hidden not in cleaned
    assert "***" in cleaned

def test_sanitize_leaves_plain_text():
    assert display.sanitize_error_message("No such file: a.txt") == "No such file: a.txt"

# ---------------------------------------------------------------------------
# Event rendering
# ---------------------------------------------------------------------------

def test_tool_error_is_masked(recorded):
    call = ToolCall(id="c1", name="write_to_terminal", input={"command": "deploy"})
    event = ToolErrorEvent(
        tool_call=call,
        result=ToolResult(tool_call_id="c1", content="denied token=s3cret", is_error=True),
    )
    display.render_event(event)
    output = recorded.export_text()
    assert "write_to_terminal" in output
    assert "s3cret" not in output

def test_tool_use_start_is_not_rendered(recorded):
    display.render_event(ToolUseStartEvent(tool_call=ToolCall(id="c1", name="read_file")))
    assert recorded.export_text() == ""

def test_agent_complete_shows_label(recorded):
    event = AgentCompleteEvent(
        reason=TerminationReason.REPEATED_TOOL, total_rounds=5, message="Stopped repeating read_file."
    )
    display.render_event(event)
    output = recorded.export_text()
    assert "REPEATED OPERATION DETECTED" in output
    assert "rounds=5" in output

def test_error_event(recorded):
    display.render_event(ErrorEvent(message="rate limited"))
    assert "rate limited" in recorded.export_text()

# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

def test_execution_summary_lists_calls(recorded):
    state = AgentState(current_round=2)
    state.tool_call_history.append(
        ToolCallRecord(name="read_file", input={"path": "a.txt"}, input_hash="h", success=True)
    )
    display.execution_summary(state)
    output = recorded.export_text()
    assert "read_file" in output
    assert "2 round(s)" in output

def test_execution_summary_empty_history(recorded):
    display.execution_summary(AgentState())
    assert recorded.export_text() == ""
