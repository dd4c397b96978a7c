# display.py
# All terminal output for the tool-orchestrator CLI.
#
# This module owns presentation entirely. The orchestrator never formats
# strings; run.py feeds each session event to render_event(). Swap this file
# to change the entire UI.
#
# Colour language:
#   cyan    : rounds and scaffolding
#   blue    : model output
#   magenta : tool calls requested by the model
#   yellow  : approval prompts
#   green   : success or finished
#   red     : failures and errors

import json
import re

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from tool_orchestrator import termination
from tool_orchestrator.models import (
    AgentCompleteEvent,
    AgentState,
    ApprovalRequest,
    ErrorEvent,
    RoundEndEvent,
    RoundStartEvent,
    TextDeltaEvent,
    ToolErrorEvent,
    ToolExecutedEvent,
    ToolExecutingEvent,
    ToolUseEndEvent,
    ToolUseStartEvent,
)

console = Console()

_SECRET_PATTERNS: tuple[tuple[re.Pattern, str], ...] = (
    (re.compile(r"sk-[A-Za-z0-9_-]{8,}"), "sk-***"),
    (re.compile(r"(api[_-]?key\s*[=:]\s*)[^\s,;&\"']+", re.IGNORECASE), r"\1***"),
    (re.compile(r"(password\s*[=:]\s*)[^\s,;&\"']+", re.IGNORECASE), r"\1***"),
    (re.compile(r"(token\s*[=:]\s*)[^\s,;&\"']+", re.IGNORECASE), r"\1***"),
    (re.compile(r"(Bearer\s+)[A-Za-z0-9._-]+", re.IGNORECASE), r"\1***"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


def sanitize_error_message(message: str) -> str:
    """Mask API keys, tokens and passwords before anything reaches the screen."""
    for pattern, replacement in _SECRET_PATTERNS:
        message = pattern.sub(replacement, message)
    return message


# ---------------------------------------------------------------------------
# Session entry
# ---------------------------------------------------------------------------


def banner(provider: str, model: str, workdir: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]Tool Orchestrator[/bold cyan]\n"
            "[dim]Round-based agent loop with approval-gated tools[/dim]\n\n"
            f"[dim]Provider :[/dim] [white]{escape(provider)}[/white]\n"
            f"[dim]Model    :[/dim] [white]{escape(model)}[/white]\n"
            f"[dim]Workdir  :[/dim] [white]{escape(workdir)}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def prompt_received(prompt: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW REQUEST[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{escape(prompt)}[/white]",
            title=_label("USER PROMPT", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------


def approval_prompt(request: ApprovalRequest) -> None:
    console.print()
    body = escape(_mono(request.detail, 4000)) if request.detail else "[dim](empty)[/dim]"
    console.print(
        Panel(
            body,
            title=_label(f"APPROVAL: {request.title.upper()}", "yellow"),
            subtitle=f"[dim]{escape(request.id)}[/dim]",
            border_style="yellow",
            padding=(0, 2),
        )
    )


def approval_decided(request: ApprovalRequest, approved: bool) -> None:
    if approved:
        console.print(f"  [bold green]✓ Approved[/bold green] [dim]{escape(request.title)}[/dim]")
    else:
        console.print(f"  [bold red]✗ Denied[/bold red] [dim]{escape(request.title)}[/dim]")


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


def round_start(event: RoundStartEvent) -> None:
    console.print()
    console.print(Rule(f"[cyan]ROUND {event.round}[/cyan]", style="cyan"))


def round_end(event: RoundEndEvent) -> None:
    console.print()


def text_delta(event: TextDeltaEvent) -> None:
    console.print(event.text, end="", style="blue", markup=False, highlight=False)


def tool_requested(event: ToolUseEndEvent) -> None:
    call = event.tool_call
    console.print()
    console.print(
        f"  [magenta]Tool[/magenta]     [bold white]{escape(call.name)}[/bold white]"
        f"  [dim]{escape(_mono(json.dumps(call.input, ensure_ascii=False), 100))}[/dim]"
    )


def tool_executing(event: ToolExecutingEvent) -> None:
    console.print(f"  [magenta]↳ Running[/magenta] [white]{escape(event.tool_call.name)}[/white]…")


def tool_executed(event: ToolExecutedEvent) -> None:
    console.print(
        f"  [bold green]✓ {escape(event.tool_call.name)}[/bold green]"
        f"  [dim]{event.duration_ms:.0f} ms[/dim]  "
        f"[white]{escape(_mono(event.result.content.replace(chr(10), ' '), 140))}[/white]"
    )


def tool_error(event: ToolErrorEvent) -> None:
    message = sanitize_error_message(event.result.content)
    console.print(
        f"  [bold red]✗ {escape(event.tool_call.name)}[/bold red]"
        f"  [dim]{event.duration_ms:.0f} ms[/dim]  "
        f"[red]{escape(_mono(message.replace(chr(10), ' '), 200))}[/red]"
    )


def agent_complete(event: AgentCompleteEvent) -> None:
    color = "red" if termination.gave_up(event.reason) else "green"
    console.print()
    console.print(
        Panel(
            f"[bold white]{escape(event.message)}[/bold white]\n"
            f"[dim]reason={event.reason.value}  rounds={event.total_rounds}[/dim]",
            title=_label(termination.reason_label(event.reason).upper(), color),
            border_style=color,
            padding=(0, 2),
        )
    )


def error_message(message: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{escape(sanitize_error_message(message))}[/bold white]",
            title=_label("ERROR", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


def error(event: ErrorEvent) -> None:
    error_message(event.message)


_RENDERERS = {
    "round_start": round_start,
    "round_end": round_end,
    "text_delta": text_delta,
    "tool_use_end": tool_requested,
    "tool_executing": tool_executing,
    "tool_executed": tool_executed,
    "tool_error": tool_error,
    "agent_complete": agent_complete,
    "error": error,
}


def render_event(event) -> None:
    # tool_use_start is announced again, complete, by tool_use_end
    if isinstance(event, ToolUseStartEvent):
        return
    renderer = _RENDERERS.get(getattr(event, "type", ""))
    if renderer is not None:
        renderer(event)


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------


def execution_summary(state: AgentState) -> None:
    if not state.tool_call_history:
        return
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="dim",
        show_header=True,
        header_style="bold dim",
        padding=(0, 1),
    )
    table.add_column("#", justify="center", width=4)
    table.add_column("Tool", width=20)
    table.add_column("OK", justify="center", width=4)
    table.add_column("Input", style="dim white")

    for i, record in enumerate(state.tool_call_history, start=1):
        ok = "[bold green]✓[/bold green]" if record.success else "[bold red]✗[/bold red]"
        table.add_row(
            str(i),
            record.name,
            ok,
            escape(_mono(json.dumps(record.input, ensure_ascii=False), 60)),
        )

    console.print(
        Panel(
            table,
            title=f"[dim]TOOL CALLS: {state.current_round} round(s)[/dim]",
            border_style="dim",
            padding=(0, 1),
        )
    )
