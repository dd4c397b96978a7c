# run.py
# Entry point. Config and wiring only. No logic lives here.
#
# Swap the provider and model with TOOL_ORCHESTRATOR_PROVIDER and
# TOOL_ORCHESTRATOR_MODEL, e.g. any OpenRouter-supported model.
# https://openrouter.ai/models

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Optional

from rich.logging import RichHandler
from rich.prompt import Confirm

from tool_orchestrator import display
from tool_orchestrator.approval import ApprovalGate, PendingCallback
from tool_orchestrator.config import Settings
from tool_orchestrator.errors import NoActiveModel
from tool_orchestrator.llm import OpenAIModelClient, ProviderRegistry
from tool_orchestrator.models import ApprovalRequest
from tool_orchestrator.orchestrator import AgentOrchestrator
from tool_orchestrator.tools import ToolRegistry

LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tool-orchestrator",
        description="Run a tool-calling agent loop against a working directory.",
    )
    parser.add_argument("--workdir", help="Working root for files and commands. Defaults to cwd.")
    parser.add_argument("--planner", action="store_true", help="Ask the model for a plan first.")
    parser.add_argument("--reviewer", action="store_true", help="Review each tool round.")
    parser.add_argument("--max-rounds", type=int, dest="max_rounds", help="Round ceiling.")
    parser.add_argument("--verbose", action="store_true", help="Show debug logging.")
    parser.add_argument("goal", nargs="?", help="What the agent should do.")
    return parser


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=display.console, show_path=False, rich_tracebacks=True)],
    )


def _approval_handler(gate: ApprovalGate) -> PendingCallback:
    tasks: set[asyncio.Task] = set()

    async def ask(request: ApprovalRequest) -> None:
        display.approval_prompt(request)
        approved = await asyncio.to_thread(Confirm.ask, f"Allow {request.title.lower()}?", default=False)
        display.approval_decided(request, approved)
        # a cancelled session may already have denied it
        if gate.current is request:
            gate.resolve(approved)

    def on_pending(request: Optional[ApprovalRequest]) -> None:
        if request is None:
            return
        task = asyncio.get_running_loop().create_task(ask(request))
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    return on_pending


async def _run_session(orchestrator: AgentOrchestrator, goal: str) -> int:
    session = orchestrator.start([{"role": "user", "content": goal}])
    failed = False
    async for event in session.events():
        display.render_event(event)
        failed = failed or event.type == "error"
    display.execution_summary(session.state)
    return 1 if failed else 0


def main() -> int:
    args = build_parser().parse_args()
    configure_logging(args.verbose)
    settings = Settings.from_env()

    goal = args.goal or input("Goal: ").strip()
    if not goal:
        print("No goal provided.")
        return 1

    workdir = Path(args.workdir or settings.workdir).expanduser().resolve()
    if not workdir.is_dir():
        print(f"Invalid working directory: {workdir}")
        return 1

    loop_config = settings.loop.model_copy(
        update={
            "enable_planner": settings.loop.enable_planner or args.planner,
            "enable_reviewer": settings.loop.enable_reviewer or args.reviewer,
            "max_rounds": args.max_rounds if args.max_rounds and args.max_rounds > 0 else settings.loop.max_rounds,
        }
    )

    try:
        provider = ProviderRegistry().resolve(settings.provider)
        model = OpenAIModelClient.from_provider(
            provider,
            model=settings.model,
            api_key=settings.api_key,
            base_url=settings.base_url,
        )
    except NoActiveModel as exc:
        display.error_message(str(exc))
        return 1

    gate = ApprovalGate()
    gate.on_pending = _approval_handler(gate)
    orchestrator = AgentOrchestrator(
        model=model,
        registry=ToolRegistry.for_workdir(str(workdir)),
        gate=gate,
        config=loop_config,
    )

    display.banner(provider.id, model.model, str(workdir))
    display.prompt_received(goal)
    LOGGER.debug("session_starting", extra={"provider": provider.id, "model": model.model})
    try:
        return asyncio.run(_run_session(orchestrator, goal))
    except KeyboardInterrupt:
        display.error_message("Cancelled by the user.")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
