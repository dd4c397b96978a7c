# tools.py
# Tool catalog: input schemas, handlers and the registry.
#
# Every tool is a ToolSpec pairing a pydantic input model with a plain
# handler `(ToolContext, input) -> str`. The executor only ever calls
# ToolRegistry.execute(); it never reaches a handler directly.
#
# Filesystem tools are sandboxed to the working root with the same resolver
# the patch engine uses.

import asyncio
import fnmatch
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

from tool_orchestrator import patch as patch_engine
from tool_orchestrator.collaborators import (
    Editor,
    LanguageServer,
    NullEditor,
    RegexLanguageServer,
    SubprocessTerminal,
    Terminal,
)
from tool_orchestrator.errors import InvalidToolInput, PatchError, ToolExecutionFailed, UnknownTool

LOGGER = logging.getLogger(__name__)

TASK_COMPLETE = "task_complete"
APPLY_PATCH = "apply_patch"

_MAX_READ_CHARS = 20_000
_MAX_SEARCH_HITS = 50


# ---------------------------------------------------------------------------
# Input schemas
# ---------------------------------------------------------------------------


class WriteToTerminalInput(BaseModel):
    command: str = Field(..., min_length=1, description="Shell command to run in the working directory.")


class ReadTerminalOutputInput(BaseModel):
    lines: int = Field(default=50, ge=1, le=2000, description="Number of trailing lines to return.")


class ReadFileInput(BaseModel):
    path: str = Field(..., min_length=1, description="File path relative to the working directory.")


class ListFilesInput(BaseModel):
    path: str = Field(default=".", description="Directory relative to the working directory.")


class GetEditorContextInput(BaseModel):
    pass


class SearchWorkspaceInput(BaseModel):
    query: str = Field(..., min_length=1, description="Literal text to search for.")
    glob: str = Field(default="*", description="Filename pattern, e.g. '*.py'.")


class LspQueryInput(BaseModel):
    kind: str = Field(..., description="'symbols' or 'definition'.")
    path: str = Field(..., min_length=1)
    line: int = Field(default=1, ge=1, description="1-based line.")
    character: int = Field(default=0, ge=0, description="0-based column.")


class ApplyPatchInput(BaseModel):
    patch: Optional[str] = Field(default=None, description="Unified diff. New files use '--- /dev/null'.")
    cmd: Optional[list[str]] = Field(
        default=None,
        description='Alternative form: ["apply_patch", "patch", "<diff>"]. Ignored when patch is set.',
    )

    @model_validator(mode="after")
    def _needs_patch_or_cmd(self) -> "ApplyPatchInput":
        if not (self.patch and self.patch.strip()) and not self.cmd:
            raise ValueError("either 'patch' or 'cmd' is required")
        return self

    def payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class TaskCompleteInput(BaseModel):
    summary: str = Field(default="", description="What was done.")


# ---------------------------------------------------------------------------
# Registry types
# ---------------------------------------------------------------------------


@dataclass
class ToolContext:
    """Collaborators a handler may touch."""

    workdir: str
    terminal: Terminal
    editor: Editor = field(default_factory=NullEditor)
    lsp: Optional[LanguageServer] = None


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_model: type[BaseModel]
    handler: Callable[[ToolContext, Any], str]


class ToolOutput(BaseModel):
    content: str = ""
    is_error: bool = False
    is_task_complete: bool = False


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _tool_write_to_terminal(ctx: ToolContext, args: WriteToTerminalInput) -> str:
    return ctx.terminal.run(args.command)


def _tool_read_terminal_output(ctx: ToolContext, args: ReadTerminalOutputInput) -> str:
    return ctx.terminal.read_output(args.lines)


def _tool_read_file(ctx: ToolContext, args: ReadFileInput) -> str:
    target = patch_engine.resolve_in_workdir(args.path, ctx.workdir)
    if not target.is_file():
        raise FileNotFoundError(f"No such file: {args.path}")
    text = target.read_text(encoding="utf-8", errors="replace")
    if len(text) > _MAX_READ_CHARS:
        return text[:_MAX_READ_CHARS] + f"\n... [truncated, {len(text)} chars total]"
    return text


def _tool_list_files(ctx: ToolContext, args: ListFilesInput) -> str:
    target = patch_engine.resolve_in_workdir(args.path, ctx.workdir)
    if not target.is_dir():
        raise NotADirectoryError(f"Not a directory: {args.path}")
    entries = []
    for child in sorted(target.iterdir(), key=lambda p: p.name):
        entries.append(child.name + ("/" if child.is_dir() else ""))
    return "\n".join(entries) or "(empty directory)"


def _tool_get_editor_context(ctx: ToolContext, args: GetEditorContextInput) -> str:
    return ctx.editor.context()


def _tool_search_workspace(ctx: ToolContext, args: SearchWorkspaceInput) -> str:
    root = Path(ctx.workdir).resolve()
    hits: list[str] = []
    for current, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if not d.startswith("."))
        for name in sorted(files):
            if not fnmatch.fnmatch(name, args.glob):
                continue
            path = Path(current) / name
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            for number, line in enumerate(text.splitlines(), start=1):
                if args.query in line:
                    hits.append(f"{path.relative_to(root)}:{number}: {line.strip()}")
                    if len(hits) >= _MAX_SEARCH_HITS:
                        return "\n".join(hits) + "\n... [more matches omitted]"
    return "\n".join(hits) or "No matches found."


def _tool_lsp_query(ctx: ToolContext, args: LspQueryInput) -> str:
    if ctx.lsp is None:
        return "No language server is attached to this session."
    target = patch_engine.resolve_in_workdir(args.path, ctx.workdir)
    return ctx.lsp.query(args.kind, target, args.line, args.character)


def _tool_apply_patch(ctx: ToolContext, args: ApplyPatchInput) -> str:
    applied = patch_engine.apply_patch(args.payload(), ctx.workdir)
    lines = []
    for item in applied:
        verb = "Created" if item.created else "Updated"
        lines.append(f"{verb} {item.path} (+{item.added} -{item.removed})")
    return "\n".join(lines)


def _tool_task_complete(ctx: ToolContext, args: TaskCompleteInput) -> str:
    return args.summary or "Task complete."


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

DEFAULT_TOOLS: tuple[ToolSpec, ...] = (
    ToolSpec(
        "write_to_terminal",
        "Run a shell command in the working directory and return its output.",
        WriteToTerminalInput,
        _tool_write_to_terminal,
    ),
    ToolSpec(
        "read_terminal_output",
        "Return the last N lines printed to the terminal.",
        ReadTerminalOutputInput,
        _tool_read_terminal_output,
    ),
    ToolSpec("read_file", "Read a text file.", ReadFileInput, _tool_read_file),
    ToolSpec("list_files", "List a directory.", ListFilesInput, _tool_list_files),
    ToolSpec(
        "get_editor_context",
        "Describe the file and selection open in the editor.",
        GetEditorContextInput,
        _tool_get_editor_context,
    ),
    ToolSpec(
        "search_workspace",
        "Search files in the working directory for literal text.",
        SearchWorkspaceInput,
        _tool_search_workspace,
    ),
    ToolSpec(
        "lsp_query",
        "Ask the language server for symbols in a file or the definition under a cursor.",
        LspQueryInput,
        _tool_lsp_query,
    ),
    ToolSpec(
        APPLY_PATCH,
        "Create or modify files with a unified diff. Requires user approval.",
        ApplyPatchInput,
        _tool_apply_patch,
    ),
    ToolSpec(
        TASK_COMPLETE,
        "Call this once the user's request is fully done, with a short summary.",
        TaskCompleteInput,
        _tool_task_complete,
    ),
)


class ToolRegistry:
    """Fixed catalog of tools bound to one set of collaborators."""

    def __init__(self, context: ToolContext, specs: tuple[ToolSpec, ...] = DEFAULT_TOOLS) -> None:
        self.context = context
        self._specs = {spec.name: spec for spec in specs}

    @classmethod
    def for_workdir(cls, workdir: str, editor: Optional[Editor] = None) -> "ToolRegistry":
        context = ToolContext(
            workdir=workdir,
            terminal=SubprocessTerminal(workdir),
            editor=editor or NullEditor(),
            lsp=RegexLanguageServer(workdir),
        )
        return cls(context)

    @property
    def names(self) -> list[str]:
        return list(self._specs)

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def definitions(self) -> list[dict[str, Any]]:
        """OpenAI-style function schemas for every tool."""
        return [
            {
                "type": "function",
                "function": {
                    "name": spec.name,
                    "description": spec.description,
                    "parameters": spec.input_model.model_json_schema(),
                },
            }
            for spec in self._specs.values()
        ]

    def validate(self, name: str, tool_input: Optional[dict[str, Any]]) -> BaseModel:
        spec = self._specs.get(name)
        if spec is None:
            raise UnknownTool(f"Tool '{name}' is not in the registry.")
        try:
            return spec.input_model.model_validate(tool_input or {})
        except ValidationError as exc:
            raise InvalidToolInput(f"Invalid input for '{name}': {exc}") from exc

    async def execute(self, name: str, tool_input: Optional[dict[str, Any]]) -> ToolOutput:
        """
        Validate and run one tool.

        Raises UnknownTool / InvalidToolInput before running anything,
        ToolExecutionFailed when a collaborator fails, and lets PatchError
        through untouched so the caller can tell parse from apply failures.
        """
        args = self.validate(name, tool_input)
        spec = self._specs[name]
        try:
            content = await asyncio.to_thread(spec.handler, self.context, args)
        except PatchError:
            raise
        except Exception as exc:
            raise ToolExecutionFailed(str(exc) or type(exc).__name__) from exc

        return ToolOutput(content=content, is_task_complete=name == TASK_COMPLETE)
