import pytest
from unittest.mock import MagicMock
from tool_orchestrator.collaborators import RegexLanguageServer, StaticEditor, SubprocessTerminal
from tool_orchestrator.errors import (
    InvalidToolInput,
    PathOutsideWorkdir,
    ToolExecutionFailed,
    UnknownTool,
)
from tool_orchestrator.tools import ToolContext, ToolRegistry


@pytest.fixture
def terminal():
    return MagicMock()


@pytest.fixture
def registry(tmp_path, terminal):
    context = ToolContext(
        workdir=str(tmp_path),
        terminal=terminal,
        editor=StaticEditor("src/app.py", "def main():"),
        lsp=RegexLanguageServer(str(tmp_path)),
    )
    return ToolRegistry(context)

# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

def test_catalog_names(registry):
    assert registry.names == [
        "write_to_terminal",
        "read_terminal_output",
        "read_file",
        "list_files",
        "get_editor_context",
        "search_workspace",
        "lsp_query",
        "apply_patch",
        "task_complete",
    ]
    assert "read_file" in registry
    assert "mcp_weather" not in registry

def test_definitions_are_function_schemas(registry):
    definitions = {d["function"]["name"]: d for d in registry.definitions()}
    read_file = definitions["read_file"]
    assert read_file["type"] == "function"
    assert read_file["function"]["parameters"]["required"] == ["path"]

def test_validate_unknown_tool(registry):
    with pytest.raises(UnknownTool):
        registry.validate("mcp_weather", {})

def test_validate_bad_input(registry):
    with pytest.raises(InvalidToolInput, match="read_file"):
        registry.validate("read_file", {})

# ---------------------------------------------------------------------------
# Filesystem tools
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_read_file(tmp_path, registry):
    (tmp_path / "a.txt").write_text("hello")
    output = await registry.execute("read_file", {"path": "a.txt"})
    assert output.content == "hello"
    assert output.is_error is False

@pytest.mark.asyncio
async def test_read_missing_file(registry):
    with pytest.raises(ToolExecutionFailed, match="No such file"):
        await registry.execute("read_file", {"path": "ghost.txt"})

@pytest.mark.asyncio
async def test_read_file_outside_root(registry):
    with pytest.raises(PathOutsideWorkdir):
        await registry.execute("read_file", {"path": "../../etc/passwd"})

@pytest.mark.asyncio
async def test_list_files(tmp_path, registry):
    (tmp_path / "b.txt").write_text("")
    (tmp_path / "pkg").mkdir()
    output = await registry.execute("list_files", {})
    assert output.content == "b.txt\npkg/"

@pytest.mark.asyncio
async def test_search_workspace(tmp_path, registry):
    (tmp_path / "app.py").write_text("import os\nTODO = 1\n")
    (tmp_path / "notes.md").write_text("TODO later\n")
    output = await registry.execute("search_workspace", {"query": "TODO", "glob": "*.py"})
    assert output.content == "app.py:2: TODO = 1"

@pytest.mark.asyncio
async def test_apply_patch_summary(tmp_path, registry):
    diff = "--- /dev/null\n+++ b/new.txt\n@@ -0,0 +1,2 @@\n+a\n+b\n"
    output = await registry.execute("apply_patch", {"patch": diff})
    assert output.content == "Created new.txt (+2 -0)"
    assert (tmp_path / "new.txt").read_text() == "a\nb\n"

@pytest.mark.asyncio
async def test_apply_patch_structured_cmd(tmp_path, registry):
    diff = "--- /dev/null\n+++ b/cmd.txt\n@@ -0,0 +1,1 @@\n+from cmd\n"
    output = await registry.execute("apply_patch", {"cmd": ["apply_patch", "patch", diff]})
    assert output.content == "Created cmd.txt (+1 -0)"
    assert (tmp_path / "cmd.txt").read_text() == "from cmd\n"

def test_apply_patch_needs_patch_or_cmd(registry):
    with pytest.raises(InvalidToolInput, match="apply_patch"):
        registry.validate("apply_patch", {})
    with pytest.raises(InvalidToolInput):
        registry.validate("apply_patch", {"patch": "   "})

# ---------------------------------------------------------------------------
# Collaborator tools
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_write_to_terminal_uses_terminal(registry, terminal):
    terminal.run.return_value = "ok"
    output = await registry.execute("write_to_terminal", {"command": "make test"})
    terminal.run.assert_called_once_with("make test")
    assert output.content == "ok"

@pytest.mark.asyncio
async def test_read_terminal_output(registry, terminal):
    terminal.read_output.return_value = "$ ls\na.txt"
    output = await registry.execute("read_terminal_output", {"lines": 5})
    terminal.read_output.assert_called_once_with(5)
    assert output.content == "$ ls\na.txt"

@pytest.mark.asyncio
async def test_editor_context(registry):
    output = await registry.execute("get_editor_context", {})
    assert output.content == "Active file: src/app.py\nSelection:\ndef main():"

@pytest.mark.asyncio
async def test_lsp_symbols_and_definition(tmp_path, registry):
    (tmp_path / "lib.py").write_text("class Shape:\n    pass\n\ndef area(shape):\n    return 0\n")
    (tmp_path / "main.py").write_text("from lib import area\nprint(area(None))\n")

    symbols = await registry.execute("lsp_query", {"kind": "symbols", "path": "lib.py"})
    assert symbols.content == "1: class Shape\n4: def area"

    definition = await registry.execute(
        "lsp_query", {"kind": "definition", "path": "main.py", "line": 2, "character": 7}
    )
    assert definition.content == "lib.py:4"

@pytest.mark.asyncio
async def test_lsp_unsupported_kind(tmp_path, registry):
    (tmp_path / "lib.py").write_text("x = 1\n")
    with pytest.raises(ToolExecutionFailed, match="Unsupported query kind"):
        await registry.execute("lsp_query", {"kind": "hover", "path": "lib.py"})

@pytest.mark.asyncio
async def test_task_complete(registry):
    output = await registry.execute("task_complete", {"summary": "Created foo.py"})
    assert output.is_task_complete is True
    assert output.content == "Created foo.py"

# ---------------------------------------------------------------------------
# Subprocess terminal
# ---------------------------------------------------------------------------

def test_subprocess_terminal_runs_in_workdir(tmp_path):
    (tmp_path / "marker.txt").write_text("")
    shell = SubprocessTerminal(str(tmp_path))
    assert "marker.txt" in shell.run("ls")
    assert "$ ls" in shell.read_output(10)

def test_subprocess_terminal_nonzero_exit(tmp_path):
    shell = SubprocessTerminal(str(tmp_path))
    with pytest.raises(RuntimeError, match="exit code 3"):
        shell.run("exit 3")
