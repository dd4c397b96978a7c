# collaborators.py
# Default external collaborators the tool catalog talks to.
#
# The orchestrator never touches these directly. Tools do. Each class is a
# small stand-in for what a richer host (terminal emulator, editor, language
# server) would provide, so the CLI is usable on its own.

import logging
import os
import re
import shutil
import subprocess
from collections import deque
from pathlib import Path
from typing import Optional, Protocol

LOGGER = logging.getLogger(__name__)

TIMEOUT_RETURN_CODE = 124
_OUTPUT_BUFFER_LINES = 2000


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class Terminal(Protocol):
    def run(self, command: str) -> str: ...

    def read_output(self, lines: int) -> str: ...


class Editor(Protocol):
    def context(self) -> str: ...


class LanguageServer(Protocol):
    def query(self, kind: str, path: Path, line: int, character: int) -> str: ...


# ---------------------------------------------------------------------------
# Terminal
# ---------------------------------------------------------------------------


def _default_executable() -> str:
    return shutil.which("bash") or shutil.which("sh") or "/bin/sh"


def _normalize_output(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").replace("\r\n", "\n")


class SubprocessTerminal:
    """
    Runs each command in a fresh `bash -lc` inside the working directory and
    keeps a rolling buffer of everything printed, for read_terminal_output.
    """

    def __init__(
        self,
        workdir: str,
        timeout: Optional[float] = 60.0,
        executable: Optional[str] = None,
    ) -> None:
        self.workdir = workdir
        self.timeout = timeout
        self.executable = executable or _default_executable()
        self._buffer: deque[str] = deque(maxlen=_OUTPUT_BUFFER_LINES)

    def run(self, command: str) -> str:
        LOGGER.info("terminal_command", extra={"command": command, "cwd": self.workdir})
        try:
            process = subprocess.run(
                [self.executable, "-lc", command],
                capture_output=True,
                cwd=self.workdir,
                timeout=self.timeout,
                check=False,
                text=False,
            )
            returncode = process.returncode
            stdout = _normalize_output(process.stdout)
            stderr = _normalize_output(process.stderr)
        except subprocess.TimeoutExpired as exc:
            returncode = TIMEOUT_RETURN_CODE
            stdout = _normalize_output(exc.stdout or b"")
            stderr = f"Command timed out after {self.timeout} seconds."

        output = stdout
        if stderr:
            output = f"{output}\n{stderr}" if output else stderr
        self._buffer.append(f"$ {command}")
        self._buffer.extend(output.splitlines())

        if returncode != 0:
            raise RuntimeError(f"exit code {returncode}\n{output}".rstrip())
        return output or "(no output)"

    def read_output(self, lines: int) -> str:
        if not self._buffer:
            return "(terminal is empty)"
        return "\n".join(list(self._buffer)[-max(lines, 1):])


# ---------------------------------------------------------------------------
# Editor
# ---------------------------------------------------------------------------


class NullEditor:
    """Used when no editor is attached."""

    def context(self) -> str:
        return "No editor is attached to this session."


class StaticEditor:
    def __init__(self, active_file: str, selection: str = "") -> None:
        self.active_file = active_file
        self.selection = selection

    def context(self) -> str:
        lines = [f"Active file: {self.active_file}"]
        if self.selection:
            lines.append(f"Selection:\n{self.selection}")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Language server
# ---------------------------------------------------------------------------


_SYMBOL = re.compile(r"^\s*(?:async\s+)?(def|class)\s+(\w+)")
_WORD = re.compile(r"\w+")


class RegexLanguageServer:
    """
    Minimal Python-aware stand-in. Supports:
      symbols     → every def/class in the file
      definition  → where the identifier under the cursor is defined
    """

    def __init__(self, workdir: str) -> None:
        self.workdir = Path(workdir)

    def query(self, kind: str, path: Path, line: int, character: int) -> str:
        if kind == "symbols":
            return self._symbols(path)
        if kind == "definition":
            return self._definition(path, line, character)
        raise ValueError(f"Unsupported query kind '{kind}'. Use 'symbols' or 'definition'.")

    def _symbols(self, path: Path) -> str:
        found = []
        for number, text in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
            match = _SYMBOL.match(text)
            if match:
                found.append(f"{number}: {match.group(1)} {match.group(2)}")
        return "\n".join(found) or "No symbols found."

    def _definition(self, path: Path, line: int, character: int) -> str:
        lines = path.read_text(encoding="utf-8").splitlines()
        if not 1 <= line <= len(lines):
            raise ValueError(f"Line {line} is outside {path.name} (1-{len(lines)}).")

        word = None
        for match in _WORD.finditer(lines[line - 1]):
            if match.start() <= character <= match.end():
                word = match.group(0)
                break
        if word is None:
            return "No identifier at that position."

        hits = []
        for root, dirs, files in os.walk(self.workdir):
            dirs[:] = [d for d in dirs if not d.startswith(".")]
            for name in files:
                if not name.endswith(".py"):
                    continue
                candidate = Path(root) / name
                try:
                    text = candidate.read_text(encoding="utf-8")
                except (OSError, UnicodeDecodeError):
                    continue
                for number, source in enumerate(text.splitlines(), start=1):
                    match = _SYMBOL.match(source)
                    if match and match.group(2) == word:
                        hits.append(f"{candidate.relative_to(self.workdir)}:{number}")
        return "\n".join(hits) or f"No definition found for '{word}'."
