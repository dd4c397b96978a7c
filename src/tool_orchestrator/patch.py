# patch.py
# Unified-diff patch engine.
#
# Pipeline:
#   raw model output → normalize_patch_input() → parse() → apply_hunks()
#   → sandboxed write via apply_patch()
#
# normalize_patch_input() tolerates the dialects models tend to emit
# (JSON payloads, heredocs, fenced blocks, "*** Begin Patch" blocks, new-file
# diffs with a wrong hunk count). Anything it cannot convert fails closed.
#
# apply_patch() is all-or-nothing: every target is resolved and every new
# content is computed in memory before the first byte is written.

import json
import logging
import re
from pathlib import Path
from typing import Any, Union

from tool_orchestrator.errors import (
    HunkMismatch,
    MalformedPatch,
    PathOutsideWorkdir,
    UnsupportedPatchFormat,
)
from tool_orchestrator.models import AppliedFile, Hunk, HunkLine, PatchFile

LOGGER = logging.getLogger(__name__)

DEV_NULL = "/dev/null"

_HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_FENCE = re.compile(r"^\s*```[\w+-]*\s*$")
_HEREDOC = re.compile(
    r"apply_patch\s*<<-?\s*['\"]?(\w+)['\"]?[^\n]*\n(.*?)\n\s*\1\s*$",
    re.DOTALL | re.MULTILINE,
)
_UNSUPPORTED_GIT_HEADERS = (
    "deleted file mode",
    "rename from",
    "rename to",
    "copy from",
    "copy to",
    "GIT binary patch",
    "Binary files",
)
_GIT_METADATA = (
    "diff ",
    "index ",
    "new file mode",
    "old mode",
    "new mode",
    "similarity index",
    "dissimilarity index",
)
_OP_BY_PREFIX = {" ": "context", "-": "remove", "+": "add"}


# ---------------------------------------------------------------------------
# Input normalization
# ---------------------------------------------------------------------------


def _unwrap_payload(payload: dict[str, Any]) -> str:
    """Pull raw diff text out of a `{patch: ...}` or `{cmd: [...]}` payload."""
    patch = payload.get("patch")
    if isinstance(patch, str) and patch.strip():
        return patch

    cmd = payload.get("cmd")
    if isinstance(cmd, list) and cmd:
        tail = cmd
        if "apply_patch" in cmd:
            tail = cmd[cmd.index("apply_patch") + 1:]
        strings = [part for part in tail if isinstance(part, str) and part.strip()]
        # ["apply_patch", "patch", "<diff>"]: the diff is always the last entry
        if strings:
            return strings[-1]

    raise UnsupportedPatchFormat(
        f"Payload has no usable 'patch' or 'cmd' field: keys={sorted(payload)}"
    )


def _strip_heredoc(text: str) -> str:
    match = _HEREDOC.search(text)
    if match:
        return match.group(2)
    return text


def _strip_fences(text: str) -> str:
    return "\n".join(line for line in text.splitlines() if not _FENCE.match(line))


def _convert_begin_patch(text: str) -> str:
    """Convert a `*** Begin Patch` / `*** Add File:` block to /dev/null diffs."""
    start = text.find("*** Begin Patch")
    end = text.find("*** End Patch", start)
    if end < 0:
        raise UnsupportedPatchFormat("'*** Begin Patch' block has no '*** End Patch'.")

    body = text[start + len("*** Begin Patch"):end].splitlines()
    sections: list[tuple[str, list[str]]] = []

    for line in body:
        if not line.strip() and not sections:
            continue
        if line.startswith("*** Add File:"):
            path = line[len("*** Add File:"):].strip()
            if not path:
                raise UnsupportedPatchFormat("'*** Add File:' without a path.")
            sections.append((path, []))
            continue
        if line.startswith("*** Update File:") or line.startswith("*** Delete File:"):
            raise UnsupportedPatchFormat(
                f"Only '*** Add File' is supported in this format, got: {line.strip()}"
            )
        if line.startswith("*** End of File"):
            continue
        if not sections:
            raise UnsupportedPatchFormat(f"Unexpected line before any file header: {line!r}")
        if not line.startswith("+"):
            raise UnsupportedPatchFormat(f"Invalid add line: {line!r}")
        sections[-1][1].append(line)

    if not sections:
        raise UnsupportedPatchFormat("'*** Begin Patch' block contains no files.")

    out: list[str] = []
    for path, added in sections:
        out.append(f"--- {DEV_NULL}")
        out.append(f"+++ {path}")
        out.append(f"@@ -0,0 +{1 if added else 0},{len(added)} @@")
        out.extend(added)
    return "\n".join(out)


def _is_file_header(lines: list[str], i: int) -> bool:
    return (
        lines[i].startswith("--- ")
        and i + 1 < len(lines)
        and lines[i + 1].startswith("+++ ")
    )


def _repair_new_file_counts(text: str) -> str:
    """
    Recompute the hunk header of every /dev/null → path section from the
    addition lines that actually follow it, inserting one if it is missing.
    Bare blank lines inside the body are read as blank additions; any other
    line without a '+' prefix raises UnsupportedPatchFormat.
    """
    lines = text.splitlines()
    out: list[str] = []
    i = 0
    while i < len(lines):
        if not (_is_file_header(lines, i) and _clean_path(lines[i][4:]) is None):
            out.append(lines[i])
            i += 1
            continue

        path = lines[i + 1][4:].strip()
        out.extend(lines[i:i + 2])
        i += 2
        if i < len(lines) and lines[i].startswith("@@"):
            i += 1

        body: list[str] = []
        # trailing run of blank lines read as additions, not sent with '+'
        implied_blanks = 0
        while i < len(lines):
            line = lines[i]
            if _is_file_header(lines, i) or line.startswith("@@") or line.startswith("diff "):
                break
            if line.startswith("\\"):
                i += 1
                continue
            if line.startswith("+"):
                body.append(line)
                implied_blanks = 0
            elif not line.strip():
                body.append("+")
                implied_blanks += 1
            else:
                raise UnsupportedPatchFormat(
                    f"New file '{path}' has a line without a '+' prefix: {line!r}"
                )
            i += 1

        if implied_blanks:
            del body[-implied_blanks:]
        out.append(f"@@ -0,0 +{1 if body else 0},{len(body)} @@")
        out.extend(body)
    return "\n".join(out)


def normalize_patch_input(payload: Union[str, dict[str, Any]]) -> str:
    """
    Return plain unified-diff text for any supported input dialect.
    Raises UnsupportedPatchFormat when the input cannot be converted.
    """
    if isinstance(payload, dict):
        text = _unwrap_payload(payload)
    elif isinstance(payload, str):
        text = payload
    else:
        raise UnsupportedPatchFormat(f"Patch must be text or an object, got {type(payload).__name__}.")

    stripped = text.strip()
    if stripped.startswith("{"):
        try:
            data = json.loads(stripped, strict=False)
        except json.JSONDecodeError as exc:
            raise UnsupportedPatchFormat(f"Patch looks like JSON but does not parse: {exc}") from exc
        if not isinstance(data, dict):
            raise UnsupportedPatchFormat("JSON patch payload must be an object.")
        text = _unwrap_payload(data)

    text = _strip_heredoc(text)
    text = _strip_fences(text)

    if "*** Begin Patch" in text:
        text = _convert_begin_patch(text)

    text = _repair_new_file_counts(text)

    if not text.strip():
        raise UnsupportedPatchFormat("Patch is empty after normalization.")
    return text


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _clean_path(raw: str) -> Union[str, None]:
    """Strip timestamps, quotes and a/ b/ prefixes. /dev/null maps to None."""
    path = raw.split("\t", 1)[0].strip().strip('"')
    if path == DEV_NULL:
        return None
    if path.startswith(("a/", "b/")):
        path = path[2:]
    return path


def _parse_hunk(lines: list[str], i: int) -> tuple[Hunk, int]:
    match = _HUNK_HEADER.match(lines[i])
    if not match:
        raise MalformedPatch(f"Unparseable hunk header: {lines[i]!r}")

    old_start, old_count, new_start, new_count = (
        int(match.group(1)),
        int(match.group(2)) if match.group(2) is not None else 1,
        int(match.group(3)),
        int(match.group(4)) if match.group(4) is not None else 1,
    )
    i += 1

    ops: list[HunkLine] = []
    old_left, new_left = old_count, new_count
    while i < len(lines) and (old_left > 0 or new_left > 0):
        line = lines[i]
        if line.startswith("\\"):
            i += 1
            continue
        if line == "":
            op, text = "context", ""
        elif line[0] in _OP_BY_PREFIX:
            op, text = _OP_BY_PREFIX[line[0]], line[1:]
        else:
            # short hunk; counts are recomputed below
            break
        if op != "add":
            old_left -= 1
        if op != "remove":
            new_left -= 1
        ops.append(HunkLine(op=op, text=text))
        i += 1

    # A trailing "\ No newline at end of file" belongs to this hunk.
    while i < len(lines) and lines[i].startswith("\\"):
        i += 1

    hunk = Hunk(
        old_start=max(old_start, 0),
        old_count=sum(1 for op in ops if op.op != "add"),
        new_start=max(new_start, 0),
        new_count=sum(1 for op in ops if op.op != "remove"),
        lines=ops,
    )
    return hunk, i


def parse(diff_text: str) -> list[PatchFile]:
    """
    Parse unified-diff text into an ordered list of PatchFile.

    Raises MalformedPatch when a `---` header has no `+++`, a file section
    has no hunks, stray change lines appear outside a hunk, or there are no
    files at all. Raises UnsupportedPatchFormat for deletions, renames and
    binary sections.
    """
    lines = diff_text.splitlines()
    files: list[PatchFile] = []
    i = 0

    while i < len(lines):
        line = lines[i]

        if line.startswith(_UNSUPPORTED_GIT_HEADERS):
            raise UnsupportedPatchFormat(f"Unsupported diff section: {line.strip()}")

        if line.startswith("@@"):
            raise MalformedPatch(f"Hunk without a file header at line {i + 1}.")

        if line.startswith("+++ "):
            raise MalformedPatch(f"'+++' header without a preceding '---' at line {i + 1}.")

        if line.startswith("--- "):
            if i + 1 >= len(lines) or not lines[i + 1].startswith("+++ "):
                raise MalformedPatch(f"'---' header without matching '+++' at line {i + 1}.")
            source = _clean_path(line[4:])
            target = _clean_path(lines[i + 1][4:])
            if target is None:
                raise UnsupportedPatchFormat("File deletion (+++ /dev/null) is not supported.")
            if not target:
                raise MalformedPatch(f"Empty target path at line {i + 2}.")
            i += 2

            hunks: list[Hunk] = []
            while i < len(lines) and lines[i].startswith("@@"):
                hunk, i = _parse_hunk(lines, i)
                hunks.append(hunk)
            if not hunks:
                raise MalformedPatch(f"File section '{target}' has no hunks.")

            files.append(PatchFile(path=target, is_new=source is None, hunks=hunks))
            continue

        if files and line[:1] in ("+", "-"):
            raise MalformedPatch(f"Change line outside any hunk at line {i + 1}: {line!r}")

        if files and line.strip() and not line.startswith(_GIT_METADATA):
            raise MalformedPatch(f"Unexpected line after hunks at line {i + 1}: {line!r}")

        # leading commentary, blank lines and git metadata: skipped
        i += 1

    if not files:
        raise MalformedPatch("Patch contains no file sections.")
    return files


def render(files: list[PatchFile]) -> str:
    """Render parsed files back to unified-diff text."""
    prefix = {"context": " ", "remove": "-", "add": "+"}
    out: list[str] = []
    for patch_file in files:
        out.append(f"--- {DEV_NULL}" if patch_file.is_new else f"--- a/{patch_file.path}")
        out.append(f"+++ b/{patch_file.path}")
        for hunk in patch_file.hunks:
            out.append(
                f"@@ -{hunk.old_start},{hunk.old_count} +{hunk.new_start},{hunk.new_count} @@"
            )
            out.extend(prefix[line.op] + line.text for line in hunk.lines)
    return "\n".join(out) + "\n"


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def apply_hunks(original: str, hunks: list[Hunk], path: str = "<buffer>") -> str:
    """
    Apply hunks in order to `original` and return the new text.

    Tracks the line offset introduced by earlier hunks. Every context and
    removal line must match exactly or HunkMismatch is raised.
    """
    buffer = original.splitlines()
    keep_trailing_newline = original == "" or original.endswith("\n")
    offset = 0

    for number, hunk in enumerate(hunks, start=1):
        expected = [line.text for line in hunk.lines if line.op != "add"]
        replacement = [line.text for line in hunk.lines if line.op != "remove"]

        # A pure insertion (-n,0) goes after old line n.
        anchor = hunk.old_start if hunk.old_count == 0 else max(hunk.old_start - 1, 0)
        start = anchor + offset

        if start < 0 or start + len(expected) > len(buffer):
            raise HunkMismatch(
                f"{path}: hunk {number} targets lines {start + 1}-{start + len(expected)} "
                f"but the file has {len(buffer)} lines."
            )

        for k, want in enumerate(expected):
            have = buffer[start + k]
            if have != want:
                raise HunkMismatch(
                    f"{path}: hunk {number} does not match at line {start + k + 1}: "
                    f"expected {want!r}, found {have!r}."
                )

        buffer[start:start + len(expected)] = replacement
        offset += len(replacement) - len(expected)

    if not buffer:
        return ""
    return "\n".join(buffer) + ("\n" if keep_trailing_newline else "")


def resolve_in_workdir(path: str, workdir: Union[str, Path]) -> Path:
    """
    Resolve `path` against the working root. Relative paths land under the
    root; anything that resolves outside it raises PathOutsideWorkdir.
    """
    if not path or not path.strip():
        raise PathOutsideWorkdir("An empty path does not name anything inside the working directory.")

    root = Path(workdir).resolve()
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        candidate = root / candidate
    resolved = candidate.resolve(strict=False)

    if resolved != root and root not in resolved.parents:
        raise PathOutsideWorkdir(f"Path '{path}' resolves outside the working directory '{root}'.")
    return resolved


def apply_patch(payload: Union[str, dict[str, Any]], workdir: Union[str, Path]) -> list[AppliedFile]:
    """
    Normalize, parse and apply a patch under `workdir`.

    Nothing is written unless every file section resolves inside the root
    and every hunk applies cleanly.
    """
    files = parse(normalize_patch_input(payload))

    staged: dict[Path, str] = {}
    summaries: list[AppliedFile] = []

    for patch_file in files:
        target = resolve_in_workdir(patch_file.path, workdir)

        if target in staged:
            original = staged[target]
        elif patch_file.is_new:
            if target.exists():
                raise HunkMismatch(f"{patch_file.path}: file already exists.")
            original = ""
        else:
            if not target.is_file():
                raise HunkMismatch(f"{patch_file.path}: file does not exist.")
            original = target.read_text(encoding="utf-8")

        staged[target] = apply_hunks(original, patch_file.hunks, path=patch_file.path)
        summaries.append(
            AppliedFile(
                path=patch_file.path,
                created=patch_file.is_new,
                added=sum(1 for h in patch_file.hunks for line in h.lines if line.op == "add"),
                removed=sum(1 for h in patch_file.hunks for line in h.lines if line.op == "remove"),
            )
        )

    for target, content in staged.items():
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    LOGGER.info(
        "patch_applied",
        extra={"files": [s.path for s in summaries], "workdir": str(workdir)},
    )
    return summaries
