# extraction.py
# Fallback tool-call extraction for models that write tool calls as text.
#
# Tried in order, first hit wins:
#   1. <invoke name="..."><parameter name="...">…</parameter></invoke> markup
#   2. apply_patch <<'EOF' … EOF heredocs
#   3. raw or fenced unified diffs
#   4. JSON payloads carrying a "patch" or "cmd" field
#
# A patch candidate only counts if the patch engine can normalize and parse
# it. Everything here is a best-effort repair layer on top of proper
# structured tool calls, never a substitute for them.

import json
import logging
import re
import uuid
from typing import Any, Callable, Iterable, Optional

from tool_orchestrator import patch as patch_engine
from tool_orchestrator.errors import PatchError
from tool_orchestrator.models import ToolCall
from tool_orchestrator.tools import APPLY_PATCH

LOGGER = logging.getLogger(__name__)

IdFactory = Callable[[], str]

_INVOKE_MARKERS = re.compile(
    r"<invoke[\s>]|</invoke>|<parameter[\s>]|<function_calls>|<tool_use>", re.IGNORECASE
)
_INVOKE_BLOCK = re.compile(
    r"<invoke\s+name=[\"']([\w.-]+)[\"']\s*>(.*?)</invoke>", re.DOTALL | re.IGNORECASE
)
_PARAMETER = re.compile(
    r"<parameter\s+name=[\"']([\w.-]+)[\"']\s*>(.*?)</parameter>", re.DOTALL | re.IGNORECASE
)
_HEREDOC_PATCH = re.compile(
    r"apply_patch\s*<<-?\s*['\"]?(\w+)['\"]?[^\n]*\n.*?\n\s*\1[ \t]*$", re.DOTALL | re.MULTILINE
)
_FENCED_BLOCK = re.compile(r"^```([\w+-]*)[ \t]*\n(.*?)^```[ \t]*$", re.DOTALL | re.MULTILINE)
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)
_DIFF_LINE = re.compile(r"^(?:[ +\-@\\]|diff |index |new file mode|$)")

_PATCH_MENTION = re.compile(r"\b(apply_patch|patch|diff)\b|补丁", re.IGNORECASE)
_CREATE_INTENT = re.compile(
    r"\b(create|write|make|generate|save|add)\b.{0,40}\b(file|script|module|\w+\.\w{1,8})\b"
    r"|(创建|新建|写入|生成).{0,10}文件",
    re.IGNORECASE | re.DOTALL,
)
_WRITE_CLAIM = re.compile(
    r"\b(created|written|wrote|saved|generated|added)\b"
    r"|(已创建|已写入|已生成|已保存|创建成功|写入成功)",
    re.IGNORECASE,
)
_FILENAME = re.compile(r"(?<![\w/.-])((?:[\w.-]+/)*[\w-]+\.[A-Za-z0-9]{1,8})(?![\w/-])")
_BACKTICKED_FILENAME = re.compile(r"`((?:[\w.-]+/)*[\w-]+\.[A-Za-z0-9]{1,8})`")

# Phrases that claim an action happened.
ACTION_CLAIMS: tuple[str, ...] = (
    "i have executed",
    "i've executed",
    "i ran the command",
    "command executed",
    "has been created",
    "has been written",
    "has been updated",
    "successfully created",
    "successfully written",
    "file created",
    "已执行",
    "已完成",
    "已写入",
    "已读取",
    "执行成功",
    "写入成功",
    "命令已执行",
    "操作已完成",
)


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Detection helpers
# ---------------------------------------------------------------------------


def contains_invoke_markup(text: str) -> bool:
    return bool(text) and bool(_INVOKE_MARKERS.search(text))


def mentions_patch_without_code(text: str) -> bool:
    """True when the response talks about a patch but carries no code at all."""
    if not text or not _PATCH_MENTION.search(text):
        return False
    if "```" in text or "*** Begin Patch" in text:
        return False
    return not re.search(r"^(---|\+\+\+|@@) ", text, re.MULTILINE)


def user_wants_file_creation(user_message: str) -> bool:
    return bool(user_message) and bool(_CREATE_INTENT.search(user_message))


def claims_file_written(text: str) -> bool:
    return bool(text) and bool(_WRITE_CLAIM.search(text))


def detect_hallucination(text: str, tool_call_count: int) -> bool:
    """A response that says it did something while calling no tool."""
    if tool_call_count or not text:
        return False
    lowered = text.lower()
    if any(claim in lowered for claim in ACTION_CLAIMS):
        LOGGER.warning(
            "hallucinated_action",
            extra={"preview": text[:100], "tool_call_count": tool_call_count},
        )
        return True
    return False


# ---------------------------------------------------------------------------
# Candidate extraction
# ---------------------------------------------------------------------------


def _coerce_parameter(raw: str) -> Any:
    value = raw.strip()
    try:
        return json.loads(value, strict=False)
    except json.JSONDecodeError:
        return value


def extract_invoke_calls(text: str, known_tools: Iterable[str], new_id: IdFactory = new_call_id) -> list[ToolCall]:
    """Parse <invoke> markup into tool calls. Unknown tool names are skipped."""
    known = set(known_tools)
    calls: list[ToolCall] = []
    for match in _INVOKE_BLOCK.finditer(text or ""):
        name, body = match.group(1), match.group(2)
        if name not in known:
            LOGGER.debug("invoke_unknown_tool", extra={"tool": name})
            continue
        params = {key: _coerce_parameter(value) for key, value in _PARAMETER.findall(body)}
        calls.append(ToolCall(id=new_id(), name=name, input=params))
    return calls


def patch_parses(candidate: Any) -> bool:
    try:
        patch_engine.parse(patch_engine.normalize_patch_input(candidate))
    except PatchError:
        return False
    return True


def extract_heredoc_patch(text: str) -> Optional[str]:
    match = _HEREDOC_PATCH.search(text or "")
    if match and patch_parses(match.group(0)):
        return match.group(0)
    return None


def _raw_diff_span(text: str) -> Optional[str]:
    lines = text.splitlines()
    for i, line in enumerate(lines):
        if line.startswith("--- ") or line.startswith("diff --git"):
            end = i
            while end < len(lines) and _DIFF_LINE.match(lines[end]):
                end += 1
            while end > i and not lines[end - 1].strip():
                end -= 1
            return "\n".join(lines[i:end]) + "\n"
    return None


def extract_unified_diff(text: str) -> Optional[str]:
    """
    Fenced blocks first, the last valid one wins since models tend to put a
    draft before the final answer. Then an unfenced diff in the prose.
    """
    fenced = [
        body for _, body in _FENCED_BLOCK.findall(text or "")
        if "+++ " in body and "@@" in body
    ]
    for body in reversed(fenced):
        if patch_parses(body):
            return body

    span = _raw_diff_span(text or "")
    if span and patch_parses(span):
        return span
    return None


def extract_json_payload(text: str) -> Optional[dict[str, Any]]:
    blocks = [body for lang, body in _FENCED_BLOCK.findall(text or "") if lang in ("", "json")]
    match = _JSON_OBJECT.search(text or "")
    if match:
        blocks.append(match.group(0))

    for block in blocks:
        try:
            data = json.loads(block.strip(), strict=False)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict) and ("patch" in data or "cmd" in data) and patch_parses(data):
            return data
    return None


def extract_fallback_calls(
    text: str,
    known_tools: Iterable[str],
    new_id: IdFactory = new_call_id,
) -> list[ToolCall]:
    """Run the strategies in order and return the first that yields calls."""
    if not text:
        return []
    known = list(known_tools)

    calls = extract_invoke_calls(text, known, new_id)
    if calls:
        LOGGER.info("fallback_extracted", extra={"strategy": "invoke", "count": len(calls)})
        return calls

    if APPLY_PATCH not in known:
        return []

    strategies: tuple[tuple[str, Callable[[str], Any]], ...] = (
        ("heredoc", extract_heredoc_patch),
        ("unified_diff", extract_unified_diff),
        ("json_payload", extract_json_payload),
    )
    for strategy, extract in strategies:
        found = extract(text)
        if found is None:
            continue
        patch_text = found if isinstance(found, str) else patch_engine.normalize_patch_input(found)
        LOGGER.info("fallback_extracted", extra={"strategy": strategy, "count": 1})
        return [ToolCall(id=new_id(), name=APPLY_PATCH, input={"patch": patch_text})]
    return []


# ---------------------------------------------------------------------------
# File-creation repair
# ---------------------------------------------------------------------------


def infer_filename(user_message: str, response: str) -> Optional[str]:
    for source in (response, user_message):
        match = _BACKTICKED_FILENAME.search(source or "")
        if match:
            return match.group(1)
    for source in (user_message, response):
        match = _FILENAME.search(source or "")
        if match:
            return match.group(1)
    return None


def synthesize_creation_patch(user_message: str, response: str) -> Optional[str]:
    """
    Build a /dev/null → file diff from the first fenced code block in the
    response and a filename taken from either message. Returns None if
    either piece is missing.
    """
    filename = infer_filename(user_message, response)
    blocks = [body for lang, body in _FENCED_BLOCK.findall(response or "") if lang not in ("diff", "patch")]
    if not filename or not blocks:
        return None

    content = blocks[0].rstrip("\n").splitlines()
    header = f"--- /dev/null\n+++ {filename}\n@@ -0,0 +{1 if content else 0},{len(content)} @@\n"
    return header + "".join(f"+{line}\n" for line in content)
