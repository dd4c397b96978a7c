# config.py
# Environment-backed settings. Read once at startup, never written back.
#
# All variables use the TOOL_ORCHESTRATOR_ prefix. A .env file in the working
# directory is honoured via python-dotenv. Bad numeric or boolean values fall
# back to their defaults instead of failing at load.

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from tool_orchestrator.models import AgentLoopConfig

ENV_PREFIX = "TOOL_ORCHESTRATOR_"
DEFAULT_PROVIDER = "openrouter"

_LOOP_DEFAULTS = AgentLoopConfig()


def _to_bool(value: Optional[str], default: bool = False) -> bool:
    """Convert common env var truthy/falsy values into booleans."""
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _to_positive_int(value: object, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value > 0 else default
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return default
        return parsed if parsed > 0 else default
    return default


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _to_optional_string(value: object) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _to_command_list(value: Optional[str]) -> Optional[tuple[str, ...]]:
    """Comma separated denylist. Unset or blank means every command is gated."""
    entries = tuple(part.strip() for part in (value or "").split(",") if part.strip())
    return entries or None


@dataclass
class Settings:
    """Runtime settings loaded from environment variables."""

    provider: str = DEFAULT_PROVIDER
    model: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    workdir: str = field(default_factory=lambda: str(Path.cwd()))
    loop: AgentLoopConfig = field(default_factory=AgentLoopConfig)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, use_dotenv: bool = True) -> "Settings":
        if environ is None:
            if use_dotenv:
                load_dotenv()
            environ = os.environ

        def get(name: str) -> Optional[str]:
            return environ.get(ENV_PREFIX + name)

        loop = AgentLoopConfig(
            max_rounds=_to_positive_int(get("MAX_ROUNDS"), default=_LOOP_DEFAULTS.max_rounds),
            timeout_ms=_to_positive_int(get("TIMEOUT_MS"), default=_LOOP_DEFAULTS.timeout_ms),
            repeat_threshold=_to_positive_int(
                get("REPEAT_THRESHOLD"), default=_LOOP_DEFAULTS.repeat_threshold
            ),
            failure_threshold=_to_positive_int(
                get("FAILURE_THRESHOLD"), default=_LOOP_DEFAULTS.failure_threshold
            ),
            enable_planner=_to_bool(get("ENABLE_PLANNER"), default=_LOOP_DEFAULTS.enable_planner),
            enable_reviewer=_to_bool(get("ENABLE_REVIEWER"), default=_LOOP_DEFAULTS.enable_reviewer),
            stop_on_tool_success=_to_bool(
                get("STOP_ON_TOOL_SUCCESS"), default=_LOOP_DEFAULTS.stop_on_tool_success
            ),
            temperature=_to_float(get("TEMPERATURE"), default=_LOOP_DEFAULTS.temperature),
            max_tokens=_to_positive_int(get("MAX_TOKENS"), default=_LOOP_DEFAULTS.max_tokens),
            sensitive_commands=_to_command_list(get("SENSITIVE_COMMANDS")),
        )

        return cls(
            provider=_to_optional_string(get("PROVIDER")) or DEFAULT_PROVIDER,
            model=_to_optional_string(get("MODEL")),
            api_key=_to_optional_string(get("API_KEY")),
            base_url=_to_optional_string(get("BASE_URL")),
            workdir=_to_optional_string(get("WORKDIR")) or str(Path.cwd()),
            loop=loop,
        )
