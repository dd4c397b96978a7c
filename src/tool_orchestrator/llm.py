# llm.py
# Model capability over the openai SDK, plus the provider registry.
#
# The orchestrator only sees ModelClient: chat() and chat_stream(). Any
# OpenAI-compatible endpoint works (OpenRouter by default).
#
# Conversation messages stay in a provider-neutral shape inside the loop:
#   {"role": "assistant", "content": str, "tool_calls": [{id, name, input}]}
#   {"role": "tool", "content": str, "tool_results": [{tool_call_id, name, content, is_error}]}
# to_openai_messages() expands them into the wire format right before a call.

import json
import logging
import os
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, AsyncIterator, Mapping, Optional, Protocol

from openai import AsyncOpenAI, OpenAIError

from tool_orchestrator.errors import ModelCallFailed, NoActiveModel
from tool_orchestrator.models import (
    ChatRequest,
    ChatResponse,
    StreamEvent,
    TextDeltaEvent,
    ToolCall,
    ToolUseEndEvent,
    ToolUseStartEvent,
)

LOGGER = logging.getLogger(__name__)


class ModelClient(Protocol):
    async def chat(self, request: ChatRequest) -> ChatResponse: ...

    def chat_stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]: ...


# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderSpec:
    id: str
    base_url: Optional[str]
    key_env: str
    default_model: str


BUILTIN_PROVIDERS: tuple[ProviderSpec, ...] = (
    ProviderSpec("openrouter", "https://openrouter.ai/api/v1", "OPENROUTER_API_KEY", "anthropic/claude-3.5-haiku"),
    ProviderSpec("openai", "https://api.openai.com/v1", "OPENAI_API_KEY", "gpt-4o-mini"),
    ProviderSpec("ollama", "http://localhost:11434/v1", "", "llama3.1"),
    ProviderSpec("openai_compatible", None, "OPENAI_COMPATIBLE_API_KEY", ""),
)

BUILTIN_ALIASES: Mapping[str, str] = {
    "openai-compatible": "openai_compatible",
    "openrouter-proxy": "openrouter",
}


class ProviderRegistry:
    """Immutable id → ProviderSpec lookup with legacy alias resolution."""

    def __init__(
        self,
        providers: tuple[ProviderSpec, ...] = BUILTIN_PROVIDERS,
        aliases: Mapping[str, str] = BUILTIN_ALIASES,
    ) -> None:
        self._providers = MappingProxyType({p.id: p for p in providers})
        self._aliases = MappingProxyType(dict(aliases))

    @property
    def ids(self) -> list[str]:
        return sorted(self._providers)

    def canonical(self, provider_id: str) -> str:
        key = (provider_id or "").strip().lower()
        return self._aliases.get(key, key)

    def resolve(self, provider_id: str) -> ProviderSpec:
        spec = self._providers.get(self.canonical(provider_id))
        if spec is None:
            raise NoActiveModel(
                f"Unknown provider '{provider_id}'. Supported: {', '.join(self.ids)}"
            )
        return spec


# ---------------------------------------------------------------------------
# Message conversion
# ---------------------------------------------------------------------------


def to_openai_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for message in messages:
        role = message.get("role")
        if role == "assistant" and message.get("tool_calls"):
            out.append(
                {
                    "role": "assistant",
                    "content": message.get("content") or None,
                    "tool_calls": [
                        {
                            "id": call["id"],
                            "type": "function",
                            "function": {
                                "name": call["name"],
                                "arguments": json.dumps(call.get("input") or {}, ensure_ascii=False),
                            },
                        }
                        for call in message["tool_calls"]
                    ],
                }
            )
        elif role == "tool" and message.get("tool_results"):
            results = message["tool_results"]
            for index, result in enumerate(results):
                content = result["content"]
                # the continuation instruction rides on the last result
                if index == len(results) - 1:
                    content = message["content"]
                out.append({"role": "tool", "tool_call_id": result["tool_call_id"], "content": content})
        else:
            out.append({"role": role, "content": message.get("content", "")})
    return out


def _parse_arguments(raw: str) -> dict[str, Any]:
    if not raw or not raw.strip():
        return {}
    try:
        value = json.loads(raw, strict=False)
    except json.JSONDecodeError:
        LOGGER.warning("tool_arguments_malformed", extra={"arguments": raw[:200]})
        return {"_raw_arguments": raw}
    return value if isinstance(value, dict) else {"value": value}


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class OpenAIModelClient:
    """ModelClient backed by AsyncOpenAI chat completions."""

    def __init__(
        self,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        if not model:
            raise NoActiveModel("No model configured.")
        self.model = model
        self._client = client or AsyncOpenAI(base_url=base_url, api_key=api_key or "not-set")

    @classmethod
    def from_provider(
        cls,
        spec: ProviderSpec,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> "OpenAIModelClient":
        key = api_key or (os.getenv(spec.key_env) if spec.key_env else None)
        if spec.key_env and not key:
            raise NoActiveModel(f"No API key for provider '{spec.id}'. Set {spec.key_env}.")
        url = base_url or spec.base_url
        if not url:
            raise NoActiveModel(f"Provider '{spec.id}' needs a base URL.")
        return cls(model=model or spec.default_model, api_key=key, base_url=url)

    def _params(self, request: ChatRequest) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(request.messages),
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        if request.tools:
            params["tools"] = request.tools
        return params

    async def chat(self, request: ChatRequest) -> ChatResponse:
        LOGGER.debug("model_call_prepared", extra={"model": self.model, "stream": False})
        try:
            response = await self._client.chat.completions.create(**self._params(request))
        except OpenAIError as exc:
            LOGGER.error("model_call_failed", extra={"model": self.model, "error": str(exc)})
            raise ModelCallFailed(f"Model call failed: {exc}") from exc

        if not response.choices:
            raise ModelCallFailed("Model returned no choices.")
        message = response.choices[0].message
        calls = [
            ToolCall(id=tc.id, name=tc.function.name, input=_parse_arguments(tc.function.arguments))
            for tc in (message.tool_calls or [])
        ]
        return ChatResponse(content=(message.content or "").strip(), tool_calls=calls)

    async def chat_stream(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        LOGGER.debug("model_call_prepared", extra={"model": self.model, "stream": True})
        pending: dict[int, dict[str, str]] = {}
        try:
            stream = await self._client.chat.completions.create(**self._params(request), stream=True)
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta.content:
                    yield TextDeltaEvent(text=delta.content)
                for tc in delta.tool_calls or []:
                    slot = pending.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    announced = bool(slot["name"])
                    if tc.id:
                        slot["id"] = tc.id
                    if tc.function and tc.function.name:
                        slot["name"] += tc.function.name
                    if tc.function and tc.function.arguments:
                        slot["arguments"] += tc.function.arguments
                    if not announced and slot["name"]:
                        yield ToolUseStartEvent(
                            tool_call=ToolCall(id=slot["id"] or f"call_{tc.index}", name=slot["name"])
                        )
        except OpenAIError as exc:
            LOGGER.error("model_call_failed", extra={"model": self.model, "error": str(exc)})
            raise ModelCallFailed(f"Model call failed: {exc}") from exc

        for index in sorted(pending):
            slot = pending[index]
            yield ToolUseEndEvent(
                tool_call=ToolCall(
                    id=slot["id"] or f"call_{index}",
                    name=slot["name"],
                    input=_parse_arguments(slot["arguments"]),
                )
            )
