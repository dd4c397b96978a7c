import json
import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from openai import OpenAIError
from tool_orchestrator.errors import ModelCallFailed, NoActiveModel
from tool_orchestrator.llm import (
    OpenAIModelClient,
    ProviderRegistry,
    to_openai_messages,
)
from tool_orchestrator.models import (
    ChatRequest,
    TextDeltaEvent,
    ToolUseEndEvent,
    ToolUseStartEvent,
)


def _client_with(create) -> OpenAIModelClient:
    sdk = MagicMock()
    sdk.chat.completions.create = create
    return OpenAIModelClient(model="test-model", client=sdk)


def _chunk(content=None, tool_calls=None):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content, tool_calls=tool_calls))])


def _tool_delta(index, id_=None, name=None, arguments=None):
    return SimpleNamespace(index=index, id=id_, function=SimpleNamespace(name=name, arguments=arguments))

# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------

def test_registry_resolves_builtin_and_aliases():
    registry = ProviderRegistry()
    assert registry.resolve("openrouter").base_url == "https://openrouter.ai/api/v1"
    assert registry.resolve("OpenRouter").id == "openrouter"
    assert registry.resolve("openai-compatible").id == "openai_compatible"
    assert registry.resolve("openrouter-proxy").id == "openrouter"

def test_registry_unknown_provider():
    with pytest.raises(NoActiveModel, match="Unknown provider"):
        ProviderRegistry().resolve("carrier-pigeon")

def test_registry_is_read_only():
    registry = ProviderRegistry()
    with pytest.raises(TypeError):
        registry._providers["new"] = None

# ---------------------------------------------------------------------------
# Message conversion
# ---------------------------------------------------------------------------

def test_assistant_tool_calls_become_functions():
    messages = [
        {"role": "assistant", "content": "", "tool_calls": [{"id": "c1", "name": "read_file", "input": {"path": "a"}}]}
    ]
    out = to_openai_messages(messages)
    assert out[0]["content"] is None
    assert out[0]["tool_calls"][0]["function"]["name"] == "read_file"
    assert json.loads(out[0]["tool_calls"][0]["function"]["arguments"]) == {"path": "a"}

def test_tool_message_expands_per_call():
    message = {
        "role": "tool",
        "content": "Tool execution completed: summary",
        "tool_results": [
            {"tool_call_id": "c1", "name": "read_file", "content": "A", "is_error": False},
            {"tool_call_id": "c2", "name": "read_file", "content": "B", "is_error": False},
        ],
    }
    out = to_openai_messages([message])
    assert [m["tool_call_id"] for m in out] == ["c1", "c2"]
    assert out[0]["content"] == "A"
    assert out[1]["content"] == "Tool execution completed: summary"

def test_plain_messages_drop_internal_keys():
    out = to_openai_messages([{"role": "user", "content": "hi", "synthetic": True}])
    assert out == [{"role": "user", "content": "hi"}]

# ---------------------------------------------------------------------------
# Client construction
# ---------------------------------------------------------------------------

def test_empty_model_is_rejected():
    with pytest.raises(NoActiveModel):
        OpenAIModelClient(model="")

def test_from_provider_requires_key(monkeypatch):
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    with pytest.raises(NoActiveModel, match="OPENROUTER_API_KEY"):
        OpenAIModelClient.from_provider(ProviderRegistry().resolve("openrouter"))

def test_from_provider_uses_env_key_and_default_model(monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEY", "sk-test")
    client = OpenAIModelClient.from_provider(ProviderRegistry().resolve("openrouter"))
    assert client.model == "anthropic/claude-3.5-haiku"

def test_from_provider_without_base_url():
    spec = ProviderRegistry().resolve("openai_compatible")
    with pytest.raises(NoActiveModel, match="base URL"):
        OpenAIModelClient.from_provider(spec, model="m", api_key="k")

# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_chat_parses_tool_calls():
    message = SimpleNamespace(
        content=" hi ",
        tool_calls=[SimpleNamespace(id="c1", function=SimpleNamespace(name="read_file", arguments='{"path": "a"}'))],
    )
    create = AsyncMock(return_value=SimpleNamespace(choices=[SimpleNamespace(message=message)]))
    client = _client_with(create)

    response = await client.chat(ChatRequest(messages=[{"role": "user", "content": "x"}]))

    assert response.content == "hi"
    assert response.tool_calls[0].input == {"path": "a"}
    assert "tools" not in create.call_args.kwargs

@pytest.mark.asyncio
async def test_chat_sdk_error_becomes_model_call_failed():
    client = _client_with(AsyncMock(side_effect=OpenAIError("rate limited")))
    with pytest.raises(ModelCallFailed, match="rate limited"):
        await client.chat(ChatRequest(messages=[]))

@pytest.mark.asyncio
async def test_chat_stream_accumulates_tool_call_deltas():
    async def chunks():
        yield _chunk(content="Hel")
        yield _chunk(content="lo")
        yield _chunk(tool_calls=[_tool_delta(0, "c1", "read_file", '{"pa')])
        yield _chunk(tool_calls=[_tool_delta(0, None, None, 'th": "a"}')])

    client = _client_with(AsyncMock(return_value=chunks()))
    request = ChatRequest(messages=[], tools=[{"type": "function", "function": {"name": "read_file"}}])

    events = [event async for event in client.chat_stream(request)]

    assert [type(e) for e in events] == [TextDeltaEvent, TextDeltaEvent, ToolUseStartEvent, ToolUseEndEvent]
    assert events[2].tool_call.name == "read_file"
    assert events[3].tool_call.id == "c1"
    assert events[3].tool_call.input == {"path": "a"}

@pytest.mark.asyncio
async def test_malformed_arguments_are_kept_raw():
    async def chunks():
        yield _chunk(tool_calls=[_tool_delta(0, "c1", "read_file", "{not json")])

    client = _client_with(AsyncMock(return_value=chunks()))
    events = [event async for event in client.chat_stream(ChatRequest(messages=[]))]

    assert events[-1].tool_call.input == {"_raw_arguments": "{not json"}
