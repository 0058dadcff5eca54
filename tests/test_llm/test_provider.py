import json

import httpx
import pytest

from chatloop.exceptions import AuthenticationError, RateLimitError, RateLimitOrNetworkError
from chatloop.llm import (
    AnthropicProvider,
    Message,
    ToolDefinition,
    create_provider,
    split_system_messages,
)


def _sse(*events: dict) -> bytes:
    chunks = [": keep-alive\n\n"]
    for event in events:
        chunks.append(f"event: {event['type']}\ndata: {json.dumps(event)}\n\n")
    return "".join(chunks).encode("utf-8")


def _provider(handler, **kwargs) -> AnthropicProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AnthropicProvider(api_key="sk-ant-test", client=client, **kwargs)


def test_create_provider_supports_claude_alias():
    provider = create_provider(provider="claude", model="claude-3-haiku-20240307", api_key="k")

    assert isinstance(provider, AnthropicProvider)
    assert provider.max_tokens == 4096
    assert provider.base_url == "https://api.anthropic.com"


def test_create_provider_normalizes_bare_host_and_uses_env_key(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "env-key")

    provider = create_provider(base_url="proxy.example.com/")

    assert provider.base_url == "https://proxy.example.com"
    assert provider.api_key == "env-key"


def test_create_provider_rejects_unsupported_provider():
    with pytest.raises(ValueError):
        create_provider(provider="cohere", model="command-r")


def test_split_system_messages_merges_into_system_prompt():
    system, rest = split_system_messages(
        [Message(role="system", content="Answer in French."), Message(role="user", content="hi")],
        system="You are helpful.",
    )

    assert system == "You are helpful.\n\nAnswer in French."
    assert rest == [Message(role="user", content="hi")]


@pytest.mark.asyncio
async def test_stream_events_sends_request_and_decodes_sse():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=_sse(
                {"type": "message_start", "message": {"usage": {"input_tokens": 3}}},
                {"type": "ping"},
                {"type": "message_stop"},
            ),
        )

    provider = _provider(handler, model="claude-3-5-haiku-latest", temperature=0.2)
    tool = ToolDefinition(name="search", description="Search", parameters={"type": "object"})

    events = [
        event
        async for event in provider.stream_events(
            [Message(role="system", content="Sys"), Message(role="user", content="hello")],
            system="Base",
            tools=[tool],
        )
    ]

    assert [e["type"] for e in events] == ["message_start", "ping", "message_stop"]
    assert seen["url"] == "https://api.anthropic.com/v1/messages"
    assert seen["headers"]["x-api-key"] == "sk-ant-test"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    body = seen["body"]
    assert body["stream"] is True
    assert body["system"] == "Base\n\nSys"
    assert body["messages"] == [{"role": "user", "content": "hello"}]
    assert body["temperature"] == 0.2
    assert body["max_tokens"] == 4096
    assert body["tools"] == [{"name": "search", "description": "Search", "input_schema": {"type": "object"}}]
    await provider.close()


@pytest.mark.asyncio
async def test_stream_events_omits_tools_when_disabled():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, content=_sse({"type": "message_stop"}))

    provider = _provider(handler)

    [event async for event in provider.stream_events([Message(role="user", content="hi")], tools=[])]

    assert "tools" not in seen["body"]
    assert "system" not in seen["body"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "error_type", "expected"),
    [
        (401, "authentication_error", AuthenticationError),
        (429, "rate_limit_error", RateLimitError),
        (529, "overloaded_error", RateLimitError),
        (500, "api_error", RateLimitOrNetworkError),
    ],
)
async def test_stream_events_classifies_http_errors(status, error_type, expected):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"type": "error", "error": {"type": error_type, "message": "nope"}})

    provider = _provider(handler)

    with pytest.raises(expected) as exc_info:
        [event async for event in provider.stream_events([Message(role="user", content="hi")])]

    assert "nope" in str(exc_info.value)


@pytest.mark.asyncio
async def test_stream_events_wraps_transport_failures():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = _provider(handler)

    with pytest.raises(RateLimitOrNetworkError) as exc_info:
        [event async for event in provider.stream_events([Message(role="user", content="hi")])]

    assert not isinstance(exc_info.value, RateLimitError)


@pytest.mark.asyncio
async def test_stream_events_requires_api_key(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    provider = AnthropicProvider(client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))))

    with pytest.raises(AuthenticationError):
        [event async for event in provider.stream_events([Message(role="user", content="hi")])]
