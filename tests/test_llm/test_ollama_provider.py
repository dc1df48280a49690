import json

import httpx
import pytest

from colloquy.exceptions import (
    AuthenticationError,
    InvalidRequestError,
    NetworkError,
    ProviderError,
    RateLimitError,
    TransientProviderError,
)
from colloquy.llm import Message, MessageRole, ToolCall
from colloquy.llm.ollama import OllamaProvider, parse_retry_after


def _provider(handler, **kwargs) -> OllamaProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OllamaProvider(
        model="llama3.2",
        base_url="http://ollama.test",
        max_context_tokens=8192,
        client=client,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_complete_posts_chat_request_and_parses_usage():
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "model": "llama3.2",
                "message": {"role": "assistant", "content": "Hi there!"},
                "done_reason": "stop",
                "prompt_eval_count": 21,
                "eval_count": 4,
            },
        )

    provider = _provider(handler)
    reply = await provider.complete(
        [Message.system("Be brief."), Message.user("Hello")],
        max_tokens=256,
    )

    assert captured["url"] == "http://ollama.test/api/chat"
    assert captured["body"]["stream"] is False
    assert captured["body"]["options"]["num_ctx"] == 8192
    assert captured["body"]["options"]["num_predict"] == 256
    assert captured["body"]["messages"][0] == {"role": "system", "content": "Be brief."}
    assert "tools" not in captured["body"]

    assert reply.role == MessageRole.ASSISTANT
    assert reply.content == "Hi there!"
    assert reply.metadata["input_tokens"] == 21
    assert reply.metadata["output_tokens"] == 4
    assert reply.metadata["stop_reason"] == "stop"
    assert reply.has_tool_calls is False
    await provider.close()


@pytest.mark.asyncio
async def test_complete_sends_tools_and_parses_tool_calls():
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "message": {
                    "role": "assistant",
                    "content": "",
                    "tool_calls": [
                        {"function": {"name": "get_weather", "arguments": {"city": "Paris"}}},
                        {"function": {"name": "lookup", "arguments": '{"q": "tides"}'}},
                    ],
                },
            },
        )

    provider = _provider(handler)
    reply = await provider.complete(
        [Message.user("Weather in Paris?")],
        tools=[{"name": "get_weather", "description": "Weather", "parameters": {"type": "object"}}],
    )

    assert captured["body"]["tools"] == [
        {
            "type": "function",
            "function": {"name": "get_weather", "description": "Weather", "parameters": {"type": "object"}},
        }
    ]
    calls = reply.tool_calls
    assert [tc.name for tc in calls] == ["get_weather", "lookup"]
    assert calls[0].id.startswith("ollama_call_")
    assert calls[0].id != calls[1].id
    assert calls[0].arguments == {"city": "Paris"}
    assert calls[1].arguments == {"q": "tides"}
    await provider.close()


@pytest.mark.asyncio
async def test_assistant_tool_requests_are_echoed_back():
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"message": {"role": "assistant", "content": "done"}})

    provider = _provider(handler)
    request = Message.assistant(
        "",
        metadata={"tool_calls": [ToolCall(id="c1", name="get_weather", arguments={"city": "Oslo"})]},
    )
    await provider.complete([Message.user("Weather?"), request])

    assert captured["body"]["messages"][1]["tool_calls"] == [
        {"function": {"name": "get_weather", "arguments": {"city": "Oslo"}}}
    ]
    await provider.close()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "error_type"),
    [
        (400, InvalidRequestError),
        (401, AuthenticationError),
        (403, AuthenticationError),
        (404, InvalidRequestError),
        (408, TransientProviderError),
        (429, RateLimitError),
        (500, TransientProviderError),
        (503, TransientProviderError),
        (418, ProviderError),
    ],
)
async def test_error_status_maps_to_provider_error(status: int, error_type: type):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, text="nope")

    provider = _provider(handler)
    with pytest.raises(error_type) as exc_info:
        await provider.complete([Message.user("Hello")])

    assert exc_info.value.status_code == status
    await provider.close()


@pytest.mark.asyncio
async def test_rate_limit_carries_retry_after_header():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"Retry-After": "7"}, text="slow down")

    provider = _provider(handler)
    with pytest.raises(RateLimitError) as exc_info:
        await provider.complete([Message.user("Hello")])

    assert exc_info.value.retry_after == 7.0
    await provider.close()


@pytest.mark.asyncio
async def test_transport_failure_becomes_network_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = _provider(handler)
    with pytest.raises(NetworkError):
        await provider.complete([Message.user("Hello")])
    await provider.close()


@pytest.mark.asyncio
async def test_undecodable_body_is_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"not json")

    provider = _provider(handler)
    with pytest.raises(ProviderError):
        await provider.complete([Message.user("Hello")])
    await provider.close()


@pytest.mark.asyncio
async def test_estimate_tokens_sums_message_content():
    provider = _provider(lambda request: httpx.Response(200, json={}))

    estimate = await provider.estimate_tokens([Message.user("a" * 40), Message.assistant("b" * 8)])

    assert estimate == 12
    assert provider.capabilities().max_context_tokens == 8192
    assert provider.capabilities().supports_tools is True
    assert provider.capabilities().supports_streaming is False
    await provider.close()


def test_parse_retry_after_accepts_seconds_and_rejects_garbage():
    assert parse_retry_after("12") == 12.0
    assert parse_retry_after(" 0.5 ") == 0.5
    assert parse_retry_after(None) is None
    assert parse_retry_after("soon") is None


def test_parse_retry_after_accepts_past_http_date():
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0


@pytest.mark.asyncio
async def test_tool_call_ids_stay_unique_across_responses():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "message": {
                    "role": "assistant",
                    "content": "",
                    "tool_calls": [{"function": {"name": "get_weather", "arguments": {}}}],
                },
            },
        )

    provider = _provider(handler)
    first = await provider.complete([Message.user("Weather?")])
    second = await provider.complete([Message.user("And now?")])

    assert first.tool_calls[0].id != second.tool_calls[0].id
    await provider.close()


@pytest.mark.asyncio
async def test_tool_call_id_from_server_is_kept():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "message": {
                    "role": "assistant",
                    "content": "",
                    "tool_calls": [{"id": "abc", "function": {"name": "get_weather", "arguments": {}}}],
                },
            },
        )

    provider = _provider(handler)
    reply = await provider.complete([Message.user("Weather?")])

    assert reply.tool_calls[0].id == "ollama_call_abc"
    await provider.close()


@pytest.mark.asyncio
async def test_close_leaves_caller_owned_client_open():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})))
    provider = OllamaProvider(base_url="http://ollama.test", client=client)

    await provider.close()

    assert client.is_closed is False
    await client.aclose()


@pytest.mark.asyncio
async def test_close_closes_client_created_by_provider():
    provider = OllamaProvider(base_url="http://ollama.test")

    await provider.close()

    assert provider.client.is_closed is True
