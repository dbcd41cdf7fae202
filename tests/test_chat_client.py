import json

import httpx
import pytest

from roleplay.chat_client import ChatClientError, ChatCompletionsClient
from roleplay.config import Settings
from roleplay.schemas.session import ChatMessage


def _sse(*chunks: object) -> bytes:
    lines = []
    for chunk in chunks:
        data = chunk if isinstance(chunk, str) else json.dumps(chunk)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode("utf-8")


def _delta(text: str) -> dict:
    return {"choices": [{"delta": {"content": text}}]}


def _client(handler) -> ChatCompletionsClient:
    settings = Settings(
        _env_file=None,
        openai_api_key="sk-test",
        chat_base_url="https://chat.example.com/v1/",
        chat_model="gpt-test",
    )
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ChatCompletionsClient(settings, http_client=http_client)


HISTORY = [
    ChatMessage(role="system", content="You are a buyer."),
    ChatMessage(role="user", content="Hello"),
]


@pytest.mark.asyncio
async def test_stream_yields_deltas_and_sends_history():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        body = _sse(
            _delta("Sure"),
            {"choices": [{"delta": {"role": "assistant"}}]},
            _delta("! Go ahead."),
            "[DONE]",
        )
        return httpx.Response(
            200, content=body, headers={"content-type": "text/event-stream"}
        )

    client = _client(handler)
    deltas = [delta async for delta in client.stream(HISTORY)]
    await client.aclose()

    assert deltas == ["Sure", "! Go ahead."]
    assert captured["url"] == "https://chat.example.com/v1/chat/completions"
    assert captured["auth"] == "Bearer sk-test"
    assert captured["body"]["model"] == "gpt-test"
    assert captured["body"]["stream"] is True
    assert captured["body"]["messages"] == [
        {"role": "system", "content": "You are a buyer."},
        {"role": "user", "content": "Hello"},
    ]


@pytest.mark.asyncio
async def test_stream_http_error_raises_with_detail():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "rate limited"}})

    client = _client(handler)
    with pytest.raises(ChatClientError) as exc_info:
        async for _ in client.stream(HISTORY):
            pass
    await client.aclose()

    assert exc_info.value.status_code == 429
    assert exc_info.value.detail == {"message": "rate limited"}


@pytest.mark.asyncio
async def test_stream_error_chunk_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        body = _sse(_delta("Hi"), {"error": {"message": "model overloaded"}})
        return httpx.Response(200, content=body)

    client = _client(handler)
    received = []
    with pytest.raises(ChatClientError) as exc_info:
        async for delta in client.stream(HISTORY):
            received.append(delta)
    await client.aclose()

    assert received == ["Hi"]
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_stream_transport_failure_is_wrapped():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _client(handler)
    with pytest.raises(ChatClientError) as exc_info:
        async for _ in client.stream(HISTORY):
            pass
    await client.aclose()

    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_complete_returns_message_text():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["body"] = json.loads(request.content)
        captured["accept"] = request.headers["Accept"]
        return httpx.Response(
            200,
            json={"choices": [{"message": {"role": "assistant", "content": "  Great pitch.  "}}]},
        )

    client = _client(handler)
    text = await client.complete(HISTORY)
    await client.aclose()

    assert text == "Great pitch."
    assert captured["body"]["stream"] is False
    assert captured["accept"] == "application/json"


@pytest.mark.asyncio
async def test_complete_without_content_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [{"message": {"content": ""}}]})

    client = _client(handler)
    with pytest.raises(ChatClientError, match="missing content"):
        await client.complete(HISTORY)
    await client.aclose()


@pytest.mark.asyncio
async def test_complete_error_status_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="internal error")

    client = _client(handler)
    with pytest.raises(ChatClientError) as exc_info:
        await client.complete(HISTORY)
    await client.aclose()

    assert exc_info.value.status_code == 500
    assert exc_info.value.detail == "internal error"


def test_parse_event_joins_data_lines():
    client = ChatCompletionsClient(Settings(_env_file=None))
    event = client._parse_event(["event: delta", "id: 7", "data: first", "data: second"])

    assert event.event == "delta"
    assert event.event_id == "7"
    assert event.data == "first\nsecond"
