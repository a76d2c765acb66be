import asyncio

from chat_gateway.domain.models import ChatRequest, Message
from chat_gateway.providers.openai_compat_client import OpenAICompatClient


class SettingsStub:
    openai_api_key = "o-key"
    openai_base_url = "https://llm.test/v1/"
    http_timeout = 1.0


def make_request():
    return ChatRequest(
        messages=(Message(role="user", content="hi"), Message(role="assistant", content="yo"), Message(role="user", content="?")),
        model="gpt-4o-mini",
        system="sys",
        temperature=0.5,
        max_output_tokens=32,
    )


def test_openai_compat_basic(monkeypatch):
    captured = {}

    class Resp:
        status_code = 200
        text = ""

        def json(self):
            return {"choices": [{"index": 0, "message": {"role": "assistant", "content": "ok"}, "finish_reason": "stop"}]}

    class Client:
        def __init__(self, *a, **kw):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        async def post(self, url, json=None, headers=None):
            captured.update(url=url, json=json, headers=headers)
            return Resp()

    monkeypatch.setattr("httpx.AsyncClient", Client)
    assert asyncio.run(OpenAICompatClient(SettingsStub()).complete_once(make_request())) == "ok"
    assert captured["url"] == "https://llm.test/v1/chat/completions"
    assert captured["headers"]["Authorization"] == "Bearer o-key"
    body = captured["json"]
    assert [m["role"] for m in body["messages"]] == ["system", "user", "assistant", "user"]
    assert body["max_tokens"] == 32
    assert body["stream"] is False


def test_openai_compat_stream(monkeypatch):
    stream_lines = [
        'data: {"choices": [{"index": 0, "delta": {"content": "a"}}]}',
        "",
        'data: {"choices": [{"index": 0, "delta": {"content": "b"}, "finish_reason": "stop"}]}',
        "data: [DONE]",
    ]

    class FakeResponse:
        status_code = 200

        async def aiter_lines(self):
            for line in stream_lines:
                yield line

    class StreamContext:
        async def __aenter__(self):
            return FakeResponse()

        async def __aexit__(self, *args):
            return False

    class Client:
        def __init__(self, *a, **kw):
            pass

        async def __aenter__(self):
            return self

        async def __aexit__(self, *a):
            return False

        def stream(self, method, url, json=None, headers=None):
            assert json["stream"] is True
            return StreamContext()

    monkeypatch.setattr("httpx.AsyncClient", Client)

    async def drain():
        return [d async for d in OpenAICompatClient(SettingsStub()).complete_streaming(make_request())]

    assert asyncio.run(drain()) == ["a", "b"]
