import logging

from fastapi.testclient import TestClient

from chat_gateway.api.app import create_app
from chat_gateway.config.settings import Settings
from chat_gateway.domain.exceptions import RateLimitError, UpstreamError
from chat_gateway.gateway.errors import RATE_LIMIT_MESSAGE
from chat_gateway.gateway.rate_limit import RATE_LIMITED_MESSAGE
from chat_gateway.gateway.retry import RetryPolicy
from chat_gateway.infrastructure.logging.logger import logger
from chat_gateway.infrastructure.storage.json_store import JsonConversationStore
from chat_gateway.tests.fakes import FakeProvider


async def _no_sleep(_seconds):
    return None


def make_settings(**kw):
    fields = dict(gemini_api_key="test-key-123456", log_to_file=False, app_env="development")
    fields.update(kw)
    return Settings(_env_file=None, **fields)


def make_client(provider=None, store=None, **settings_kw):
    app = create_app(
        cfg=make_settings(**settings_kw),
        provider=provider or FakeProvider(),
        store=store,
        policy=RetryPolicy(deadline_ms=2_000, retry_deadline_ms=2_000, sleep=_no_sleep),
    )
    return TestClient(app)


HELLO = {"messages": [{"role": "user", "content": "hi"}]}


def test_chat_returns_reply():
    client = make_client(FakeProvider(once_results=["Hello there"]))
    resp = client.post("/chat", json=HELLO)
    assert resp.status_code == 200
    assert resp.json() == {"reply": "Hello there"}


def test_chat_rejects_empty_and_malformed_bodies():
    provider = FakeProvider()
    client = make_client(provider)
    resp = client.post("/chat", json={"messages": []})
    assert resp.status_code == 400
    assert "error" in resp.json()
    resp = client.post("/chat", json={"messages": [{"role": "robot", "content": "x"}]})
    assert resp.status_code == 400
    assert provider.once_calls == 0


def test_chat_rate_limited_upstream_maps_to_429():
    provider = FakeProvider(once_results=[RateLimitError("429 quota"), RateLimitError("429 quota")])
    resp = make_client(provider).post("/chat", json=HELLO)
    assert resp.status_code == 429
    assert resp.json() == {"error": RATE_LIMIT_MESSAGE}
    assert provider.once_calls == 2


def test_stream_returns_plain_text_chunks():
    client = make_client(FakeProvider(stream_scripts=[["Hel", "lo"]]))
    resp = client.post("/chat/stream", json=HELLO)
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert resp.text == "Hello"


def test_stream_falls_back_to_whole_reply():
    provider = FakeProvider(stream_scripts=[[UpstreamError("stream broke", status=500)]], once_results=["whole"])
    resp = make_client(provider).post("/chat/stream", json=HELLO)
    assert resp.status_code == 200
    assert resp.text == "whole"


def test_stream_error_before_body_uses_status_code():
    provider = FakeProvider(
        stream_scripts=[[UpstreamError("API key not valid", status=400)]],
        once_results=[UpstreamError("API key not valid", status=400)],
    )
    resp = make_client(provider).post("/chat/stream", json=HELLO)
    assert resp.status_code == 502
    assert resp.text == "Error: API key not valid"


def test_stream_error_after_partial_output_appends_terminal_fragment():
    provider = FakeProvider(stream_scripts=[["par", "tial", UpstreamError("connection dropped", status=500)]])
    resp = make_client(provider).post("/chat/stream", json=HELLO)
    assert resp.status_code == 200
    assert resp.text == "partial\n\nError: connection dropped"
    assert provider.once_calls == 0


def test_health_reports_configuration():
    data = make_client().get("/health").json()
    assert data["ok"] is True
    assert data["hasKey"] is True
    assert data["hasConversationStore"] is False
    assert data["prod"] is False
    assert data["provider"] == "fake"
    assert data["keyPreview"] == "test...3456"


def test_diag_probe():
    resp = make_client(FakeProvider(once_results=["p"])).get("/diag")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True
    assert resp.json()["content"] == "p"

    failing = FakeProvider(once_results=[UpstreamError("nope", status=400)])
    resp = make_client(failing).get("/diag")
    assert resp.status_code == 502
    assert resp.json()["ok"] is False

    resp = make_client(gemini_api_key=None).get("/diag")
    assert resp.status_code == 500


def test_conversation_routes_without_store_return_501():
    client = make_client()
    assert client.get("/conversations").status_code == 501
    assert client.post("/conversations", json={}).status_code == 501


def test_conversation_routes_with_json_store(tmp_path):
    store = JsonConversationStore(root=tmp_path)
    client = make_client(FakeProvider(once_results=["hello"]), store=store)

    cid = client.post("/conversations", json={"title": "Chat"}).json()["id"]
    resp = client.post(
        f"/conversations/{cid}/messages",
        json={"messages": [{"role": "user", "content": "first"}, {"role": "tool", "content": "skip"}, {"content": "x"}]},
    )
    assert resp.json() == {"ok": True, "inserted": 1}

    # 聊天完成后追加 user + assistant 两条
    assert client.post("/chat", json=dict(HELLO, conversation_id=cid)).status_code == 200
    msgs = client.get(f"/conversations/{cid}/messages").json()["messages"]
    assert [(m["role"], m["content"]) for m in msgs] == [
        ("user", "first"),
        ("user", "hi"),
        ("assistant", "hello"),
    ]

    assert client.patch(f"/conversations/{cid}", json={"title": "Renamed"}).json() == {"ok": True}
    assert client.patch(f"/conversations/{cid}", json={"title": "  "}).status_code == 400
    listed = client.get("/conversations").json()["conversations"]
    assert [(c["id"], c["title"]) for c in listed] == [(cid, "Renamed")]

    assert client.delete(f"/conversations/{cid}").json() == {"ok": True}
    assert client.get(f"/conversations/{cid}/messages").status_code == 404


def test_rate_limit_only_in_production():
    dev = make_client(FakeProvider(once_results=["a"] * 5))
    assert [dev.post("/chat", json=HELLO).status_code for _ in range(5)] == [200] * 5

    prod = make_client(FakeProvider(once_results=["a"] * 5), app_env="production")
    codes = [prod.post("/chat", json=HELLO).status_code for _ in range(4)]
    assert codes == [200, 200, 200, 429]
    assert prod.post("/chat", json=HELLO).json() == {"error": RATE_LIMITED_MESSAGE}


def test_api_prefix():
    client = make_client(FakeProvider(once_results=["x"]), api_prefix="api")
    assert client.post("/api/chat", json=HELLO).json() == {"reply": "x"}
    assert client.get("/chat").status_code == 404


def test_timing_log_covers_whole_stream():
    records = []

    class ListHandler(logging.Handler):
        def emit(self, record):
            records.append(record)

    handler = ListHandler()
    logger.addHandler(handler)
    try:
        resp = make_client(FakeProvider(stream_scripts=[["a", 0.2, "b"]])).post("/chat/stream", json=HELLO)
    finally:
        logger.removeHandler(handler)
    assert resp.text == "ab"
    timing = [r for r in records if r.getMessage().startswith("[POST] /chat/stream -> 200")]
    assert len(timing) == 1
    assert timing[0].extra["ms"] >= 200
