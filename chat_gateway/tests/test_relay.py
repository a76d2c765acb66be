import asyncio

from chat_gateway.domain.exceptions import NetworkError
from chat_gateway.domain.models import RelayState
from chat_gateway.gateway.relay import TERMINAL_ERROR_PREFIX, StreamRelay
from chat_gateway.tests.fakes import FakeProvider, collect


def opener_for(provider):
    async def open_stream():
        it = provider.complete_streaming(None).__aiter__()
        try:
            return await it.__anext__(), it
        except StopAsyncIteration:
            return None, it

    return open_stream


def test_relay_completes_in_order():
    provider = FakeProvider(stream_scripts=[["a", "b", "c"]])
    relay = StreamRelay(opener_for(provider))
    out = collect(relay.run())
    assert out == ["a", "b", "c"]
    assert relay.session.state == RelayState.COMPLETED
    assert relay.session.text == "abc"
    assert relay.session.forwarded == 3
    assert not relay.session.keepalive_sent


def test_relay_empty_stream_completes():
    provider = FakeProvider(stream_scripts=[[]])
    relay = StreamRelay(opener_for(provider))
    assert collect(relay.run()) == []
    assert relay.session.state == RelayState.COMPLETED


def test_keepalive_written_once_before_content():
    provider = FakeProvider(stream_scripts=[[0.2, "late", "r"]])
    relay = StreamRelay(opener_for(provider), stall_ms=30, keepalive="...")
    out = collect(relay.run())
    assert out == ["...", "late", "r"]
    assert out.count("...") == 1
    # 保活标记不计入正文
    assert relay.session.text == "later"
    assert relay.session.keepalive_sent


def test_keepalive_before_failure_still_fallback_eligible():
    provider = FakeProvider(stream_scripts=[[0.1, NetworkError("connection reset")]])
    relay = StreamRelay(opener_for(provider), stall_ms=20)
    out = collect(relay.run())
    assert out == ["..."]
    assert relay.session.state == RelayState.FAILED
    assert relay.session.fallback_eligible


def test_failure_before_any_delta_is_fallback_eligible():
    provider = FakeProvider(stream_scripts=[[NetworkError("boom")]])
    relay = StreamRelay(opener_for(provider))
    out = collect(relay.run())
    assert out == []
    assert relay.session.state == RelayState.FAILED
    assert relay.session.fallback_eligible
    assert isinstance(relay.session.error, NetworkError)


def test_failure_after_delta_writes_terminal_error():
    provider = FakeProvider(stream_scripts=[["part", "ial", NetworkError("stream broke")]])
    relay = StreamRelay(opener_for(provider))
    out = collect(relay.run())
    assert out[:2] == ["part", "ial"]
    assert out[2] == TERMINAL_ERROR_PREFIX + "stream broke"
    assert relay.session.state == RelayState.FAILED
    assert not relay.session.fallback_eligible
    assert relay.session.text == "partial"


def test_client_disconnect_after_two_deltas_aborts_quietly():
    provider = FakeProvider(stream_scripts=[["one", "two", "three", "four"]])
    received = []

    async def is_disconnected():
        return len(received) >= 2

    relay = StreamRelay(opener_for(provider), is_disconnected=is_disconnected)

    async def consume():
        async for part in relay.run():
            received.append(part)

    asyncio.run(consume())
    assert received == ["one", "two"]
    assert relay.session.state == RelayState.ABORTED
    assert relay.session.client_closed
    assert not relay.session.fallback_eligible
    # 上游迭代器被关闭
    assert provider.closed == 1
