"""网关的 Python 客户端。

与浏览器端的行为保持一致：

1. 先请求 /chat/stream，边收边回调 on_delta；
2. 整个请求受 12 秒客户端上限约束（与服务端 10 秒截止时间相互独立）；
3. 一个字都没收到（且不是用户主动停止）时，回退到 /chat 拿整段回复；
4. 用户设置 stop_event 时立即结束，返回 "(stopped)" 状态，而不是错误。
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from chat_gateway.domain.exceptions import ClientAbort, UpstreamError

STOPPED_TEXT = "(stopped)"


@dataclass
class ClientReply:
    content: str
    streamed: bool
    stopped: bool = False
    error: Optional[str] = None
    latency_ms: int = 0


def _error_text(resp: httpx.Response, body: str) -> str:
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    text = body.strip()
    if text.startswith("Error:"):
        text = text[len("Error:"):].strip()
    return text or f"HTTP {resp.status_code}"


class GatewayClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8787",
        ceiling_s: float = 12.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._ceiling_s = ceiling_s
        self._transport = transport

    async def send(
        self,
        messages: List[Dict[str, str]],
        system: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        conversation_id: Optional[str] = None,
        on_delta: Optional[Callable[[str], Any]] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> ClientReply:
        body: Dict[str, Any] = {"messages": messages}
        for key, value in (
            ("system", system),
            ("model", model),
            ("temperature", temperature),
            ("conversation_id", conversation_id),
        ):
            if value is not None:
                body[key] = value

        started = time.monotonic()
        parts: List[str] = []
        async with httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._ceiling_s,
            transport=self._transport,
        ) as client:
            try:
                await self._guarded(self._stream(client, body, parts, on_delta), stop_event, self._ceiling_s)
            except ClientAbort:
                return ClientReply(STOPPED_TEXT, streamed=bool(parts), stopped=True, latency_ms=_ms(started))
            except asyncio.TimeoutError:
                return ClientReply(
                    "".join(parts),
                    streamed=bool(parts),
                    error="Client timeout",
                    latency_ms=_ms(started),
                )
            except (UpstreamError, httpx.HTTPError) as exc:
                if parts:
                    return ClientReply("".join(parts), streamed=True, error=str(exc), latency_ms=_ms(started))
            else:
                return ClientReply("".join(parts), streamed=True, latency_ms=_ms(started))

            # 流式一个字都没拿到：回退到整段接口，共用同一个 12 秒上限
            remaining = self._ceiling_s - (time.monotonic() - started)
            if remaining <= 0:
                return ClientReply("", streamed=False, error="Client timeout", latency_ms=_ms(started))
            try:
                reply = await self._guarded(self._complete(client, body), stop_event, remaining)
            except ClientAbort:
                return ClientReply(STOPPED_TEXT, streamed=False, stopped=True, latency_ms=_ms(started))
            except asyncio.TimeoutError:
                return ClientReply("", streamed=False, error="Client timeout", latency_ms=_ms(started))
            except (UpstreamError, httpx.HTTPError) as exc:
                return ClientReply("", streamed=False, error=str(exc), latency_ms=_ms(started))
            if on_delta is not None:
                on_delta(reply)
            return ClientReply(reply, streamed=False, latency_ms=_ms(started))

    async def _guarded(self, operation, stop_event: Optional[asyncio.Event], timeout: float):
        """在超时与用户停止之间竞速执行 operation。"""

        task = asyncio.ensure_future(operation)
        waiters = {task}
        stopper = None
        if stop_event is not None:
            stopper = asyncio.ensure_future(stop_event.wait())
            waiters.add(stopper)
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if stopper is not None and not stopper.done():
                stopper.cancel()
        if task in done:
            return task.result()
        task.cancel()
        try:
            await task
        except (asyncio.CancelledError, UpstreamError, httpx.HTTPError):
            pass
        if stopper is not None and stopper in done:
            raise ClientAbort()
        raise asyncio.TimeoutError()

    async def _stream(self, client: httpx.AsyncClient, body, parts: List[str], on_delta) -> None:
        async with client.stream("POST", "/chat/stream", json=body) as resp:
            if resp.status_code >= 400:
                raw = (await resp.aread()).decode("utf-8", "replace")
                raise UpstreamError(_error_text(resp, raw), status=resp.status_code)
            async for chunk in resp.aiter_text():
                if not chunk:
                    continue
                parts.append(chunk)
                if on_delta is not None:
                    on_delta(chunk)

    async def _complete(self, client: httpx.AsyncClient, body) -> str:
        resp = await client.post("/chat", json=body)
        if resp.status_code >= 400:
            raise UpstreamError(_error_text(resp, resp.text), status=resp.status_code)
        return (resp.json() or {}).get("reply") or ""


def _ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
