"""流式转发（Stream Relay）。

驱动一次流式上游调用直到结束，同时把每个增量写给客户端连接。
需要处理三类风险：

1. 上游迟迟不出首字：stall_ms 内没有增量时写一次保活标记（不计入正文）。
2. 客户端断开：在每个检查点轮询 is_disconnected()，断开后不再写出，
   关闭上游迭代器并以 ABORTED 结束，不抛异常。
3. 部分失败：零增量时标记为可回退（fallback_eligible）；
   已写出增量时在响应体末尾追加终止错误片段。

状态机：IDLE → STREAMING → {COMPLETED | ABORTED | FAILED}
"""

import asyncio
from typing import AsyncIterator, Awaitable, Callable, Optional, Tuple

from chat_gateway.domain.models import RelayState, StreamSession
from chat_gateway.gateway.errors import map_error
from chat_gateway.infrastructure.logging.logger import logger

OpenStream = Callable[[], Awaitable[Tuple[Optional[str], AsyncIterator[str]]]]
IsDisconnected = Callable[[], Awaitable[bool]]

TERMINAL_ERROR_PREFIX = "\n\nError: "


async def _never_disconnected() -> bool:
    return False


async def close_iterator(iterator: Optional[AsyncIterator[str]]) -> None:
    """关闭上游异步迭代器（若支持 aclose），关闭失败只记日志。"""

    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as exc:
        logger.warning("relay.close_failed", extra={"extra": {"error": str(exc)}})


class StreamRelay:
    """一次流式响应的转发器。

    open_stream 由 Handler 提供（已包在 RetryPolicy 中），
    返回 (首个增量或 None, 剩余增量迭代器)。
    """

    def __init__(
        self,
        open_stream: OpenStream,
        is_disconnected: Optional[IsDisconnected] = None,
        stall_ms: int = 4_000,
        keepalive: str = "...",
        describe_error: Callable[[BaseException], str] = lambda exc: map_error(exc)[1],
    ):
        self._open_stream = open_stream
        self._is_disconnected = is_disconnected or _never_disconnected
        self._stall_ms = stall_ms
        self._keepalive = keepalive
        self._describe_error = describe_error
        self.session = StreamSession()

    async def run(self) -> AsyncIterator[str]:
        s = self.session
        s.state = RelayState.STREAMING
        opener = asyncio.ensure_future(self._open_stream())
        iterator: Optional[AsyncIterator[str]] = None
        try:
            try:
                done, _ = await asyncio.wait({opener}, timeout=self._stall_ms / 1000)
                if not done:
                    if await self._client_gone():
                        self._abort()
                        return
                    s.keepalive_sent = True
                    logger.info("relay.keepalive", extra={"extra": {"stall_ms": self._stall_ms}})
                    yield self._keepalive
                first, iterator = await opener
            except Exception as exc:
                self._fail(exc)
                return

            if first is not None:
                if await self._client_gone():
                    self._abort()
                    return
                s.parts.append(first)
                s.forwarded += 1
                yield first
                while True:
                    try:
                        delta = await iterator.__anext__()
                    except StopAsyncIteration:
                        break
                    except Exception as exc:
                        self._fail(exc)
                        if s.forwarded:
                            yield TERMINAL_ERROR_PREFIX + self._describe_error(exc)
                        return
                    if await self._client_gone():
                        self._abort()
                        return
                    s.parts.append(delta)
                    s.forwarded += 1
                    yield delta
            s.state = RelayState.COMPLETED
        except (asyncio.CancelledError, GeneratorExit):
            # ASGI 服务器取消了响应任务，或消费方提前关闭了生成器
            s.client_closed = True
            s.state = RelayState.ABORTED
            raise
        finally:
            if not opener.done():
                opener.cancel()
            if s.state != RelayState.COMPLETED:
                await close_iterator(iterator)

    async def _client_gone(self) -> bool:
        if self.session.client_closed:
            return True
        if await self._is_disconnected():
            self.session.client_closed = True
            return True
        return False

    def _abort(self) -> None:
        s = self.session
        s.state = RelayState.ABORTED
        logger.info("relay.client_closed", extra={"extra": {"forwarded": s.forwarded}})

    def _fail(self, exc: BaseException) -> None:
        s = self.session
        s.state = RelayState.FAILED
        s.error = exc
        s.fallback_eligible = s.forwarded == 0
        logger.warning(
            "relay.upstream_failed",
            extra={
                "extra": {
                    "error": str(exc),
                    "forwarded": s.forwarded,
                    "fallback_eligible": s.fallback_eligible,
                }
            },
        )
