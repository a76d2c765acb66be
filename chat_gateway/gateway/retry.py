"""超时与有限重试策略。

- first_of: 结构化的 "操作 vs 截止时间" 竞速；超时后请求协作式取消并分离失败的一方，
  由 done-callback 回收其结果，调用方不会再等待它。
- RetryPolicy: 第一次尝试受 deadline_ms 约束；仅当失败属于瞬时错误时，
  随机退避后再尝试恰好一次。任何逻辑请求最多两次上游尝试。
"""

import asyncio
import random
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar

from chat_gateway.domain.exceptions import (
    TransientUpstreamError,
    UpstreamTimeoutError,
    ValidationError,
)
from chat_gateway.infrastructure.logging.logger import logger

T = TypeVar("T")

TRANSIENT_PATTERN = re.compile(r"timeout|timed out|exhausted|quota|429|reset|temporar", re.IGNORECASE)


def is_transient(exc: BaseException) -> bool:
    """判断一次失败是否值得立即重试。"""

    if isinstance(exc, TransientUpstreamError):
        return True
    if isinstance(exc, ValidationError):
        return False
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionResetError)):
        return True
    return bool(TRANSIENT_PATTERN.search(str(exc) or ""))


def _consume_outcome(task: "asyncio.Future[Any]") -> None:
    # 被分离的尝试：读取其结果，避免 "exception was never retrieved"
    if not task.cancelled():
        task.exception()


async def first_of(operation: Awaitable[T], deadline_ms: Optional[int]) -> T:
    """等待 operation 与截止时间中先到的一方。

    deadline_ms 为 None 时不设上限。超时抛出 UpstreamTimeoutError。
    """

    task = asyncio.ensure_future(operation)
    if deadline_ms is None:
        return await task
    try:
        done, _ = await asyncio.wait({task}, timeout=deadline_ms / 1000)
    except asyncio.CancelledError:
        task.cancel()
        task.add_done_callback(_consume_outcome)
        raise
    if task in done:
        return task.result()
    task.cancel()
    task.add_done_callback(_consume_outcome)
    raise UpstreamTimeoutError(f"Timeout: upstream too slow (>{deadline_ms}ms)")


@dataclass(frozen=True)
class RetryPolicy:
    """对单次上游尝试加截止时间，并对瞬时失败追加恰好一次重试。"""

    deadline_ms: Optional[int] = 10_000
    # 第二次尝试的截止时间；None 表示只等待上游自身返回或失败
    retry_deadline_ms: Optional[int] = 20_000
    backoff_base_ms: int = 300
    backoff_jitter_ms: int = 200
    rand: Callable[[], float] = field(default=random.random, compare=False, repr=False)
    sleep: Callable[[float], Awaitable[Any]] = field(default=asyncio.sleep, compare=False, repr=False)

    @classmethod
    def from_settings(cls, cfg) -> "RetryPolicy":
        return cls(
            deadline_ms=cfg.upstream_deadline_ms,
            retry_deadline_ms=cfg.retry_deadline_ms,
            backoff_base_ms=cfg.backoff_base_ms,
            backoff_jitter_ms=cfg.backoff_jitter_ms,
        )

    def backoff_ms(self) -> float:
        return self.backoff_base_ms + int(self.rand() * self.backoff_jitter_ms)

    async def run(self, attempt: Callable[[], Awaitable[T]], label: str = "upstream") -> T:
        """执行 attempt()，必要时重试一次；返回成功值或抛出终止错误。"""

        try:
            return await first_of(attempt(), self.deadline_ms)
        except Exception as exc:
            if not is_transient(exc):
                raise
            delay = self.backoff_ms()
            logger.warning(
                f"{label}.retry",
                extra={"extra": {"error": str(exc), "backoff_ms": delay}},
            )
        await self.sleep(delay / 1000)
        return await first_of(attempt(), self.retry_deadline_ms)
