"""按客户端地址的入站限流（滑动窗口）。

这是跨请求共享的唯一可变状态：每个地址一组命中时间戳。
hit() 在锁内完成检查与计数，从不等待；超限立即拒绝，不排队。
窗口两端都是闭区间：恰好 window_s 秒前的命中仍然计数。
"""

import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional

LOOPBACK_ADDRESSES = frozenset({"127.0.0.1", "::1", "localhost"})

RATE_LIMITED_MESSAGE = "Client-limited: Too many requests from this IP. Wait a few seconds."


class SlidingWindowLimiter:
    def __init__(
        self,
        window_s: float = 15.0,
        max_requests: int = 3,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_s = window_s
        self.max_requests = max_requests
        self.enabled = enabled
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def exempt(self, address: Optional[str]) -> bool:
        return not self.enabled or (address or "") in LOOPBACK_ADDRESSES

    def hit(self, address: Optional[str]) -> bool:
        """登记一次请求；返回 True 表示放行，False 表示应拒绝（429）。"""

        if self.exempt(address):
            return True
        key = address or "unknown"
        now = self._clock()
        cutoff = now - self.window_s
        with self._lock:
            bucket = self._hits.setdefault(key, deque())
            while bucket and bucket[0] < cutoff:
                bucket.popleft()
            if len(bucket) >= self.max_requests:
                return False
            bucket.append(now)
            if len(self._hits) > 1024:
                self._prune(cutoff)
            return True

    def _prune(self, cutoff: float) -> None:
        stale = [k for k, q in self._hits.items() if not q or q[-1] < cutoff]
        for k in stale:
            del self._hits[k]
