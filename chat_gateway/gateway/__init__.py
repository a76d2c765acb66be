"""网关核心：超时/重试策略、流式转发、请求处理与入站限流。"""

from chat_gateway.gateway.handler import ChatHandler
from chat_gateway.gateway.rate_limit import SlidingWindowLimiter
from chat_gateway.gateway.relay import StreamRelay
from chat_gateway.gateway.retry import RetryPolicy, first_of, is_transient

__all__ = [
    "ChatHandler",
    "RetryPolicy",
    "SlidingWindowLimiter",
    "StreamRelay",
    "first_of",
    "is_transient",
]
