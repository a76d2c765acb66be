"""上游错误到用户提示的映射。

按错误类型与原始信息中的关键词分类：
- 限流/配额 → 429，提示稍后重试；
- 超时 → 504，提示上游太慢；
- 其他 → 502，原样透出上游信息（压成单行）。
"""

import re
from typing import Tuple

from chat_gateway.domain.exceptions import (
    BusinessError,
    RateLimitError,
    UpstreamTimeoutError,
    ValidationError,
)

RATE_LIMIT_MESSAGE = "Rate limited: upstream quota or rate limit exceeded. Try again shortly."
TIMEOUT_MESSAGE = "Upstream too slow. Try again."

QUOTA_PATTERN = re.compile(r"quota|exhausted|rate.?limit|429", re.IGNORECASE)
TIMEOUT_PATTERN = re.compile(r"timeout|timed out|deadline", re.IGNORECASE)

MAX_MESSAGE_LENGTH = 500


def raw_message(exc: BaseException) -> str:
    raw = getattr(exc, "raw_message", None) or getattr(exc, "message", None) or str(exc)
    return raw or "Upstream error"


def single_line(text: str) -> str:
    line = " ".join((text or "").split())
    if len(line) > MAX_MESSAGE_LENGTH:
        line = line[: MAX_MESSAGE_LENGTH - 3] + "..."
    return line or "Upstream error"


def map_error(exc: BaseException) -> Tuple[int, str]:
    """返回 (HTTP 状态码, 单行用户提示)。"""

    if isinstance(exc, ValidationError):
        return exc.http_status, single_line(exc.message)
    raw = raw_message(exc)
    if isinstance(exc, RateLimitError) or QUOTA_PATTERN.search(raw):
        return 429, RATE_LIMIT_MESSAGE
    if isinstance(exc, UpstreamTimeoutError) or TIMEOUT_PATTERN.search(raw):
        return 504, TIMEOUT_MESSAGE
    if isinstance(exc, BusinessError) and exc.http_status >= 500:
        return exc.http_status, single_line(raw)
    return 502, single_line(raw)
