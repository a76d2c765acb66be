"""Provider 抽象接口。

上层 ChatHandler 不直接依赖具体厂商的 HTTP API，而是依赖此协议：

- 每个厂商实现一个 ProviderClient（如 GeminiClient）。
- 负责：将 ChatRequest 转成具体 API 请求，并把响应解析为纯文本或文本增量。
- 厂商的角色词汇（assistant / model）只在各自的实现里出现。

这样可以在不改 Handler 代码的前提下接入更多厂商。
"""

import json
import re
from typing import AsyncIterator, Optional, Protocol

import httpx

from chat_gateway.domain.exceptions import NetworkError, RateLimitError, UpstreamError, UpstreamResetError
from chat_gateway.domain.models import ChatRequest

QUOTA_PATTERN = re.compile(r"quota|exhausted|rate.?limit|429", re.IGNORECASE)
RESET_PATTERN = re.compile(r"reset|temporar", re.IGNORECASE)

# 读写途中断开的连接按"连接重置"处理
RESET_ERRORS = (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)


class ProviderClient(Protocol):
    """LLM Provider 客户端协议。

    实现者需要提供：
    - name: Provider 名称，用于日志/健康检查。
    - complete_once(req): 一次非流式调用，返回完整文本。
    - complete_streaming(req): 一次流式调用，逐个产出非空文本增量；
      迭代正常结束即完成，中途抛错表示已有部分输出后上游失败。
    """

    name: str

    async def complete_once(self, req: ChatRequest) -> str:
        ...

    def complete_streaming(self, req: ChatRequest) -> AsyncIterator[str]:
        ...


def extract_error_message(body: str) -> str:
    """尽量从厂商错误 JSON 中取出 error.message，失败时返回原始文本。"""

    text = (body or "").strip()
    try:
        data = json.loads(text)
    except ValueError:
        return text or "Upstream error"
    if isinstance(data, list) and data:
        data = data[0]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if data.get("message"):
            return str(data["message"])
    return text or "Upstream error"


def raise_for_upstream(status_code: int, body: str, provider: str, model: Optional[str] = None) -> None:
    """把 HTTP 错误响应统一转换为业务异常。"""

    if status_code < 400:
        return
    message = extract_error_message(body)
    if status_code == 429 or QUOTA_PATTERN.search(message):
        # 限流/配额错误交给 RetryPolicy 做一次退避重试
        raise RateLimitError(message=message, status=status_code, provider=provider, model=model)
    raise UpstreamError(message, status=status_code, provider=provider, model=model)


def connection_error(exc: httpx.RequestError, provider: str) -> UpstreamError:
    """把 httpx 网络异常转换为业务异常；只有连接重置类错误会被重试。"""

    message = str(exc) or type(exc).__name__
    if isinstance(exc, RESET_ERRORS) or RESET_PATTERN.search(message):
        return UpstreamResetError(message, provider=provider)
    return NetworkError(message, provider=provider)
