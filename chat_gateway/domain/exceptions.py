"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层统一捕获并映射为 HTTP 状态码与单行的用户提示。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 provider、conversation_id 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ValidationError(BusinessError):
    """请求体或配置校验失败，不会重试。"""


class UpstreamError(BusinessError):
    """上游 Provider 的非瞬时错误，原样透出 raw_message（HTTP 502）。"""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: str = "UPSTREAM_ERROR",
        http_status: int = 502,
        **extra,
    ):
        self.status = status
        self.raw_message = message
        super().__init__(code=code, message=message, http_status=http_status, **extra)


class TransientUpstreamError(UpstreamError):
    """预期立即重试即可成功的上游错误（限流、超时、连接重置）。"""


class RateLimitError(TransientUpstreamError):
    """Provider 限流或配额耗尽。"""

    def __init__(self, message: str = "Upstream rate limit", status: Optional[int] = 429, **extra):
        super().__init__(message, status=status, code="RATE_LIMIT", http_status=429, **extra)


class UpstreamTimeoutError(TransientUpstreamError):
    """上游在截止时间内没有响应。"""

    def __init__(self, message: str = "Timeout: upstream too slow", **extra):
        super().__init__(message, status=None, code="TIMEOUT", http_status=504, **extra)


class UpstreamResetError(TransientUpstreamError):
    """连接在读写途中被重置或协议中断，可立即重试。"""

    def __init__(self, message: str, **extra):
        super().__init__(message, status=None, code="CONNECTION_RESET", http_status=502, **extra)


class NetworkError(UpstreamError):
    """其他网络层错误（DNS 解析失败、连接被拒绝、TLS 错误等），不重试。"""

    def __init__(self, message: str, **extra):
        super().__init__(message, status=None, code="NETWORK_ERROR", http_status=502, **extra)


class StoreUnavailable(BusinessError):
    """会话存储未配置（501）或读写失败（500）。"""

    def __init__(self, message: str, http_status: int = 500, code: str = "STORE_ERROR", **extra):
        super().__init__(code=code, message=message, http_status=http_status, **extra)


class ClientAbort(BusinessError):
    """用户主动停止生成；UI 上显示为 "(stopped)"，而不是错误提示。"""

    def __init__(self, message: str = "(stopped)", **extra):
        super().__init__(code="CLIENT_ABORT", message=message, http_status=499, **extra)
