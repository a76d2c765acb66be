"""统一的对话数据模型。

本模块定义了网关内部在不同 Provider 之间共享的标准数据结构：

- Message: 一条对话消息（system/user/assistant），创建后不可变。
- ChatRequest: 发给上游 LLM Provider 的完整请求，按请求构造，不持久化。
- ChatDefaults: 请求可选字段的默认值集合，启动时构造一次。
- StreamSession: 单次流式响应期间的临时状态。

所有 Provider 适配器（如 GeminiClient）都只依赖这些模型，
并负责在各自的 API JSON 和这些模型之间做转换。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional, Sequence, Tuple


# 对话消息角色（内部词汇；厂商词汇只在 providers 中出现）
Role = Literal["system", "user", "assistant"]
ROLES: Tuple[str, ...] = ("system", "user", "assistant")

# 浏览器本地存储生成的会话 ID 前缀，与存储服务签发的 ID 区分
LOCAL_ID_PREFIX = "local-"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Message:
    """一条对话消息。

    - role: 消息角色，如 system/user/assistant。
    - content: 纯文本内容。
    - timestamp: 创建时间（UTC）。
    """

    role: Role
    content: str
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class ChatDefaults:
    """请求可选字段的默认值。

    原始请求体中 system/model/temperature 均可省略，
    由这里的具名字段统一补齐，而不是在各处零散地填默认值。
    """

    system: str = "You are a helpful assistant."
    model: str = "gemini-1.5-flash"
    temperature: float = 0.7
    # 转发给上游的最近对话轮数（一轮 = user + assistant 两条）
    history_pairs: int = 3
    max_output_tokens: int = 96
    stream_max_output_tokens: int = 400


@dataclass(frozen=True)
class ChatRequest:
    """一次完整的聊天请求。

    Handler 会将历史裁剪后生成 ChatRequest，再交给具体 ProviderClient。
    流式失败后的整段回退复用同一个对象，保证两次调用看到相同的消息集。
    """

    messages: Tuple[Message, ...]
    model: str
    system: Optional[str] = None
    temperature: float = 0.7
    max_output_tokens: int = 96


def trim_history(messages: Sequence[Message], pairs: int) -> List[Message]:
    """只保留最近 pairs 轮（2·pairs 条）消息，原序列不受影响。"""

    if pairs <= 0:
        return []
    return list(messages[-(pairs * 2):])


class RelayState(str, Enum):
    """流式转发的状态机。"""

    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class StreamSession:
    """单次流式响应的临时状态，响应结束即丢弃。"""

    state: RelayState = RelayState.IDLE
    parts: List[str] = field(default_factory=list)
    forwarded: int = 0
    client_closed: bool = False
    keepalive_sent: bool = False
    fallback_eligible: bool = False
    error: Optional[BaseException] = None

    @property
    def text(self) -> str:
        return "".join(self.parts)
