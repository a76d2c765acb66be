from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class MessageIn(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class ChatBody(BaseModel):
    messages: List[MessageIn] = Field(default_factory=list)
    system: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    # 可选：完成后把本轮消息追加到该会话（local- 前缀的本地会话除外）
    conversation_id: Optional[str] = None


class ConversationCreate(BaseModel):
    title: str = "Chat"
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ConversationRename(BaseModel):
    title: str


class MessagesAppend(BaseModel):
    # 与浏览器端保持宽松：缺少 role/content 的条目直接跳过
    messages: List[Dict[str, Any]] = Field(default_factory=list)
