from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .models import Role


@dataclass
class Conversation:
    id: str
    title: str
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MessageRecord:
    conversation_id: str
    role: Role
    content: str
    created_at: datetime
    id: Optional[str] = None


class ConversationStore(Protocol):
    """会话存储协议；核心只追加，不修改已有消息。"""

    name: str

    async def create_conversation(self, title: str, metadata: Dict[str, Any]) -> Conversation:
        ...

    async def list_conversations(self) -> List[Conversation]:
        ...

    async def list_messages(self, conversation_id: str) -> List[MessageRecord]:
        ...

    async def append_messages(self, conversation_id: str, messages: Sequence[Dict[str, str]]) -> int:
        ...

    async def rename_conversation(self, conversation_id: str, title: str) -> None:
        ...

    async def delete_conversation(self, conversation_id: str) -> None:
        ...
