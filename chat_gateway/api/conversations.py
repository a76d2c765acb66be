"""会话存储路由。

存储未配置时统一返回 501，读写失败返回 500；
这些错误只影响本组接口，不影响聊天本身。
"""

from fastapi import APIRouter, Depends, Request

from chat_gateway.api.schemas import ConversationCreate, ConversationRename, MessagesAppend
from chat_gateway.domain.conversation import ConversationStore
from chat_gateway.domain.exceptions import StoreUnavailable, ValidationError
from chat_gateway.domain.models import ROLES

router = APIRouter(prefix="/conversations", tags=["conversations"])


def get_store(request: Request) -> ConversationStore:
    store = request.app.state.store
    if store is None:
        raise StoreUnavailable("Conversation store not configured", http_status=501, code="STORE_NOT_CONFIGURED")
    return store


@router.post("")
async def create_conversation(body: ConversationCreate, store: ConversationStore = Depends(get_store)):
    conv = await store.create_conversation(body.title, body.metadata)
    return {"id": conv.id}


@router.get("")
async def list_conversations(store: ConversationStore = Depends(get_store)):
    convs = await store.list_conversations()
    return {
        "conversations": [
            {"id": c.id, "title": c.title, "created_at": c.created_at.isoformat()}
            for c in convs
        ]
    }


@router.get("/{conversation_id}/messages")
async def get_messages(conversation_id: str, store: ConversationStore = Depends(get_store)):
    msgs = await store.list_messages(conversation_id)
    return {
        "messages": [
            {"role": m.role, "content": m.content, "created_at": m.created_at.isoformat()}
            for m in msgs
        ]
    }


@router.post("/{conversation_id}/messages")
async def append_messages(
    conversation_id: str,
    body: MessagesAppend,
    store: ConversationStore = Depends(get_store),
):
    rows = [
        {"role": m["role"], "content": m["content"]}
        for m in body.messages
        if m.get("role") in ROLES and isinstance(m.get("content"), str) and m["content"]
    ]
    if not rows:
        return {"ok": True, "inserted": 0}
    inserted = await store.append_messages(conversation_id, rows)
    return {"ok": True, "inserted": inserted}


@router.patch("/{conversation_id}")
async def rename_conversation(
    conversation_id: str,
    body: ConversationRename,
    store: ConversationStore = Depends(get_store),
):
    title = body.title.strip()
    if not title:
        raise ValidationError(code="EMPTY_TITLE", message="title must not be blank")
    await store.rename_conversation(conversation_id, title)
    return {"ok": True}


@router.delete("/{conversation_id}")
async def delete_conversation(conversation_id: str, store: ConversationStore = Depends(get_store)):
    await store.delete_conversation(conversation_id)
    return {"ok": True}
