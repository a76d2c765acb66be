"""Supabase（托管 Postgres）会话存储。

通过 PostgREST 接口访问两张表：

- conversations(id, title, metadata, created_at)
- messages(id, conversation_id, role, content, created_at)

只在服务端使用 service-role 密钥，绝不下发给浏览器。
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import httpx

from chat_gateway.domain.conversation import Conversation, MessageRecord
from chat_gateway.domain.exceptions import StoreUnavailable
from chat_gateway.providers.base import extract_error_message


def _parse_ts(value: Optional[str]) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class SupabaseConversationStore:
    name = "supabase"

    def __init__(self, settings):
        self._settings = settings
        self._base = f"{settings.supabase_url.rstrip('/')}/rest/v1"

    async def create_conversation(self, title: str, metadata: Dict[str, Any]) -> Conversation:
        rows = await self._request(
            "POST",
            "/conversations",
            json={"title": title, "metadata": metadata},
            params={"select": "id,title,created_at,metadata"},
            prefer="return=representation",
        )
        if not rows:
            raise StoreUnavailable("Conversation insert returned no row", code="STORE_WRITE_ERROR")
        return self._to_conversation(rows[0])

    async def list_conversations(self) -> List[Conversation]:
        rows = await self._request(
            "GET",
            "/conversations",
            params={"select": "id,title,created_at,metadata", "order": "created_at.desc"},
        )
        return [self._to_conversation(r) for r in rows or []]

    async def list_messages(self, conversation_id: str) -> List[MessageRecord]:
        rows = await self._request(
            "GET",
            "/messages",
            params={
                "select": "role,content,created_at",
                "conversation_id": f"eq.{conversation_id}",
                "order": "created_at.asc,id.asc",
            },
        )
        return [
            MessageRecord(
                conversation_id=conversation_id,
                role=r["role"],
                content=r.get("content") or "",
                created_at=_parse_ts(r["created_at"]),
            )
            for r in rows or []
        ]

    async def append_messages(self, conversation_id: str, messages: Sequence[Dict[str, str]]) -> int:
        rows = [
            {"conversation_id": conversation_id, "role": m["role"], "content": m["content"]}
            for m in messages
        ]
        if not rows:
            return 0
        await self._request("POST", "/messages", json=rows, prefer="return=minimal")
        return len(rows)

    async def rename_conversation(self, conversation_id: str, title: str) -> None:
        await self._request(
            "PATCH",
            "/conversations",
            params={"id": f"eq.{conversation_id}"},
            json={"title": title},
            prefer="return=minimal",
        )

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._request("DELETE", "/messages", params={"conversation_id": f"eq.{conversation_id}"})
        await self._request("DELETE", "/conversations", params={"id": f"eq.{conversation_id}"})

    # ---- 辅助方法 ----

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        key = self._settings.supabase_service_role
        headers = {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.request(method, f"{self._base}{path}", params=params, json=json, headers=headers)
        except httpx.RequestError as e:
            raise StoreUnavailable(str(e) or type(e).__name__, code="STORE_NETWORK_ERROR")
        if resp.status_code >= 400:
            raise StoreUnavailable(extract_error_message(resp.text), code="STORE_ERROR")
        if not resp.content:
            return None
        return resp.json()

    @staticmethod
    def _to_conversation(row: Dict[str, Any]) -> Conversation:
        return Conversation(
            id=str(row["id"]),
            title=row.get("title") or "",
            created_at=_parse_ts(row["created_at"]),
            metadata=row.get("metadata") or {},
        )
