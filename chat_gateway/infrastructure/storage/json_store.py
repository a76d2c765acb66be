import asyncio
import json
import os
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Sequence
from uuid import uuid4

from chat_gateway.config.settings import settings
from chat_gateway.domain.conversation import Conversation, MessageRecord
from chat_gateway.domain.exceptions import StoreUnavailable

_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class JsonConversationStore:
    """本地文件会话存储：conversations/<id>/meta.json + messages.jsonl。

    文件读写是同步的，通过 asyncio.to_thread 放到线程里执行，不阻塞事件循环。
    """

    name = "json"

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)

    # ---- 协议方法 ----

    async def create_conversation(self, title: str, metadata: Dict[str, Any]) -> Conversation:
        return await asyncio.to_thread(self._create_conversation, title, metadata)

    async def list_conversations(self) -> List[Conversation]:
        return await asyncio.to_thread(self._list_conversations)

    async def list_messages(self, conversation_id: str) -> List[MessageRecord]:
        return await asyncio.to_thread(self._list_messages, conversation_id)

    async def append_messages(self, conversation_id: str, messages: Sequence[Dict[str, str]]) -> int:
        return await asyncio.to_thread(self._append_messages, conversation_id, list(messages))

    async def rename_conversation(self, conversation_id: str, title: str) -> None:
        await asyncio.to_thread(self._rename_conversation, conversation_id, title)

    async def delete_conversation(self, conversation_id: str) -> None:
        await asyncio.to_thread(self._delete_conversation, conversation_id)

    # ---- 同步实现 ----

    def _create_conversation(self, title: str, metadata: Dict[str, Any]) -> Conversation:
        cid = f"c-{uuid4().hex}"
        cdir = self._conv_root / cid
        cdir.mkdir(parents=True, exist_ok=True)
        conv = Conversation(id=cid, title=title, created_at=datetime.now(timezone.utc), metadata=dict(metadata))
        self._write_meta(cdir, conv)
        return conv

    def _get_conversation(self, conversation_id: str) -> Conversation:
        meta_path = self._conv_dir(conversation_id) / "meta.json"
        if not meta_path.exists():
            raise StoreUnavailable(conversation_id, http_status=404, code="CONVERSATION_NOT_FOUND")
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StoreUnavailable(str(e), code="STORE_READ_ERROR")
        return self._to_conversation(data)

    def _list_conversations(self) -> List[Conversation]:
        items: List[Conversation] = []
        for cdir in self._conv_root.glob("*/"):
            meta_path = cdir / "meta.json"
            if not meta_path.exists():
                continue
            try:
                items.append(self._to_conversation(json.loads(meta_path.read_text(encoding="utf-8"))))
            except (OSError, ValueError, KeyError):
                # 损坏的会话目录不影响列表
                continue
        items.sort(key=lambda c: c.created_at, reverse=True)
        return items

    def _list_messages(self, conversation_id: str) -> List[MessageRecord]:
        self._get_conversation(conversation_id)
        msgs_path = self._conv_dir(conversation_id) / "messages.jsonl"
        items: List[MessageRecord] = []
        if not msgs_path.exists():
            return items
        try:
            lines = msgs_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise StoreUnavailable(str(e), code="STORE_READ_ERROR")
        for line in lines:
            try:
                data = json.loads(line)
                items.append(
                    MessageRecord(
                        id=data.get("id"),
                        conversation_id=data["conversation_id"],
                        role=data["role"],
                        content=data.get("content") or "",
                        created_at=_parse_iso(data["created_at"]),
                    )
                )
            except (ValueError, KeyError):
                continue
        # 稳定排序：时间相同的消息保持写入顺序
        items.sort(key=lambda m: m.created_at)
        return items

    def _append_messages(self, conversation_id: str, messages: List[Dict[str, str]]) -> int:
        self._get_conversation(conversation_id)
        if not messages:
            return 0
        msgs_path = self._conv_dir(conversation_id) / "messages.jsonl"
        now = _iso(datetime.now(timezone.utc))
        lines = [
            json.dumps(
                {
                    "id": f"m-{uuid4().hex}",
                    "conversation_id": conversation_id,
                    "role": m["role"],
                    "content": m["content"],
                    "created_at": now,
                },
                ensure_ascii=False,
            )
            for m in messages
        ]
        try:
            with msgs_path.open("a", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")
        except OSError as e:
            raise StoreUnavailable(str(e), code="STORE_WRITE_ERROR")
        return len(lines)

    def _rename_conversation(self, conversation_id: str, title: str) -> None:
        conv = self._get_conversation(conversation_id)
        conv.title = title
        self._write_meta(self._conv_dir(conversation_id), conv)

    def _delete_conversation(self, conversation_id: str) -> None:
        cdir = self._conv_dir(conversation_id)
        if not cdir.exists():
            raise StoreUnavailable(conversation_id, http_status=404, code="CONVERSATION_NOT_FOUND")
        try:
            shutil.rmtree(cdir)
        except OSError as e:
            raise StoreUnavailable(str(e), code="STORE_DELETE_ERROR")

    # ---- 辅助方法 ----

    def _conv_dir(self, conversation_id: str) -> Path:
        if not _ID_PATTERN.match(conversation_id or ""):
            raise StoreUnavailable(f"Invalid conversation id: {conversation_id!r}", http_status=400, code="INVALID_ID")
        return self._conv_root / conversation_id

    def _write_meta(self, cdir: Path, conv: Conversation) -> None:
        meta_path = cdir / "meta.json"
        tmp_path = cdir / f"meta.{uuid4().hex}.json.tmp"
        obj = {
            "id": conv.id,
            "title": conv.title,
            "created_at": _iso(conv.created_at),
            "metadata": conv.metadata,
        }
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, meta_path)
        except OSError as e:
            raise StoreUnavailable(str(e), code="STORE_WRITE_ERROR")

    @staticmethod
    def _to_conversation(data: Dict[str, Any]) -> Conversation:
        return Conversation(
            id=data["id"],
            title=data.get("title") or "",
            created_at=_parse_iso(data["created_at"]),
            metadata=data.get("metadata") or {},
        )
