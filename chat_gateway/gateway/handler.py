"""聊天请求处理核心模块。

实现请求校验、历史裁剪、调用 provider（经 RetryPolicy）、流式转发、
流失败后的整段回退、错误映射以及完成后的会话持久化。

ChatHandler 在启动时构造一次，按引用注入每个请求任务；
它本身不保存任何请求级的可变状态。
"""

import time
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional

from chat_gateway.domain.conversation import ConversationStore
from chat_gateway.domain.exceptions import ValidationError
from chat_gateway.domain.models import (
    LOCAL_ID_PREFIX,
    ROLES,
    ChatDefaults,
    ChatRequest,
    Message,
    RelayState,
    trim_history,
)
from chat_gateway.gateway.errors import map_error
from chat_gateway.gateway.relay import IsDisconnected, StreamRelay, close_iterator
from chat_gateway.gateway.retry import RetryPolicy
from chat_gateway.infrastructure.logging.logger import logger
from chat_gateway.providers.base import ProviderClient

# 上游正常结束但没有任何文本时，存入会话的占位回复
NO_CONTENT_TEXT = "(no content)"


class ChatHandler:
    def __init__(
        self,
        provider: ProviderClient,
        defaults: Optional[ChatDefaults] = None,
        policy: Optional[RetryPolicy] = None,
        store: Optional[ConversationStore] = None,
        stall_ms: int = 4_000,
        keepalive: str = "...",
    ):
        self._provider = provider
        self._defaults = defaults or ChatDefaults()
        self._policy = policy or RetryPolicy()
        self._store = store
        self._stall_ms = stall_ms
        self._keepalive = keepalive

    @property
    def provider(self) -> ProviderClient:
        return self._provider

    @property
    def defaults(self) -> ChatDefaults:
        return self._defaults

    # ---- 请求构造 ----

    def build_request(self, payload: Mapping[str, Any], stream: bool = False) -> ChatRequest:
        """校验请求体并构造 ChatRequest（已裁剪到最近 history_pairs 轮）。"""

        raw = payload.get("messages")
        if not isinstance(raw, list):
            raise ValidationError(code="INVALID_MESSAGES", message="messages must be a list")
        messages: List[Message] = []
        for idx, item in enumerate(raw):
            if not isinstance(item, Mapping):
                raise ValidationError(code="INVALID_MESSAGE", message=f"messages[{idx}] must be an object")
            role = item.get("role")
            content = item.get("content")
            if role not in ROLES:
                raise ValidationError(code="INVALID_ROLE", message=f"messages[{idx}].role must be one of {', '.join(ROLES)}")
            if not isinstance(content, str):
                raise ValidationError(code="INVALID_CONTENT", message=f"messages[{idx}].content must be a string")
            messages.append(Message(role=role, content=content))

        trimmed = trim_history(messages, self._defaults.history_pairs)
        if not trimmed:
            raise ValidationError(code="EMPTY_MESSAGES", message="messages must not be empty")

        system = payload.get("system")
        if system is None:
            system = self._defaults.system
        elif not isinstance(system, str):
            raise ValidationError(code="INVALID_SYSTEM", message="system must be a string")

        model = payload.get("model") or self._defaults.model
        if not isinstance(model, str):
            raise ValidationError(code="INVALID_MODEL", message="model must be a string")

        temperature = payload.get("temperature")
        if temperature is None:
            temperature = self._defaults.temperature
        if isinstance(temperature, bool) or not isinstance(temperature, (int, float)):
            raise ValidationError(code="INVALID_TEMPERATURE", message="temperature must be a number")
        if not 0 <= temperature <= 2:
            raise ValidationError(code="INVALID_TEMPERATURE", message="temperature must be within [0, 2]")

        return ChatRequest(
            messages=tuple(trimmed),
            model=model,
            system=system,
            temperature=float(temperature),
            max_output_tokens=(
                self._defaults.stream_max_output_tokens if stream else self._defaults.max_output_tokens
            ),
        )

    # ---- 非流式 ----

    async def complete(self, payload: Mapping[str, Any]) -> str:
        """整段回复路径（POST /chat）。"""

        req = self.build_request(payload, stream=False)
        started = time.monotonic()
        reply = await self._policy.run(lambda: self._provider.complete_once(req), label="chat")
        logger.info(
            "chat.completed",
            extra={"extra": {"model": req.model, "messages": len(req.messages), "ms": _elapsed_ms(started)}},
        )
        await self._persist(payload, req, reply)
        return reply

    # ---- 流式 ----

    def stream(self, payload: Mapping[str, Any], is_disconnected: Optional[IsDisconnected] = None) -> AsyncIterator[str]:
        """流式回复路径（POST /chat/stream）。

        校验在这里同步完成（失败直接抛 ValidationError），
        返回的异步生成器才真正发起上游调用。
        """

        req = self.build_request(payload, stream=True)
        return self._stream(payload, req, is_disconnected)

    async def _stream(
        self,
        payload: Mapping[str, Any],
        req: ChatRequest,
        is_disconnected: Optional[IsDisconnected],
    ) -> AsyncIterator[str]:
        started = time.monotonic()
        relay = StreamRelay(
            lambda: self._policy.run(lambda: self._open_stream(req), label="stream"),
            is_disconnected=is_disconnected,
            stall_ms=self._stall_ms,
            keepalive=self._keepalive,
        )
        async for fragment in relay.run():
            yield fragment

        session = relay.session
        if session.state == RelayState.COMPLETED:
            logger.info(
                "chat.stream_completed",
                extra={"extra": {"model": req.model, "deltas": session.forwarded, "ms": _elapsed_ms(started)}},
            )
            await self._persist(payload, req, session.text)
            return
        if not session.fallback_eligible:
            # 已中止，或部分输出后失败（终止错误片段已写出）
            return

        # 零增量失败：同一个 ChatRequest 走一次整段调用
        logger.info("chat.fallback", extra={"extra": {"model": req.model, "error": str(session.error)}})
        try:
            reply = await self._policy.run(lambda: self._provider.complete_once(req), label="fallback")
        except Exception as exc:
            if not session.keepalive_sent:
                raise
            # 响应体已经开始（保活标记），只能把错误写进正文
            yield "Error: " + map_error(exc)[1]
            return
        yield reply
        await self._persist(payload, req, reply)

    async def _open_stream(self, req: ChatRequest):
        """启动上游流并等到首个增量；返回 (首个增量或 None, 迭代器)。"""

        iterator = self._provider.complete_streaming(req).__aiter__()
        try:
            first = await iterator.__anext__()
        except StopAsyncIteration:
            return None, iterator
        except BaseException:
            await close_iterator(iterator)
            raise
        return first, iterator

    # ---- 探针 ----

    async def diag(self) -> str:
        """单 token 往返探针。"""

        req = ChatRequest(
            messages=(Message(role="user", content="ping"),),
            model=self._defaults.model,
            system=None,
            temperature=0.0,
            max_output_tokens=1,
        )
        return await self._policy.run(lambda: self._provider.complete_once(req), label="diag")

    # ---- 持久化 ----

    async def _persist(self, payload: Mapping[str, Any], req: ChatRequest, reply: str) -> None:
        """把本轮 user + assistant 两条消息追加到会话；失败只记日志。"""

        conversation_id = payload.get("conversation_id")
        if not conversation_id or self._store is None:
            return
        if str(conversation_id).startswith(LOCAL_ID_PREFIX):
            return
        user = next((m for m in reversed(req.messages) if m.role == "user"), None)
        if user is None:
            return
        rows: List[Dict[str, str]] = [
            {"role": "user", "content": user.content},
            {"role": "assistant", "content": reply or NO_CONTENT_TEXT},
        ]
        try:
            await self._store.append_messages(str(conversation_id), rows)
        except Exception as exc:
            logger.error(
                "chat.persist_failed",
                extra={"extra": {"conversation_id": conversation_id, "error": str(exc)}},
            )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
