"""聊天相关路由：/chat、/chat/stream、/health、/diag。"""

import time
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from chat_gateway.api.schemas import ChatBody
from chat_gateway.gateway.errors import map_error
from chat_gateway.infrastructure.logging.logger import logger

router = APIRouter(tags=["chat"])

STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "X-Accel-Buffering": "no",
}


async def _chain(first: Optional[str], rest: AsyncIterator[str]) -> AsyncIterator[str]:
    if first is not None:
        yield first
    async for fragment in rest:
        yield fragment


@router.post("/chat")
async def chat(body: ChatBody, request: Request):
    """非流式聊天（也是浏览器端流式失败后的回退接口）。"""

    handler = request.app.state.handler
    try:
        reply = await handler.complete(body.model_dump(exclude_none=True))
    except Exception as exc:
        status, message = map_error(exc)
        logger.warning("chat.failed", extra={"extra": {"status": status, "error": str(exc)}})
        return JSONResponse(status_code=status, content={"error": message})
    return {"reply": reply}


@router.post("/chat/stream")
async def chat_stream(body: ChatBody, request: Request):
    """流式聊天：text/plain 分块返回原始文本增量，客户端直接拼接。

    在开始响应前先取出第一个片段（正文、保活标记或回退结果），
    这样首个片段之前的失败仍能以正确的状态码返回 "Error: <msg>"。
    """

    handler = request.app.state.handler
    try:
        fragments = handler.stream(body.model_dump(exclude_none=True), request.is_disconnected)
        first = await fragments.__anext__()
    except StopAsyncIteration:
        first, fragments = None, None
    except Exception as exc:
        status, message = map_error(exc)
        logger.warning("chat.stream_failed", extra={"extra": {"status": status, "error": str(exc)}})
        return PlainTextResponse(f"Error: {message}", status_code=status)

    if fragments is None:
        return PlainTextResponse("", headers=STREAM_HEADERS)
    return StreamingResponse(
        _chain(first, fragments),
        media_type="text/plain; charset=utf-8",
        headers=STREAM_HEADERS,
    )


@router.get("/health")
async def health(request: Request):
    cfg = request.app.state.settings
    return {
        "ok": True,
        "hasKey": bool(cfg.upstream_api_key),
        "hasConversationStore": request.app.state.store is not None,
        "port": cfg.port,
        "prod": cfg.is_production,
        "provider": request.app.state.handler.provider.name,
        "keyPreview": cfg.key_preview,
    }


@router.get("/diag")
async def diag(request: Request):
    """单 token 往返探针，用于确认上游可用。"""

    cfg = request.app.state.settings
    if not cfg.upstream_api_key:
        return JSONResponse(status_code=500, content={"ok": False, "error": "Missing upstream API key"})
    started = time.monotonic()
    try:
        content = await request.app.state.handler.diag()
    except Exception as exc:
        return JSONResponse(
            status_code=502,
            content={"ok": False, "ms": int((time.monotonic() - started) * 1000), "error": map_error(exc)[1]},
        )
    return {"ok": True, "ms": int((time.monotonic() - started) * 1000), "content": content}
