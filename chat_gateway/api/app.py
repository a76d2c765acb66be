"""FastAPI 应用工厂。

启动时一次性构造 Settings → Provider → RetryPolicy → ChatHandler，
挂在 app.state 上供各路由按引用使用；请求之间不共享其他可变状态
（入站限流器除外）。
"""

import time
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import chat_gateway
from chat_gateway.api import chat, conversations
from chat_gateway.config.settings import Settings, settings
from chat_gateway.domain.conversation import ConversationStore
from chat_gateway.domain.exceptions import BusinessError
from chat_gateway.gateway.handler import ChatHandler
from chat_gateway.gateway.rate_limit import RATE_LIMITED_MESSAGE, SlidingWindowLimiter
from chat_gateway.gateway.retry import RetryPolicy
from chat_gateway.infrastructure.logging.logger import logger
from chat_gateway.infrastructure.storage import create_store
from chat_gateway.providers import create_provider
from chat_gateway.providers.base import ProviderClient


def create_app(
    cfg: Optional[Settings] = None,
    provider: Optional[ProviderClient] = None,
    store: Optional[ConversationStore] = None,
    policy: Optional[RetryPolicy] = None,
    limiter: Optional[SlidingWindowLimiter] = None,
) -> FastAPI:
    cfg = cfg or settings
    provider = provider or create_provider(cfg=cfg)
    if store is None:
        store = create_store(cfg)
    handler = ChatHandler(
        provider=provider,
        defaults=cfg.as_defaults(),
        policy=policy or RetryPolicy.from_settings(cfg),
        store=store,
        stall_ms=cfg.stall_ms,
        keepalive=cfg.keepalive_marker,
    )
    limiter = limiter or SlidingWindowLimiter(
        window_s=cfg.rate_limit_window_s,
        max_requests=cfg.rate_limit_max,
        enabled=cfg.is_production,
    )

    app = FastAPI(
        title="Chat Gateway",
        description="Streaming LLM proxy for the chat web app",
        version=chat_gateway.__version__,
    )
    app.state.settings = cfg
    app.state.handler = handler
    app.state.store = store
    app.state.limiter = limiter

    # CORS - tighten in production
    if cfg.allowed_origins.strip() == "*":
        cors_origins = ["*"]
    else:
        cors_origins = [o.strip() for o in cfg.allowed_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        address = request.client.host if request.client else None
        if request.url.path.startswith(cfg.api_prefix or "/") and not limiter.hit(address):
            logger.warning("request.rate_limited", extra={"extra": {"client": address}})
            return JSONResponse(status_code=429, content={"error": RATE_LIMITED_MESSAGE})
        return await call_next(request)

    @app.middleware("http")
    async def timing_log(request: Request, call_next):
        started = time.monotonic()
        response = await call_next(request)
        body = response.body_iterator

        async def timed_body():
            # 流式响应在正文写完后才记录，耗时覆盖整个流
            try:
                async for chunk in body:
                    yield chunk
            finally:
                elapsed = int((time.monotonic() - started) * 1000)
                logger.info(
                    f"[{request.method}] {request.url.path} -> {response.status_code} in {elapsed}ms",
                    extra={"extra": {"status": response.status_code, "ms": elapsed}},
                )

        response.body_iterator = timed_body()
        return response

    @app.exception_handler(BusinessError)
    async def business_error_handler(_request: Request, exc: BusinessError):
        if exc.http_status >= 500:
            logger.error("request.failed", extra={"extra": {"code": exc.code, "error": exc.message}})
        return JSONResponse(status_code=exc.http_status, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
            message = f"{loc}: {first.get('msg')}" if loc else str(first.get("msg"))
        else:
            message = "Invalid request"
        return JSONResponse(status_code=400, content={"error": message})

    app.include_router(chat.router, prefix=cfg.api_prefix)
    app.include_router(conversations.router, prefix=cfg.api_prefix)

    logger.info(
        "app.created",
        extra={
            "extra": {
                "provider": provider.name,
                "hasConversationStore": store is not None,
                "prod": cfg.is_production,
            }
        },
    )
    return app
