"""OpenAI 兼容 Provider 适配器。

接口风格与 OpenAI/GLM/Kimi 一致，均使用 chat/completions 端点：
- URL: {base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>

本实现只依赖公共字段：model/messages/temperature/max_tokens/stream。
"""

import json
from typing import Any, AsyncIterator, Dict, List

import httpx

from chat_gateway.domain.exceptions import UpstreamError, UpstreamTimeoutError
from chat_gateway.domain.models import ChatRequest
from chat_gateway.providers.base import connection_error, raise_for_upstream
from chat_gateway.providers.registry import OPENAI_CONFIG


class OpenAICompatClient:
    """OpenAI 兼容 Provider 客户端实现。"""

    name = "openai"

    def __init__(self, settings):
        self._settings = settings

    # ---- 非流式 ----

    async def complete_once(self, req: ChatRequest) -> str:
        self._require_key()
        payload = self._build_payload(req, stream=False)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(
                    f"{self._base()}/chat/completions",
                    json=payload,
                    headers=self._headers(),
                )
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"Timeout: {e}" if str(e) else "Timeout: upstream too slow")
        except httpx.RequestError as e:
            raise connection_error(e, self.name)
        raise_for_upstream(resp.status_code, resp.text, self.name, req.model)
        data = resp.json()
        choices = data.get("choices") or []
        if not choices:
            return ""
        return (choices[0].get("message") or {}).get("content") or ""

    # ---- 流式 ----

    async def complete_streaming(self, req: ChatRequest) -> AsyncIterator[str]:
        self._require_key()
        payload = self._build_payload(req, stream=True)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    f"{self._base()}/chat/completions",
                    json=payload,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        raise_for_upstream(resp.status_code, body.decode("utf-8", "replace"), self.name, req.model)
                    async for line in resp.aiter_lines():
                        if not line:
                            continue
                        data_str = line
                        if data_str.startswith("data:"):
                            data_str = data_str[5:].strip()
                        else:
                            data_str = data_str.strip()
                        if not data_str or data_str == "[DONE]":
                            continue
                        try:
                            chunk = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        if chunk.get("error"):
                            raise_for_upstream(500, json.dumps(chunk), self.name, req.model)
                        for ch in chunk.get("choices") or []:
                            delta = (ch.get("delta") or {}).get("content")
                            if delta:
                                yield delta
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"Timeout: {e}" if str(e) else "Timeout: upstream too slow")
        except httpx.RequestError as e:
            raise connection_error(e, self.name)

    # ---- 辅助方法 ----

    def _require_key(self) -> None:
        if not getattr(self._settings, "openai_api_key", None):
            raise UpstreamError("Missing OPENAI_API_KEY", code="MISSING_API_KEY")

    def _base(self) -> str:
        return (getattr(self._settings, "openai_base_url", None) or OPENAI_CONFIG.base_url).rstrip("/")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.openai_api_key}",
            "Content-Type": "application/json",
        }

    def _build_payload(self, req: ChatRequest, stream: bool) -> Dict[str, Any]:
        msgs: List[Dict[str, Any]] = []
        if req.system and req.system.strip():
            msgs.append({"role": "system", "content": req.system})
        for m in req.messages:
            role = OPENAI_CONFIG.assistant_role if m.role == "assistant" else m.role
            msgs.append({"role": role, "content": m.content or ""})
        return {
            "model": req.model,
            "messages": msgs,
            "temperature": req.temperature,
            "max_tokens": req.max_output_tokens,
            "stream": stream,
        }
