"""Gemini Provider 适配器。

本模块负责：

1. 接收统一的 ChatRequest。
2. 将其转换为 Generative Language REST API 的请求格式：
   - assistant 角色改写为 Gemini 的 "model"；
   - system 文本放进 systemInstruction，而不是消息列表。
3. 调用 :generateContent / :streamGenerateContent?alt=sse 并处理网络/API 异常。
4. 从候选结果中取出纯文本（或文本增量）。
"""

import json
from typing import Any, AsyncIterator, Dict, List

import httpx

from chat_gateway.domain.exceptions import UpstreamError, UpstreamTimeoutError
from chat_gateway.domain.models import ChatRequest, Message
from chat_gateway.providers.base import connection_error, raise_for_upstream
from chat_gateway.providers.registry import GEMINI_CONFIG


class GeminiClient:
    """Gemini 提供方客户端实现。"""

    name = "gemini"

    def __init__(self, settings):
        # Settings 里包含 base_url、api_key、超时等配置
        self._settings = settings

    # ---- 非流式 ----

    async def complete_once(self, req: ChatRequest) -> str:
        self._require_key()
        payload = self._build_payload(req)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.post(
                    self._url(req.model, "generateContent"),
                    params={"key": self._settings.gemini_api_key},
                    json=payload,
                )
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"Timeout: {e}" if str(e) else "Timeout: upstream too slow")
        except httpx.RequestError as e:
            # 只有连接重置类的网络错误会被重试；DNS 失败、连接被拒绝等直接上抛
            raise connection_error(e, self.name)
        raise_for_upstream(resp.status_code, resp.text, self.name, req.model)
        return self._extract_text(resp.json())

    # ---- 流式 ----

    async def complete_streaming(self, req: ChatRequest) -> AsyncIterator[str]:
        self._require_key()
        payload = self._build_payload(req)
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                async with client.stream(
                    "POST",
                    self._url(req.model, "streamGenerateContent"),
                    params={"alt": "sse", "key": self._settings.gemini_api_key},
                    json=payload,
                ) as resp:
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        raise_for_upstream(resp.status_code, body.decode("utf-8", "replace"), self.name, req.model)
                    async for line in resp.aiter_lines():
                        data_str = line.strip()
                        if data_str.startswith("data:"):
                            data_str = data_str[5:].strip()
                        if not data_str:
                            continue
                        try:
                            chunk = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        if isinstance(chunk, dict) and chunk.get("error"):
                            err = chunk["error"]
                            code = err.get("code") if isinstance(err, dict) else None
                            raise_for_upstream(int(code or 500), json.dumps(chunk), self.name, req.model)
                        delta = self._chunk_text(chunk)
                        if delta:
                            yield delta
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(f"Timeout: {e}" if str(e) else "Timeout: upstream too slow")
        except httpx.RequestError as e:
            raise connection_error(e, self.name)

    # ---- 辅助方法 ----

    def _require_key(self) -> None:
        if not getattr(self._settings, "gemini_api_key", None):
            raise UpstreamError("Missing GEMINI_API_KEY", code="MISSING_API_KEY")

    def _url(self, model: str, method: str) -> str:
        base = (getattr(self._settings, "gemini_base_url", None) or GEMINI_CONFIG.base_url).rstrip("/")
        return f"{base}/models/{model}:{method}"

    def _build_payload(self, req: ChatRequest) -> Dict[str, Any]:
        """将 ChatRequest 转成 Gemini 所需的请求 JSON。"""

        system_parts = [req.system] if req.system and req.system.strip() else []
        contents: List[Dict[str, Any]] = []
        for m in req.messages:
            if m.role == "system":
                # Gemini 的 contents 里没有 system 角色，并入 systemInstruction
                system_parts.append(m.content)
                continue
            contents.append(self._message_to_payload(m))
        payload: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": req.temperature,
                "maxOutputTokens": req.max_output_tokens,
            },
        }
        if system_parts:
            payload["systemInstruction"] = {"parts": [{"text": "\n\n".join(system_parts)}]}
        return payload

    @staticmethod
    def _message_to_payload(message: Message) -> Dict[str, Any]:
        role = GEMINI_CONFIG.assistant_role if message.role == "assistant" else "user"
        return {"role": role, "parts": [{"text": message.content or ""}]}

    @staticmethod
    def _chunk_text(data: Any) -> str:
        if not isinstance(data, dict):
            return ""
        texts: List[str] = []
        for candidate in data.get("candidates") or []:
            content = candidate.get("content") or {}
            for part in content.get("parts") or []:
                text = part.get("text")
                if text:
                    texts.append(text)
            # 只取第一个候选
            break
        return "".join(texts)

    def _extract_text(self, payload: Dict[str, Any]) -> str:
        feedback = payload.get("promptFeedback") or {}
        if not payload.get("candidates") and feedback.get("blockReason"):
            raise UpstreamError(f"Blocked by upstream: {feedback['blockReason']}", provider=self.name)
        return self._chunk_text(payload)
