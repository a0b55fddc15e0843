"""模型调用客户端：以 OpenAI 兼容的 chat-completions 接口执行模型步骤。"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = (
    "You are a revenue operations analyst. Answer only from the data provided. "
    "When a JSON schema is given, reply with a single JSON document that matches it."
)


@dataclass(slots=True)
class ModelRequest:
    """单次模型调用请求。"""
    prompt: str
    schema: dict[str, Any] | None = None
    capability: str = "reason"
    max_tokens: int | None = None
    temperature: float | None = None
    metadata: dict[str, str] = field(default_factory=dict)


class ModelInvoker(Protocol):
    """模型调用协议：返回模型原始文本。"""

    async def invoke(self, request: ModelRequest) -> str: ...


class ModelClient:
    """OpenAI 兼容接口的异步客户端。

    每次调用独立创建 AsyncClient，技能运行可能位于不同线程各自的事件循环中。
    """
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        model: str,
        timeout_seconds: int = 60,
        default_max_tokens: int = 4096,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._timeout_seconds = timeout_seconds
        self._default_max_tokens = default_max_tokens
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _body(self, request: ModelRequest) -> dict[str, Any]:
        user_content = request.prompt
        if request.schema:
            user_content = f"{request.prompt}\n\nJSON schema:\n{json.dumps(request.schema, ensure_ascii=False)}"
        body: dict[str, Any] = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": user_content},
            ],
            "max_tokens": request.max_tokens or self._default_max_tokens,
        }
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.schema:
            body["response_format"] = {"type": "json_object"}
        return body

    async def invoke(self, request: ModelRequest) -> str:
        """发送请求并返回首个 choice 的文本内容。"""
        started = time.perf_counter()
        op = f"chat.completions.{request.capability}"
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self._timeout_seconds),
                headers=self._headers(),
                transport=self._transport,
            ) as client:
                response = await client.post("/chat/completions", json=self._body(request))
                response.raise_for_status()
            payload = response.json()
            content = payload["choices"][0]["message"]["content"]
        except Exception as exc:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            status_code = None
            if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
                status_code = exc.response.status_code
            logger.error(
                "model request failed",
                extra={
                    "event": "model.request.failed",
                    "external_service": "model",
                    "op": op,
                    "duration_ms": duration_ms,
                    "status_code": status_code,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                    "payload_preview": request.metadata or None,
                },
            )
            raise
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "model request succeeded",
            extra={
                "event": "model.request.succeeded",
                "external_service": "model",
                "op": op,
                "duration_ms": duration_ms,
                "status_code": response.status_code,
                "payload_preview": request.metadata or None,
            },
        )
        return str(content or "")
