"""模型客户端测试：请求体组装与错误透传。"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from gtm_orchestrator.infra.model.client import ModelClient, ModelRequest


def _client(handler) -> ModelClient:
    return ModelClient(
        base_url="https://models.example.com/v1/",
        api_key="sk-test",
        model="test-model",
        default_max_tokens=256,
        transport=httpx.MockTransport(handler),
    )


def test_invoke_sends_chat_completion_and_returns_content() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"choices": [{"message": {"content": '{"ok": true}'}}]})

    reply = asyncio.run(_client(handler).invoke(ModelRequest(prompt="hello", schema={"type": "object"})))

    assert reply == '{"ok": true}'
    body = json.loads(seen[0].content)
    assert str(seen[0].url) == "https://models.example.com/v1/chat/completions"
    assert seen[0].headers["Authorization"] == "Bearer sk-test"
    assert body["model"] == "test-model"
    assert body["max_tokens"] == 256
    assert body["response_format"] == {"type": "json_object"}
    assert "JSON schema" in body["messages"][1]["content"]


def test_invoke_raises_on_http_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": "rate limited"})

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(_client(handler).invoke(ModelRequest(prompt="hello")))
