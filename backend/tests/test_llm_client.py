"""
Unit tests for the OpenAI-compatible LLM client.

HTTP is served by ``httpx.MockTransport``; no real network calls.
"""
import json

import httpx
import pytest

from crm_ai.core.circuit_breaker import CircuitBreaker
from crm_ai.services.ai.errors import LLMError, ModerationError
from crm_ai.services.ai.llm_client import LLMClient


def make_client(handler, api_key="test-key", **breaker_kwargs):
    return LLMClient(
        api_base="https://llm.test/v1/",
        api_key=api_key,
        model="gpt-4",
        transport=httpx.MockTransport(handler),
        chat_breaker=CircuitBreaker("test_chat", **breaker_kwargs),
        moderation_breaker=CircuitBreaker("test_moderation", **breaker_kwargs),
    )


def completion(content="Schedule a follow-up call.", model="gpt-4-0613"):
    return {
        "model": model,
        "choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 8},
    }


@pytest.mark.asyncio
async def test_chat_sends_request_and_parses_response():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=completion())

    client = make_client(handler)
    result = await client.chat(
        [{"role": "system", "content": "s"}, {"role": "user", "content": "u"}],
        max_tokens=100,
        temperature=0.2,
    )

    assert seen["url"] == "https://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"]["model"] == "gpt-4"
    assert seen["body"]["max_tokens"] == 100
    assert seen["body"]["temperature"] == 0.2
    assert seen["body"]["top_p"] == 1.0
    assert "response_format" not in seen["body"]

    assert result.content == "Schedule a follow-up call."
    assert result.model == "gpt-4-0613"
    assert result.usage.prompt_tokens == 12
    assert result.usage.total_tokens == 20


@pytest.mark.asyncio
async def test_chat_without_key_fails_fast():
    def handler(request):  # pragma: no cover - never reached
        raise AssertionError("no request expected")

    client = make_client(handler, api_key=None)
    assert not client.configured
    with pytest.raises(LLMError):
        await client.chat([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_chat_http_error_carries_status():
    client = make_client(lambda request: httpx.Response(503, json={"error": "overloaded"}))
    with pytest.raises(LLMError) as exc_info:
        await client.chat([{"role": "user", "content": "hi"}])
    assert exc_info.value.status_code == 503


@pytest.mark.asyncio
async def test_chat_timeout_is_wrapped():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client = make_client(handler)
    with pytest.raises(LLMError, match="timed out"):
        await client.chat([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_chat_empty_content_is_an_error():
    client = make_client(lambda request: httpx.Response(200, json=completion(content="  ")))
    with pytest.raises(LLMError, match="no content"):
        await client.chat([{"role": "user", "content": "hi"}])


@pytest.mark.asyncio
async def test_open_circuit_short_circuits():
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        return httpx.Response(500)

    client = make_client(handler, min_requests_for_threshold=2, failure_threshold=0.5)
    for _ in range(2):
        with pytest.raises(LLMError):
            await client.chat([{"role": "user", "content": "hi"}])

    with pytest.raises(LLMError, match="OPEN"):
        await client.chat([{"role": "user", "content": "hi"}])
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_moderate_flagged_categories():
    body = {
        "results": [
            {"flagged": True, "categories": {"harassment": True, "violence": False, "hate": True}}
        ]
    }
    client = make_client(lambda request: httpx.Response(200, json=body))
    result = await client.moderate("text")
    assert result.flagged
    assert result.categories == ["harassment", "hate"]


@pytest.mark.asyncio
async def test_moderate_auth_error():
    client = make_client(lambda request: httpx.Response(401, json={"error": "bad key"}))
    with pytest.raises(ModerationError) as exc_info:
        await client.moderate("text")
    assert exc_info.value.is_auth_error


@pytest.mark.asyncio
async def test_moderate_without_key_is_auth_error():
    client = make_client(lambda request: httpx.Response(200), api_key=None)
    with pytest.raises(ModerationError) as exc_info:
        await client.moderate("text")
    assert exc_info.value.status_code == 401
