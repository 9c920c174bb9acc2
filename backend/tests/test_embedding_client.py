"""
Unit tests for the embeddings HTTP client.
"""
import json

import httpx
import numpy as np
import pytest

from crm_ai.core.circuit_breaker import CircuitBreaker
from crm_ai.services.ai.embedding_client import EmbeddingClient
from crm_ai.services.ai.errors import EmbeddingError


def make_client(handler, api_key="test-key"):
    return EmbeddingClient(
        api_base="https://llm.test/v1",
        api_key=api_key,
        model="text-embedding-3-small",
        transport=httpx.MockTransport(handler),
        circuit_breaker=CircuitBreaker("test_embeddings"),
    )


@pytest.mark.asyncio
async def test_embed_batch_orders_by_index():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "data": [
                    {"index": 1, "embedding": [0.0, 1.0]},
                    {"index": 0, "embedding": [1.0, 0.0]},
                ]
            },
        )

    client = make_client(handler)
    vectors = await client.embed_batch(["first", "second"])

    assert seen["body"] == {"model": "text-embedding-3-small", "input": ["first", "second"]}
    assert client.model_name == "text-embedding-3-small"
    assert vectors[0].dtype == np.float32
    np.testing.assert_allclose(vectors[0], [1.0, 0.0])
    np.testing.assert_allclose(vectors[1], [0.0, 1.0])


@pytest.mark.asyncio
async def test_embed_single():
    client = make_client(lambda request: httpx.Response(200, json={"data": [{"index": 0, "embedding": [0.5, 0.5]}]}))
    vector = await client.embed("hello")
    np.testing.assert_allclose(vector, [0.5, 0.5])


@pytest.mark.asyncio
async def test_empty_batch_makes_no_request():
    def handler(request):  # pragma: no cover - never reached
        raise AssertionError("no request expected")

    assert await make_client(handler).embed_batch([]) == []


@pytest.mark.asyncio
async def test_count_mismatch_is_an_error():
    client = make_client(lambda request: httpx.Response(200, json={"data": []}))
    with pytest.raises(EmbeddingError):
        await client.embed("hello")


@pytest.mark.asyncio
async def test_http_error_is_wrapped():
    client = make_client(lambda request: httpx.Response(429))
    with pytest.raises(EmbeddingError) as exc_info:
        await client.embed("hello")
    assert exc_info.value.status_code == 429


@pytest.mark.asyncio
async def test_missing_key():
    client = make_client(lambda request: httpx.Response(200), api_key=None)
    with pytest.raises(EmbeddingError):
        await client.embed("hello")
