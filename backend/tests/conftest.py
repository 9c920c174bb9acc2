"""
Shared fakes and fixtures.

No test performs a real network call: the LLM and embedder are in-memory
stubs, stores are the in-memory implementations.
"""
import hashlib
import re
from typing import Any, Dict, List, Optional

import numpy as np
import pytest

from crm_ai.services.ai.cache import ResponseCache
from crm_ai.services.ai.content_filter import ContentSafetyFilter
from crm_ai.services.ai.errors import LLMError
from crm_ai.services.ai.llm_client import ChatCompletion
from crm_ai.services.ai.orchestration import AIOrchestrator
from crm_ai.services.ai.persistence import InMemoryAuditRepository, InMemoryUsageStore
from crm_ai.services.ai.quota import QuotaTracker
from crm_ai.services.ai.schema import Usage
from crm_ai.services.rag.vector_store import VectorStore

EMBEDDING_DIM = 64


class FakeEmbedder:
    """Deterministic bag-of-words embedder: shared words -> higher cosine similarity."""

    def __init__(self, model_name: str = "fake-embedder", fail_on: Optional[str] = None):
        self._model_name = model_name
        self.fail_on = fail_on
        self.calls = 0

    @property
    def model_name(self) -> str:
        return self._model_name

    def _vector(self, text: str) -> np.ndarray:
        vector = np.zeros(EMBEDDING_DIM, dtype=np.float32)
        vector[0] = 0.01
        for word in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.sha256(word.encode()).hexdigest()[:8], 16) % (EMBEDDING_DIM - 1)
            vector[bucket + 1] += 1.0
        return vector

    async def embed(self, text: str) -> np.ndarray:
        self.calls += 1
        if self.fail_on and self.fail_on in text:
            raise RuntimeError("embedding backend unavailable")
        return self._vector(text)

    async def embed_batch(self, texts: List[str]) -> List[np.ndarray]:
        return [await self.embed(t) for t in texts]


class FakeLLMClient:
    """Stub LLM that returns a fixed completion and records every call."""

    def __init__(
        self,
        content: str = "Follow up with the buyer this week and share the ROI case study.",
        completion_tokens: int = 60,
        error: Optional[Exception] = None,
        model: str = "gpt-4",
    ):
        self.content = content
        self.completion_tokens = completion_tokens
        self.error = error
        self.model = model
        self.calls: List[Dict[str, Any]] = []

    async def chat(self, messages, model=None, max_tokens=500, **kwargs) -> ChatCompletion:
        self.calls.append({"messages": messages, "model": model, "max_tokens": max_tokens, **kwargs})
        if self.error is not None:
            raise self.error
        return ChatCompletion(
            content=self.content,
            model=model or self.model,
            usage=Usage(prompt_tokens=40, completion_tokens=self.completion_tokens),
            finish_reason="stop",
        )


class FailingAuditRepository(InMemoryAuditRepository):
    """Audit log whose writes always fail (reads still work)."""

    async def append(self, entry) -> None:
        raise RuntimeError("audit store down")


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def vector_store(embedder):
    store = VectorStore(embedder)
    store.initialize()
    return store


@pytest.fixture
def audit_repository():
    return InMemoryAuditRepository()


@pytest.fixture
def usage_store():
    return InMemoryUsageStore()


@pytest.fixture
def quota_tracker(audit_repository):
    return QuotaTracker(audit_repository, daily_limit=5)


@pytest.fixture
def response_cache():
    return ResponseCache(ttl_seconds=900, max_entries=100)


@pytest.fixture
def content_filter():
    return ContentSafetyFilter()


@pytest.fixture
def llm():
    return FakeLLMClient()


@pytest.fixture
def failing_llm():
    return FakeLLMClient(error=LLMError("LLM returned HTTP 503", status_code=503))


@pytest.fixture
def orchestrator(llm, content_filter, quota_tracker, response_cache, audit_repository, usage_store, vector_store):
    return AIOrchestrator(
        llm_client=llm,
        content_filter=content_filter,
        quota_tracker=quota_tracker,
        response_cache=response_cache,
        audit_repository=audit_repository,
        usage_store=usage_store,
        vector_store=vector_store,
    )
