"""
Text embedding backends.

- EmbeddingClient: OpenAI-compatible ``/embeddings`` endpoint over httpx
  (default model text-embedding-3-small).
- SentenceTransformerEmbedder: local SentenceTransformers model, run in the
  default executor so encoding never blocks the event loop.

Both expose ``model_name``, ``embed(text)`` and ``embed_batch(texts)`` and
return float32 numpy vectors. Failures surface as ``EmbeddingError``.
"""
import asyncio
import time
from functools import partial
from typing import List, Optional

import httpx
import numpy as np

from crm_ai.core.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError, get_circuit_breaker
from crm_ai.core.config import get_settings
from crm_ai.core.logging import get_logger
from crm_ai.core.metrics import record_upstream_error
from crm_ai.services.ai.errors import EmbeddingError

logger = get_logger(__name__)

LOCAL_MODEL_NAME = "all-MiniLM-L6-v2"


class EmbeddingClient:
    """Async HTTP client for the embeddings endpoint."""

    def __init__(
        self,
        api_base: str,
        api_key: Optional[str],
        model: str = "text-embedding-3-small",
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.api_base = api_base.rstrip("/")
        self.api_key = api_key
        self._model_name = model
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self.circuit_breaker = circuit_breaker or get_circuit_breaker("embeddings")

    @property
    def model_name(self) -> str:
        return self._model_name

    async def _post(self, texts: List[str]) -> dict:
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.post(
                f"{self.api_base}/embeddings",
                headers=headers,
                json={"model": self._model_name, "input": texts},
            )
            response.raise_for_status()
            return response.json()

    async def embed_batch(self, texts: List[str]) -> List[np.ndarray]:
        if not texts:
            return []
        if not self.api_key:
            record_upstream_error("embedding", "missing_api_key")
            raise EmbeddingError("Embedding API key not configured")

        start = time.time()
        try:
            data = await self.circuit_breaker.call_async(self._post, texts)
        except CircuitBreakerOpenError as exc:
            record_upstream_error("embedding", "circuit_open")
            raise EmbeddingError(str(exc)) from exc
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            record_upstream_error("embedding", f"http_{status_code}")
            logger.warning("embedding_http_error", status_code=status_code, error=str(exc))
            raise EmbeddingError(f"Embedding API returned HTTP {status_code}", status_code=status_code) from exc
        except (httpx.HTTPError, ValueError) as exc:
            record_upstream_error("embedding", type(exc).__name__)
            logger.warning(
                "embedding_request_failed",
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise EmbeddingError(str(exc) or type(exc).__name__) from exc

        items = sorted(data.get("data") or [], key=lambda item: item.get("index", 0))
        if len(items) != len(texts):
            record_upstream_error("embedding", "count_mismatch")
            raise EmbeddingError(f"Expected {len(texts)} embeddings, got {len(items)}")

        logger.debug(
            "embedding_batch_completed",
            count=len(texts),
            model=self._model_name,
            duration_ms=int((time.time() - start) * 1000),
        )
        return [np.asarray(item["embedding"], dtype=np.float32) for item in items]

    async def embed(self, text: str) -> np.ndarray:
        return (await self.embed_batch([text]))[0]


class SentenceTransformerEmbedder:
    """Embedder using a local SentenceTransformers model (loaded on first use)."""

    def __init__(self, model: str = LOCAL_MODEL_NAME, device: str = "cpu", batch_size: int = 32):
        self._model_name = model
        self._device = device
        self._batch_size = batch_size
        self._model = None

    @property
    def model_name(self) -> str:
        return self._model_name

    def _load(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info("embedding_model_loading", model_name=self._model_name, device=self._device)
            start = time.time()
            self._model = SentenceTransformer(self._model_name, device=self._device)
            logger.info(
                "embedding_model_loaded",
                model_name=self._model_name,
                load_time_ms=int((time.time() - start) * 1000),
            )
        return self._model

    def _encode(self, texts: List[str]) -> np.ndarray:
        return self._load().encode(texts, batch_size=self._batch_size, convert_to_numpy=True)

    async def embed_batch(self, texts: List[str]) -> List[np.ndarray]:
        if not texts:
            return []
        loop = asyncio.get_running_loop()
        try:
            embeddings = await loop.run_in_executor(None, partial(self._encode, texts))
        except Exception as exc:
            record_upstream_error("embedding", type(exc).__name__)
            logger.error(
                "embedding_model_failed",
                model_name=self._model_name,
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=True,
            )
            raise EmbeddingError(str(exc)) from exc
        return [np.asarray(row, dtype=np.float32) for row in embeddings]

    async def embed(self, text: str) -> np.ndarray:
        return (await self.embed_batch([text]))[0]


_embedder = None


def get_embedder():
    """Global embedder selected by EMBEDDING_BACKEND (api | local)."""
    global _embedder
    if _embedder is None:
        settings = get_settings()
        if settings.embedding_backend == "local":
            model = settings.embedding_model
            if model == "text-embedding-3-small":
                model = LOCAL_MODEL_NAME
            _embedder = SentenceTransformerEmbedder(model=model)
        else:
            _embedder = EmbeddingClient(
                api_base=settings.llm_api_base,
                api_key=settings.llm_api_key,
                model=settings.embedding_model,
                timeout_seconds=settings.llm_timeout_seconds,
            )
        logger.info(
            "embedder_initialized",
            backend=settings.embedding_backend,
            model_name=_embedder.model_name,
        )
    return _embedder
