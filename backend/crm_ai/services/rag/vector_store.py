"""
Vector store for RAG context using FAISS.

Four fixed collections (deals, objections, interactions, personas), each a
cosine-similarity index: vectors are L2-normalised and stored in an
``IndexIDMap2(IndexFlatIP)``, so inner product equals cosine similarity and
``distance = 1 - cosine``.

- ``upsert`` embeds the text itself; callers never pass vectors. A second
  upsert with the same id replaces the previous vector, text and metadata.
- ``query`` embeds the query text the same way, applies an optional
  metadata equality filter, and returns hits nearest-first, truncated to
  ``top_k``.
- Every collection remembers the embedding model it was built with and every
  record carries it in its metadata; querying or upserting with a different
  model raises ``EmbeddingModelMismatchError``.

With ``persist_dir`` set, each collection is saved as ``<name>.index`` plus a
``<name>.json`` sidecar and reloaded by ``initialize()``.
"""
import json
import time
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import faiss
import numpy as np

from crm_ai.core.config import get_settings
from crm_ai.core.logging import get_logger
from crm_ai.core.metrics import update_collection_size
from crm_ai.services.ai.errors import EmbeddingModelMismatchError, VectorStoreError
from crm_ai.services.ai.schema import EmbeddingRecord, SimilarityResult

logger = get_logger(__name__)


class CollectionName(str, Enum):
    DEALS = "deals"
    OBJECTIONS = "objections"
    INTERACTIONS = "interactions"
    PERSONAS = "personas"

    @property
    def index_name(self) -> str:
        return _INDEX_NAMES[self]


_INDEX_NAMES = {
    CollectionName.DEALS: "historical_deals",
    CollectionName.OBJECTIONS: "objection_responses",
    CollectionName.INTERACTIONS: "customer_interactions",
    CollectionName.PERSONAS: "customer_personas",
}


def _normalize(vector: np.ndarray) -> np.ndarray:
    vector = np.asarray(vector, dtype=np.float32).reshape(1, -1)
    norm = np.linalg.norm(vector)
    if norm == 0 or not np.isfinite(norm):
        raise VectorStoreError("Cannot index a zero or non-finite vector")
    return vector / norm


def _matches(metadata: Dict[str, Any], where: Dict[str, Any]) -> bool:
    for key, expected in where.items():
        actual = metadata.get(key)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


class VectorCollection:
    """One named FAISS index plus its id/document/metadata maps."""

    def __init__(self, name: CollectionName):
        self.name = name
        self.dimension: Optional[int] = None
        self.embedding_model: Optional[str] = None
        self.index: Optional[faiss.Index] = None
        self._label_by_id: Dict[str, int] = {}
        self._id_by_label: Dict[int, str] = {}
        self.documents: Dict[str, str] = {}
        self.metadata: Dict[str, Dict[str, Any]] = {}
        self.indexed_at: Dict[str, datetime] = {}
        self._next_label = 0

    def __len__(self) -> int:
        return len(self._label_by_id)

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._label_by_id

    def _ensure_index(self, dimension: int) -> None:
        if self.index is None:
            self.dimension = dimension
            self.index = faiss.IndexIDMap2(faiss.IndexFlatIP(dimension))
        elif dimension != self.dimension:
            raise VectorStoreError(
                f"Vector dimension {dimension} does not match collection "
                f"{self.name.value} dimension {self.dimension}"
            )

    def check_model(self, model: str) -> None:
        if self.embedding_model is not None and self.embedding_model != model:
            raise EmbeddingModelMismatchError(self.name.value, self.embedding_model, model)

    def add(self, record_id: str, vector: np.ndarray, document: str, metadata: Dict[str, Any], model: str) -> datetime:
        normalized = _normalize(vector)
        self._ensure_index(normalized.shape[1])
        self.check_model(model)
        self.remove(record_id)

        label = self._next_label
        self._next_label += 1
        self.index.add_with_ids(normalized, np.array([label], dtype=np.int64))
        self._label_by_id[record_id] = label
        self._id_by_label[label] = record_id
        self.documents[record_id] = document
        self.metadata[record_id] = metadata
        indexed_at = datetime.now(timezone.utc)
        self.indexed_at[record_id] = indexed_at
        self.embedding_model = model
        return indexed_at

    def remove(self, record_id: str) -> bool:
        label = self._label_by_id.pop(record_id, None)
        if label is None:
            return False
        self.index.remove_ids(np.array([label], dtype=np.int64))
        del self._id_by_label[label]
        self.documents.pop(record_id, None)
        self.metadata.pop(record_id, None)
        self.indexed_at.pop(record_id, None)
        return True

    def vector(self, record_id: str) -> Optional[np.ndarray]:
        label = self._label_by_id.get(record_id)
        if label is None:
            return None
        return self.index.reconstruct(label)

    def search(self, query: np.ndarray, k: int) -> List[Tuple[str, float]]:
        if self.index is None or len(self) == 0:
            return []
        normalized = _normalize(query)
        if normalized.shape[1] != self.dimension:
            raise VectorStoreError(
                f"Query dimension {normalized.shape[1]} does not match collection "
                f"{self.name.value} dimension {self.dimension}"
            )
        scores, labels = self.index.search(normalized, min(k, len(self)))
        hits = []
        for score, label in zip(scores[0], labels[0]):
            if label < 0:
                continue
            record_id = self._id_by_label.get(int(label))
            if record_id is not None:
                hits.append((record_id, float(score)))
        return hits

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, directory: Path) -> None:
        if self.index is None:
            return
        directory.mkdir(parents=True, exist_ok=True)
        faiss.write_index(self.index, str(directory / f"{self.name.index_name}.index"))
        sidecar = {
            "collection": self.name.value,
            "dimension": self.dimension,
            "embedding_model": self.embedding_model,
            "next_label": self._next_label,
            "records": {
                record_id: {
                    "label": label,
                    "document": self.documents[record_id],
                    "metadata": self.metadata[record_id],
                    "indexed_at": self.indexed_at[record_id].isoformat(),
                }
                for record_id, label in self._label_by_id.items()
            },
        }
        with open(directory / f"{self.name.index_name}.json", "w") as f:
            json.dump(sidecar, f, default=str)

    def load(self, directory: Path) -> bool:
        index_path = directory / f"{self.name.index_name}.index"
        sidecar_path = directory / f"{self.name.index_name}.json"
        if not index_path.exists() or not sidecar_path.exists():
            return False

        self.index = faiss.read_index(str(index_path))
        with open(sidecar_path, "r") as f:
            sidecar = json.load(f)

        self.dimension = sidecar.get("dimension") or self.index.d
        self.embedding_model = sidecar.get("embedding_model")
        self._next_label = int(sidecar.get("next_label", 0))
        for record_id, record in sidecar.get("records", {}).items():
            label = int(record["label"])
            self._label_by_id[record_id] = label
            self._id_by_label[label] = record_id
            self.documents[record_id] = record.get("document", "")
            self.metadata[record_id] = record.get("metadata", {})
            self.indexed_at[record_id] = datetime.fromisoformat(record["indexed_at"])

        if self.index.ntotal != len(self._label_by_id):
            logger.warning(
                "vector_collection_sidecar_mismatch",
                collection=self.name.value,
                index_total=self.index.ntotal,
                sidecar_total=len(self._label_by_id),
            )
        return True


class VectorStore:
    """Named cosine-similarity collections of embedded documents."""

    def __init__(self, embedder, persist_dir: Optional[str] = None):
        self.embedder = embedder
        self.persist_dir = Path(persist_dir) if persist_dir else None
        self.collections: Dict[CollectionName, VectorCollection] = {
            name: VectorCollection(name) for name in CollectionName
        }
        self._initialized = False

    @property
    def model_name(self) -> str:
        return self.embedder.model_name

    def _collection(self, collection) -> VectorCollection:
        try:
            return self.collections[CollectionName(collection)]
        except ValueError as exc:
            raise VectorStoreError(f"Unknown collection: {collection}") from exc

    def initialize(self) -> None:
        """Load persisted collections (if any). Safe to call more than once."""
        if self._initialized:
            return
        if self.persist_dir is not None:
            for name, collection in self.collections.items():
                start = time.time()
                if collection.load(self.persist_dir):
                    update_collection_size(name.value, len(collection))
                    logger.info(
                        "vector_collection_loaded",
                        collection=name.value,
                        count=len(collection),
                        embedding_model=collection.embedding_model,
                        load_time_ms=int((time.time() - start) * 1000),
                    )
        self._initialized = True

    def persist(self) -> None:
        """Write every non-empty collection to ``persist_dir``."""
        if self.persist_dir is None:
            return
        for collection in self.collections.values():
            collection.save(self.persist_dir)
        logger.info("vector_store_persisted", persist_dir=str(self.persist_dir))

    async def upsert(
        self,
        collection,
        record_id: str,
        text: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EmbeddingRecord:
        """Embed ``text`` and store it under ``record_id``, replacing any prior record."""
        target = self._collection(collection)
        if not text or not text.strip():
            raise VectorStoreError(f"Cannot index empty text for {target.name.value}/{record_id}")

        model = self.model_name
        target.check_model(model)
        vector = await self.embedder.embed(text.strip())

        stored_metadata = dict(metadata or {})
        stored_metadata["embedding_model"] = model
        indexed_at = target.add(record_id, vector, text, stored_metadata, model)
        update_collection_size(target.name.value, len(target))

        return EmbeddingRecord(
            collection=target.name.value,
            id=record_id,
            vector=np.asarray(vector, dtype=np.float32).tolist(),
            document=text,
            metadata=stored_metadata,
            indexed_at=indexed_at,
        )

    async def query(
        self,
        collection,
        text: str,
        top_k: int = 5,
        where: Optional[Dict[str, Any]] = None,
    ) -> List[SimilarityResult]:
        """Nearest records to ``text``, most similar first."""
        target = self._collection(collection)
        if top_k <= 0 or len(target) == 0:
            return []
        if not text or not text.strip():
            raise VectorStoreError("Query text cannot be empty")

        target.check_model(self.model_name)
        where = {k: v for k, v in (where or {}).items() if v is not None}
        vector = await self.embedder.embed(text.strip())

        # Metadata filtering happens after the search, so scan everything when filtering.
        k = len(target) if where else top_k
        results = []
        for record_id, score in target.search(vector, k):
            metadata = target.metadata.get(record_id, {})
            if where and not _matches(metadata, where):
                continue
            distance = 1.0 - score
            results.append(
                SimilarityResult(
                    id=record_id,
                    metadata=metadata,
                    document=target.documents.get(record_id, ""),
                    similarity=min(1.0, max(0.0, 1.0 - distance)),
                    distance=distance,
                )
            )
            if len(results) >= top_k:
                break

        logger.debug(
            "vector_query_completed",
            collection=target.name.value,
            top_k=top_k,
            filters=sorted(where),
            results=len(results),
        )
        return results

    async def delete(self, collection, record_id: str) -> bool:
        target = self._collection(collection)
        removed = target.remove(record_id)
        if removed:
            update_collection_size(target.name.value, len(target))
        return removed

    def get(self, collection, record_id: str) -> Optional[EmbeddingRecord]:
        target = self._collection(collection)
        if record_id not in target:
            return None
        return EmbeddingRecord(
            collection=target.name.value,
            id=record_id,
            vector=target.vector(record_id).tolist(),
            document=target.documents[record_id],
            metadata=target.metadata[record_id],
            indexed_at=target.indexed_at[record_id],
        )

    async def stats(self, collection=None) -> Dict[str, Any]:
        """Counts for one collection, or for every collection when none is given."""
        if collection is not None:
            target = self._collection(collection)
            return {
                "name": target.name.value,
                "index_name": target.name.index_name,
                "count": len(target),
                "dimension": target.dimension,
                "embedding_model": target.embedding_model,
            }
        return {name.value: await self.stats(name) for name in CollectionName}

    async def health_check(self) -> Dict[str, Any]:
        try:
            collections = await self.stats()
        except Exception as e:
            logger.error("vector_store_health_check_failed", error=str(e), error_type=type(e).__name__)
            return {"status": "unhealthy", "error": str(e)}
        return {
            "status": "healthy",
            "embedding_model": self.model_name,
            "collections": collections,
        }


_vector_store: Optional[VectorStore] = None


def get_vector_store() -> VectorStore:
    """Global vector store using the configured embedder."""
    global _vector_store
    if _vector_store is None:
        from crm_ai.services.ai.embedding_client import get_embedder

        _vector_store = VectorStore(get_embedder(), persist_dir=get_settings().vector_store_dir)
        _vector_store.initialize()
    return _vector_store
