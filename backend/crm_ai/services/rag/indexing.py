"""
RAG indexing pipeline.

Keeps the vector store consistent with "qualifying" CRM state:
- Closed deals                 -> deals collection
- Resolved objections          -> objections collection
- Interactions with notes      -> interactions collection

Modes:
- Full index: page through every qualifying entity, in fixed-size batches.
  Records within a batch run concurrently with settle-all semantics, so one
  failing record is logged and skipped without affecting the others.
- Targeted re-index: upsert one entity if it still qualifies, delete it
  otherwise (or when it no longer exists).
- Reconciliation: every entity changed within a trailing window (qualifying
  or not) is upserted or deleted, correcting missed targeted re-indexes.
"""
import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, Field

from crm_ai.core.config import get_settings
from crm_ai.core.logging import get_logger
from crm_ai.core.metrics import (
    record_indexed,
    record_indexing_failure,
    record_indexing_run,
    record_removed,
)
from crm_ai.core.tracing import get_tracer, record_exception, set_span_attribute
from crm_ai.services.ai.errors import IndexingError
from crm_ai.services.rag import context
from crm_ai.services.rag.vector_store import CollectionName

logger = get_logger(__name__)
tracer = get_tracer("crm_ai.rag")


class EntityType(str, Enum):
    DEAL = "deal"
    OBJECTION = "objection"
    INTERACTION = "interaction"


class ChangeAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class IndexAction(str, Enum):
    INDEXED = "indexed"
    REMOVED = "removed"


class EntityChange(BaseModel):
    entity_type: EntityType
    entity_id: str
    action: ChangeAction = ChangeAction.UPDATE


class CollectionReport(BaseModel):
    collection: str
    indexed: int = 0
    removed: int = 0
    failed: int = 0
    failed_ids: List[str] = Field(default_factory=list)


class IndexingReport(BaseModel):
    mode: str
    status: str = "completed"
    collections: Dict[str, CollectionReport] = Field(default_factory=dict)
    started_at: datetime
    duration_ms: int = 0
    since: Optional[datetime] = None

    @property
    def total_failed(self) -> int:
        return sum(r.failed for r in self.collections.values())


class BatchUpdateReport(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0


@dataclass(frozen=True)
class IndexSpec:
    """How one entity type maps onto one collection."""

    entity_type: EntityType
    collection: CollectionName
    fetch: str
    get: str
    qualifies: Callable[[Any], bool]
    to_text: Callable[[Any], str]
    to_metadata: Callable[[Any], Dict[str, Any]]


INDEX_SPECS: Dict[EntityType, IndexSpec] = {
    EntityType.DEAL: IndexSpec(
        EntityType.DEAL,
        CollectionName.DEALS,
        "fetch_deals",
        "get_deal",
        lambda deal: deal.is_closed,
        context.deal_context,
        context.deal_metadata,
    ),
    EntityType.OBJECTION: IndexSpec(
        EntityType.OBJECTION,
        CollectionName.OBJECTIONS,
        "fetch_objections",
        "get_objection",
        lambda objection: objection.qualifies_for_index,
        context.objection_context,
        context.objection_metadata,
    ),
    EntityType.INTERACTION: IndexSpec(
        EntityType.INTERACTION,
        CollectionName.INTERACTIONS,
        "fetch_interactions",
        "get_interaction",
        lambda interaction: interaction.has_notes,
        context.interaction_context,
        context.interaction_metadata,
    ),
}


def chunked(items: Sequence, size: int) -> Iterable[Sequence]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class RAGIndexingPipeline:
    """Converts qualifying CRM records into embedded context in the vector store."""

    def __init__(
        self,
        vector_store,
        crm_source,
        batch_size: int = 10,
        page_size: int = 100,
        reconcile_window_hours: int = 24,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        if batch_size <= 0 or page_size <= 0:
            raise ValueError("batch_size and page_size must be positive")
        self.vector_store = vector_store
        self.crm_source = crm_source
        self.batch_size = batch_size
        self.page_size = page_size
        self.reconcile_window_hours = reconcile_window_hours
        self._clock = clock

    # ------------------------------------------------------------------
    # Single-record operations
    # ------------------------------------------------------------------

    async def _index_record(self, spec: IndexSpec, record) -> IndexAction:
        collection = spec.collection.value
        try:
            if spec.qualifies(record):
                await self.vector_store.upsert(
                    spec.collection, record.id, spec.to_text(record), spec.to_metadata(record)
                )
                record_indexed(collection)
                return IndexAction.INDEXED
            await self.vector_store.delete(spec.collection, record.id)
            record_removed(collection)
            return IndexAction.REMOVED
        except Exception as e:
            raise IndexingError(collection, record.id, e) from e

    async def _remove(self, spec: IndexSpec, entity_id: str) -> IndexAction:
        try:
            await self.vector_store.delete(spec.collection, entity_id)
        except Exception as e:
            raise IndexingError(spec.collection.value, entity_id, e) from e
        record_removed(spec.collection.value)
        return IndexAction.REMOVED

    async def _reindex(self, entity_type: EntityType, entity_id: str) -> IndexAction:
        spec = INDEX_SPECS[entity_type]
        record = await getattr(self.crm_source, spec.get)(entity_id)
        if record is None:
            action = await self._remove(spec, entity_id)
        else:
            action = await self._index_record(spec, record)
        logger.info(
            "rag_entity_reindexed",
            entity_type=entity_type.value,
            entity_id=entity_id,
            action=action.value,
            found=record is not None,
        )
        return action

    def _persist(self) -> None:
        if hasattr(self.vector_store, "persist"):
            self.vector_store.persist()

    async def reindex_deal(self, deal_id: str) -> IndexAction:
        """Upsert a closed deal; remove a deal that is open again or gone."""
        action = await self._reindex(EntityType.DEAL, deal_id)
        self._persist()
        return action

    async def reindex_objection(self, objection_id: str) -> IndexAction:
        action = await self._reindex(EntityType.OBJECTION, objection_id)
        self._persist()
        return action

    async def reindex_interaction(self, interaction_id: str) -> IndexAction:
        action = await self._reindex(EntityType.INTERACTION, interaction_id)
        self._persist()
        return action

    async def handle_data_update(
        self,
        entity_type,
        entity_id: str,
        action="update",
    ) -> Optional[IndexAction]:
        """
        Apply one entity change to the index.

        Called from entity write paths, so it never raises: failures are
        logged and reported as ``None``. The store is persisted after a
        successful change.
        """
        result = await self._apply_change(entity_type, entity_id, action)
        if result is not None:
            self._persist_quietly(entity_count=1)
        return result

    async def _apply_change(self, entity_type, entity_id: str, action) -> Optional[IndexAction]:
        try:
            entity_type = EntityType(entity_type)
            action = ChangeAction(action)
        except ValueError:
            logger.warning("rag_unknown_change", entity_type=str(entity_type), action=str(action))
            return None

        try:
            if action == ChangeAction.DELETE:
                return await self._remove(INDEX_SPECS[entity_type], entity_id)
            return await self._reindex(entity_type, entity_id)
        except Exception as e:
            logger.error(
                "rag_data_update_failed",
                entity_type=entity_type.value,
                entity_id=entity_id,
                action=action.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

    def _persist_quietly(self, entity_count: int) -> None:
        try:
            self._persist()
        except Exception as e:
            logger.error(
                "rag_persist_failed",
                entity_count=entity_count,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def batch_update(self, changes: Sequence[EntityChange]) -> BatchUpdateReport:
        """Apply many changes in fixed-size batches; failures never stop the run."""
        report = BatchUpdateReport()
        for batch in chunked(list(changes), self.batch_size):
            results = await asyncio.gather(
                *(self._apply_change(c.entity_type, c.entity_id, c.action) for c in batch),
                return_exceptions=True,
            )
            for result in results:
                report.processed += 1
                if result is None or isinstance(result, BaseException):
                    report.failed += 1
                else:
                    report.succeeded += 1

        if report.succeeded:
            self._persist_quietly(entity_count=report.succeeded)

        logger.info(
            "rag_batch_update_completed",
            processed=report.processed,
            succeeded=report.succeeded,
            failed=report.failed,
        )
        return report

    # ------------------------------------------------------------------
    # Bulk operations
    # ------------------------------------------------------------------

    async def _run_batch(self, spec: IndexSpec, batch: Sequence, report: CollectionReport) -> None:
        results = await asyncio.gather(
            *(self._index_record(spec, record) for record in batch),
            return_exceptions=True,
        )
        for record, result in zip(batch, results):
            if isinstance(result, BaseException):
                report.failed += 1
                report.failed_ids.append(record.id)
                record_indexing_failure(spec.collection.value)
                cause = result.cause if isinstance(result, IndexingError) else result
                logger.warning(
                    "rag_record_index_failed",
                    collection=spec.collection.value,
                    record_id=record.id,
                    error=str(cause),
                    error_type=type(cause).__name__,
                )
            elif result == IndexAction.INDEXED:
                report.indexed += 1
            else:
                report.removed += 1

    async def _index_collection(
        self,
        spec: IndexSpec,
        qualifying_only: bool,
        updated_since: Optional[datetime],
    ) -> CollectionReport:
        report = CollectionReport(collection=spec.collection.value)
        fetch: Callable[..., Awaitable[List]] = getattr(self.crm_source, spec.fetch)
        offset = 0
        batch_number = 0
        while True:
            page = await fetch(
                qualifying_only=qualifying_only,
                updated_since=updated_since,
                offset=offset,
                limit=self.page_size,
            )
            if not page:
                break
            for batch in chunked(page, self.batch_size):
                batch_number += 1
                await self._run_batch(spec, batch, report)
                logger.debug(
                    "rag_batch_processed",
                    collection=spec.collection.value,
                    batch=batch_number,
                    size=len(batch),
                )
            offset += len(page)
            if len(page) < self.page_size:
                break

        logger.info(
            "rag_collection_indexed",
            collection=spec.collection.value,
            indexed=report.indexed,
            removed=report.removed,
            failed=report.failed,
        )
        return report

    async def _run(self, mode: str, qualifying_only: bool, since: Optional[datetime]) -> IndexingReport:
        started = time.time()
        report = IndexingReport(mode=mode, started_at=self._clock(), since=since)

        with tracer.start_as_current_span(f"rag.{mode}"):
            set_span_attribute("rag.mode", mode)
            try:
                for spec in INDEX_SPECS.values():
                    report.collections[spec.collection.value] = await self._index_collection(
                        spec, qualifying_only, since
                    )
            except Exception as e:
                # Source failures (not per-record failures) end the run.
                record_exception(e)
                report.status = "error"
                logger.error(
                    "rag_indexing_run_failed",
                    mode=mode,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                raise
            finally:
                duration = time.time() - started
                report.duration_ms = int(duration * 1000)
                record_indexing_run(mode, duration)

            set_span_attribute("rag.failed", report.total_failed)

        self._persist()

        logger.info(
            "rag_indexing_run_completed",
            mode=mode,
            duration_ms=report.duration_ms,
            failed=report.total_failed,
            collections={k: v.indexed for k, v in report.collections.items()},
        )
        return report

    async def index_all(self) -> IndexingReport:
        """Index every qualifying deal, objection and interaction."""
        return await self._run("index_all", qualifying_only=True, since=None)

    async def reconcile(self, window_hours: Optional[int] = None) -> IndexingReport:
        """Re-apply indexing to every entity changed in the trailing window."""
        hours = window_hours if window_hours is not None else self.reconcile_window_hours
        since = self._clock() - timedelta(hours=hours)
        return await self._run("reconcile", qualifying_only=False, since=since)


_pipeline: Optional[RAGIndexingPipeline] = None


def get_indexing_pipeline() -> RAGIndexingPipeline:
    global _pipeline
    if _pipeline is None:
        from crm_ai.services.rag.crm_source import get_crm_source
        from crm_ai.services.rag.vector_store import get_vector_store

        settings = get_settings()
        _pipeline = RAGIndexingPipeline(
            vector_store=get_vector_store(),
            crm_source=get_crm_source(),
            batch_size=settings.rag_batch_size,
            page_size=settings.rag_page_size,
            reconcile_window_hours=settings.rag_reconcile_window_hours,
        )
    return _pipeline
