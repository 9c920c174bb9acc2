"""
Tests for the RAG indexing pipeline against the in-memory CRM source.
"""
from datetime import datetime, timedelta, timezone

import pytest

from crm_ai.models.crm import Contact, Deal, Interaction, Objection
from crm_ai.services.rag.crm_source import InMemoryCRMSource
from crm_ai.services.rag.indexing import (
    ChangeAction,
    EntityChange,
    EntityType,
    IndexAction,
    RAGIndexingPipeline,
)
from crm_ai.services.rag.vector_store import CollectionName, VectorStore

from conftest import FakeEmbedder

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def contact(company="Acme Corp", industry="saas"):
    return Contact(id=f"c-{company}", first_name="Dana", last_name="Lee", company=company, industry=industry)


def deal(deal_id, stage="closed_won", company="Acme Corp", updated_at=NOW):
    return Deal(
        id=deal_id,
        title=f"{company} expansion",
        value=50000,
        stage=stage,
        contact=contact(company),
        notes="Champion secured budget early",
        updated_at=updated_at,
    )


def objection(objection_id, is_resolved=True, outcome="resolved", updated_at=NOW):
    return Objection(
        id=objection_id,
        text="Your price is higher than the competitor",
        category="price",
        is_resolved=is_resolved,
        outcome=outcome,
        industry="saas",
        updated_at=updated_at,
    )


def interaction(interaction_id, notes="Discussed rollout plan", updated_at=NOW):
    return Interaction(
        id=interaction_id,
        type="call",
        contact=contact(),
        notes=notes,
        updated_at=updated_at,
    )


@pytest.fixture
def crm_source():
    return InMemoryCRMSource(
        deals=[deal("d-won"), deal("d-lost", stage="closed_lost"), deal("d-open", stage="negotiation")],
        objections=[
            objection("o-resolved"),
            objection("o-won", outcome="deal_won"),
            objection("o-open", is_resolved=False, outcome="unresolved"),
        ],
        interactions=[interaction("i-notes"), interaction("i-empty", notes="  ")],
    )


def make_pipeline(crm_source, embedder=None, **kwargs):
    store = VectorStore(embedder or FakeEmbedder())
    store.initialize()
    return RAGIndexingPipeline(store, crm_source, clock=lambda: NOW, **kwargs)


class TestIndexAll:
    @pytest.mark.asyncio
    async def test_indexes_only_qualifying_records(self, crm_source):
        pipeline = make_pipeline(crm_source)
        report = await pipeline.index_all()

        assert report.status == "completed"
        assert report.collections["deals"].indexed == 2
        assert report.collections["objections"].indexed == 2
        assert report.collections["interactions"].indexed == 1
        assert report.total_failed == 0

        store = pipeline.vector_store
        assert store.get(CollectionName.DEALS, "d-won") is not None
        assert store.get(CollectionName.DEALS, "d-open") is None
        assert store.get(CollectionName.OBJECTIONS, "o-open") is None
        assert store.get(CollectionName.INTERACTIONS, "i-empty") is None

    @pytest.mark.asyncio
    async def test_deal_metadata_is_filterable(self, crm_source):
        pipeline = make_pipeline(crm_source)
        await pipeline.index_all()

        results = await pipeline.vector_store.query(
            CollectionName.DEALS, "Acme expansion", top_k=5, where={"outcome": "closed_lost"}
        )
        assert [r.id for r in results] == ["d-lost"]
        assert results[0].metadata["industry"] == "saas"

    @pytest.mark.asyncio
    async def test_one_failing_record_does_not_stop_the_batch(self, crm_source):
        crm_source.put(deal("d-broken", company="Broken Co"))
        pipeline = make_pipeline(crm_source, embedder=FakeEmbedder(fail_on="Broken Co"))

        report = await pipeline.index_all()

        deals = report.collections["deals"]
        assert deals.indexed == 2
        assert deals.failed == 1
        assert deals.failed_ids == ["d-broken"]
        assert report.status == "completed"

    @pytest.mark.asyncio
    async def test_pages_and_batches(self):
        source = InMemoryCRMSource(deals=[deal(f"d-{n}") for n in range(7)])
        pipeline = make_pipeline(source, batch_size=2, page_size=3)
        report = await pipeline.index_all()
        assert report.collections["deals"].indexed == 7

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, crm_source):
        pipeline = make_pipeline(crm_source)
        await pipeline.index_all()
        await pipeline.index_all()
        stats = await pipeline.vector_store.stats(CollectionName.DEALS)
        assert stats["count"] == 2

    def test_invalid_batch_size(self, crm_source):
        with pytest.raises(ValueError):
            make_pipeline(crm_source, batch_size=0)


class TestTargetedReindex:
    @pytest.mark.asyncio
    async def test_reopened_deal_is_removed(self, crm_source):
        pipeline = make_pipeline(crm_source)
        await pipeline.index_all()

        crm_source.put(deal("d-won", stage="negotiation"))
        assert await pipeline.reindex_deal("d-won") == IndexAction.REMOVED
        assert pipeline.vector_store.get(CollectionName.DEALS, "d-won") is None

    @pytest.mark.asyncio
    async def test_missing_deal_is_removed(self, crm_source):
        pipeline = make_pipeline(crm_source)
        await pipeline.index_all()

        crm_source.remove("d-lost")
        assert await pipeline.reindex_deal("d-lost") == IndexAction.REMOVED
        assert pipeline.vector_store.get(CollectionName.DEALS, "d-lost") is None

    @pytest.mark.asyncio
    async def test_newly_closed_deal_is_indexed(self, crm_source):
        pipeline = make_pipeline(crm_source)
        crm_source.put(deal("d-open", stage="closed_won"))
        assert await pipeline.reindex_deal("d-open") == IndexAction.INDEXED
        assert pipeline.vector_store.get(CollectionName.DEALS, "d-open") is not None

    @pytest.mark.asyncio
    async def test_objection_and_interaction(self, crm_source):
        pipeline = make_pipeline(crm_source)
        assert await pipeline.reindex_objection("o-resolved") == IndexAction.INDEXED
        assert await pipeline.reindex_objection("o-open") == IndexAction.REMOVED
        assert await pipeline.reindex_interaction("i-notes") == IndexAction.INDEXED
        assert await pipeline.reindex_interaction("i-empty") == IndexAction.REMOVED


class TestDataUpdates:
    @pytest.mark.asyncio
    async def test_delete_action_removes(self, crm_source):
        pipeline = make_pipeline(crm_source)
        await pipeline.index_all()
        action = await pipeline.handle_data_update("objection", "o-won", "delete")
        assert action == IndexAction.REMOVED
        assert pipeline.vector_store.get(CollectionName.OBJECTIONS, "o-won") is None

    @pytest.mark.asyncio
    async def test_never_raises(self, crm_source):
        crm_source.put(deal("d-broken", company="Broken Co"))
        pipeline = make_pipeline(crm_source, embedder=FakeEmbedder(fail_on="Broken Co"))

        assert await pipeline.handle_data_update(EntityType.DEAL, "d-broken") is None
        assert await pipeline.handle_data_update("contract", "x-1") is None
        assert await pipeline.handle_data_update("deal", "d-won", "archive") is None

    @pytest.mark.asyncio
    async def test_batch_update_counts(self, crm_source):
        crm_source.put(deal("d-broken", company="Broken Co"))
        pipeline = make_pipeline(crm_source, embedder=FakeEmbedder(fail_on="Broken Co"), batch_size=2)

        report = await pipeline.batch_update([
            EntityChange(entity_type=EntityType.DEAL, entity_id="d-won", action=ChangeAction.CREATE),
            EntityChange(entity_type=EntityType.DEAL, entity_id="d-broken"),
            EntityChange(entity_type=EntityType.INTERACTION, entity_id="i-notes"),
            EntityChange(entity_type=EntityType.OBJECTION, entity_id="o-resolved", action=ChangeAction.DELETE),
        ])

        assert report.processed == 4
        assert report.succeeded == 3
        assert report.failed == 1


def persistent_pipeline(crm_source, directory):
    store = VectorStore(FakeEmbedder(), persist_dir=str(directory))
    store.initialize()
    return RAGIndexingPipeline(store, crm_source, clock=lambda: NOW, batch_size=2)


def reload_store(directory):
    store = VectorStore(FakeEmbedder(), persist_dir=str(directory))
    store.initialize()
    return store


class TestPersistence:
    @pytest.mark.asyncio
    async def test_targeted_reindex_survives_restart(self, crm_source, tmp_path):
        pipeline = persistent_pipeline(crm_source, tmp_path)
        assert await pipeline.reindex_deal("d-won") == IndexAction.INDEXED

        assert reload_store(tmp_path).get(CollectionName.DEALS, "d-won") is not None

    @pytest.mark.asyncio
    async def test_removed_deal_stays_removed_after_restart(self, crm_source, tmp_path):
        pipeline = persistent_pipeline(crm_source, tmp_path)
        await pipeline.index_all()
        assert reload_store(tmp_path).get(CollectionName.DEALS, "d-won") is not None

        crm_source.put(deal("d-won", stage="negotiation"))
        assert await pipeline.handle_data_update("deal", "d-won") == IndexAction.REMOVED

        reloaded = reload_store(tmp_path)
        assert reloaded.get(CollectionName.DEALS, "d-won") is None
        assert reloaded.get(CollectionName.DEALS, "d-lost") is not None

    @pytest.mark.asyncio
    async def test_batch_update_persists_once(self, crm_source, tmp_path, monkeypatch):
        pipeline = persistent_pipeline(crm_source, tmp_path)
        calls = []
        original = pipeline.vector_store.persist

        def counting_persist():
            calls.append(1)
            original()

        monkeypatch.setattr(pipeline.vector_store, "persist", counting_persist)

        report = await pipeline.batch_update([
            EntityChange(entity_type=EntityType.DEAL, entity_id="d-won"),
            EntityChange(entity_type=EntityType.DEAL, entity_id="d-lost"),
            EntityChange(entity_type=EntityType.INTERACTION, entity_id="i-notes"),
        ])

        assert report.succeeded == 3
        assert len(calls) == 1
        reloaded = reload_store(tmp_path)
        assert reloaded.get(CollectionName.INTERACTIONS, "i-notes") is not None

    @pytest.mark.asyncio
    async def test_persist_failure_does_not_escape_data_update(self, crm_source, tmp_path, monkeypatch):
        pipeline = persistent_pipeline(crm_source, tmp_path)

        def broken_persist():
            raise OSError("disk full")

        monkeypatch.setattr(pipeline.vector_store, "persist", broken_persist)

        assert await pipeline.handle_data_update("deal", "d-won") == IndexAction.INDEXED


class TestReconcile:
    @pytest.mark.asyncio
    async def test_reconcile_window(self):
        stale = NOW - timedelta(hours=48)
        source = InMemoryCRMSource(
            deals=[
                deal("d-recent"),
                deal("d-stale", updated_at=stale),
                deal("d-reopened", stage="negotiation"),
            ],
        )
        pipeline = make_pipeline(source, reconcile_window_hours=24)
        # Indexed earlier, then reopened without a targeted re-index.
        await pipeline.vector_store.upsert(CollectionName.DEALS, "d-reopened", "old closed deal text")

        report = await pipeline.reconcile()

        assert report.mode == "reconcile"
        assert report.since == NOW - timedelta(hours=24)
        assert report.collections["deals"].indexed == 1
        assert report.collections["deals"].removed == 1
        store = pipeline.vector_store
        assert store.get(CollectionName.DEALS, "d-recent") is not None
        assert store.get(CollectionName.DEALS, "d-stale") is None
        assert store.get(CollectionName.DEALS, "d-reopened") is None

    @pytest.mark.asyncio
    async def test_window_override(self):
        stale = NOW - timedelta(hours=48)
        source = InMemoryCRMSource(deals=[deal("d-stale", updated_at=stale)])
        pipeline = make_pipeline(source, reconcile_window_hours=24)

        report = await pipeline.reconcile(window_hours=72)
        assert report.collections["deals"].indexed == 1
