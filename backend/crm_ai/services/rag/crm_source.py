"""
Read-only access to CRM entities for the RAG indexer and feature agents.

Entities come back with their related sub-documents resolved (a deal's
contact, interactions and objections; an interaction's contact).

``qualifying_only`` applies the indexing predicates at the source:
- deals: stage in {closed_won, closed_lost}
- objections: is_resolved and outcome in {resolved, deal_won}
- interactions: non-empty notes
"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from crm_ai.core.database import get_supabase_client, run_sync
from crm_ai.core.logging import get_logger
from crm_ai.models.crm import (
    CLOSED_STAGES,
    RESOLVED_OBJECTION_OUTCOMES,
    Contact,
    Deal,
    Interaction,
    Objection,
)

logger = get_logger(__name__)


def _changed_since(updated_at: Optional[datetime], since: Optional[datetime]) -> bool:
    return since is None or (updated_at is not None and updated_at >= since)


class InMemoryCRMSource:
    """CRM entities held in dictionaries. Used when Supabase is not configured."""

    def __init__(
        self,
        deals: Iterable[Deal] = (),
        objections: Iterable[Objection] = (),
        interactions: Iterable[Interaction] = (),
        contacts: Iterable[Contact] = (),
    ):
        self.deals: Dict[str, Deal] = {d.id: d for d in deals}
        self.objections: Dict[str, Objection] = {o.id: o for o in objections}
        self.interactions: Dict[str, Interaction] = {i.id: i for i in interactions}
        self.contacts: Dict[str, Contact] = {c.id: c for c in contacts}

    def put(self, entity) -> None:
        if isinstance(entity, Deal):
            self.deals[entity.id] = entity
        elif isinstance(entity, Objection):
            self.objections[entity.id] = entity
        elif isinstance(entity, Interaction):
            self.interactions[entity.id] = entity
        elif isinstance(entity, Contact):
            self.contacts[entity.id] = entity
        else:
            raise TypeError(f"Unsupported entity type: {type(entity).__name__}")

    def remove(self, entity_id: str) -> None:
        for store in (self.deals, self.objections, self.interactions, self.contacts):
            store.pop(entity_id, None)

    async def fetch_deals(self, qualifying_only=True, updated_since=None, offset=0, limit=100) -> List[Deal]:
        rows = [
            d for d in self.deals.values()
            if (not qualifying_only or d.is_closed) and _changed_since(d.updated_at, updated_since)
        ]
        return rows[offset:offset + limit]

    async def fetch_objections(self, qualifying_only=True, updated_since=None, offset=0, limit=100) -> List[Objection]:
        rows = [
            o for o in self.objections.values()
            if (not qualifying_only or o.qualifies_for_index) and _changed_since(o.updated_at, updated_since)
        ]
        return rows[offset:offset + limit]

    async def fetch_interactions(self, qualifying_only=True, updated_since=None, offset=0, limit=100) -> List[Interaction]:
        rows = [
            i for i in self.interactions.values()
            if (not qualifying_only or i.has_notes) and _changed_since(i.updated_at, updated_since)
        ]
        return rows[offset:offset + limit]

    async def get_deal(self, deal_id: str) -> Optional[Deal]:
        return self.deals.get(deal_id)

    async def get_objection(self, objection_id: str) -> Optional[Objection]:
        return self.objections.get(objection_id)

    async def get_interaction(self, interaction_id: str) -> Optional[Interaction]:
        return self.interactions.get(interaction_id)

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        return self.contacts.get(contact_id)

    async def interactions_for(self, contact_id=None, deal_id=None, limit=10) -> List[Interaction]:
        rows = [
            i for i in self.interactions.values()
            if (contact_id is None or i.contact_id == contact_id) and (deal_id is None or i.deal_id == deal_id)
        ]
        rows.sort(key=lambda i: i.date.timestamp() if i.date else 0.0, reverse=True)
        return rows[:limit]

    async def deals_for_contact(self, contact_id: str, limit=10) -> List[Deal]:
        return [d for d in self.deals.values() if d.contact and d.contact.id == contact_id][:limit]


DEAL_SELECT = "*, contact:contacts(*), interactions(*), objections(*)"
OBJECTION_SELECT = "*"
INTERACTION_SELECT = "*, contact:contacts(*)"


class SupabaseCRMSource:
    """CRM entities read from Supabase tables (deals, objections, interactions, contacts)."""

    def __init__(self, client):
        self.client = client

    async def _select(self, table: str, columns: str, build=None, offset=0, limit=100) -> List[dict]:
        def _query():
            query = self.client.table(table).select(columns)
            if build is not None:
                query = build(query)
            return query.order("id").range(offset, offset + limit - 1).execute()

        response = await run_sync(_query)
        return response.data or []

    async def fetch_deals(self, qualifying_only=True, updated_since=None, offset=0, limit=100) -> List[Deal]:
        def build(query):
            if qualifying_only:
                query = query.in_("stage", sorted(CLOSED_STAGES))
            if updated_since is not None:
                query = query.gte("updated_at", updated_since.isoformat())
            return query

        rows = await self._select("deals", DEAL_SELECT, build, offset, limit)
        return [Deal.model_validate(row) for row in rows]

    async def fetch_objections(self, qualifying_only=True, updated_since=None, offset=0, limit=100) -> List[Objection]:
        def build(query):
            if qualifying_only:
                query = query.eq("is_resolved", True).in_("outcome", sorted(RESOLVED_OBJECTION_OUTCOMES))
            if updated_since is not None:
                query = query.gte("updated_at", updated_since.isoformat())
            return query

        rows = await self._select("objections", OBJECTION_SELECT, build, offset, limit)
        return [Objection.model_validate(row) for row in rows]

    async def fetch_interactions(self, qualifying_only=True, updated_since=None, offset=0, limit=100) -> List[Interaction]:
        def build(query):
            if qualifying_only:
                query = query.not_.is_("notes", "null").neq("notes", "")
            if updated_since is not None:
                query = query.gte("updated_at", updated_since.isoformat())
            return query

        rows = await self._select("interactions", INTERACTION_SELECT, build, offset, limit)
        return [Interaction.model_validate(row) for row in rows]

    async def _get_one(self, table: str, columns: str, entity_id: str) -> Optional[dict]:
        rows = await self._select(table, columns, lambda q: q.eq("id", entity_id), 0, 1)
        return rows[0] if rows else None

    async def get_deal(self, deal_id: str) -> Optional[Deal]:
        row = await self._get_one("deals", DEAL_SELECT, deal_id)
        return Deal.model_validate(row) if row else None

    async def get_objection(self, objection_id: str) -> Optional[Objection]:
        row = await self._get_one("objections", OBJECTION_SELECT, objection_id)
        return Objection.model_validate(row) if row else None

    async def get_interaction(self, interaction_id: str) -> Optional[Interaction]:
        row = await self._get_one("interactions", INTERACTION_SELECT, interaction_id)
        return Interaction.model_validate(row) if row else None

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        row = await self._get_one("contacts", "*", contact_id)
        return Contact.model_validate(row) if row else None

    async def interactions_for(self, contact_id=None, deal_id=None, limit=10) -> List[Interaction]:
        def _query():
            query = self.client.table("interactions").select(INTERACTION_SELECT)
            if contact_id is not None:
                query = query.eq("contact_id", contact_id)
            if deal_id is not None:
                query = query.eq("deal_id", deal_id)
            return query.order("date", desc=True).limit(limit).execute()

        response = await run_sync(_query)
        return [Interaction.model_validate(row) for row in response.data or []]

    async def deals_for_contact(self, contact_id: str, limit=10) -> List[Deal]:
        def _query():
            return (
                self.client.table("deals")
                .select(DEAL_SELECT)
                .eq("contact_id", contact_id)
                .limit(limit)
                .execute()
            )

        response = await run_sync(_query)
        return [Deal.model_validate(row) for row in response.data or []]


_crm_source = None


def get_crm_source():
    """Supabase CRM source when configured, otherwise an empty in-memory source."""
    global _crm_source
    if _crm_source is None:
        client = get_supabase_client()
        if client is not None:
            _crm_source = SupabaseCRMSource(client)
        else:
            logger.warning("crm_source_in_memory", message="No CRM data source configured")
            _crm_source = InMemoryCRMSource()
    return _crm_source
