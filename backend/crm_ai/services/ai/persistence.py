"""
Audit log and per-user usage persistence.

Two implementations of each store:
- In-memory: used when Supabase is not configured, and in tests.
- Supabase: ``ai_logs`` table for audit entries, ``ai_usage`` table for the
  per-user ``{used, limit, last_reset}`` counter.

The audit log is append-only; entries are never updated.
"""
import asyncio
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from crm_ai.core.database import get_supabase_client, run_sync
from crm_ai.core.logging import get_logger
from crm_ai.services.ai.schema import FEEDBACK_REQUEST_TYPE, AuditLogEntry, AuditStatus

logger = get_logger(__name__)

AUDIT_TABLE = "ai_logs"
USAGE_TABLE = "ai_usage"


def _status_values(statuses: Iterable[AuditStatus]) -> List[str]:
    return [getattr(s, "value", s) for s in statuses]


class InMemoryAuditRepository:
    """Process-local audit log."""

    def __init__(self):
        self._entries: List[AuditLogEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    async def append(self, entry: AuditLogEntry) -> None:
        self._entries.append(entry)

    async def count_since(
        self,
        user_id: str,
        since: datetime,
        statuses: Iterable[AuditStatus],
        exclude_request_types: Iterable[str] = (FEEDBACK_REQUEST_TYPE,),
    ) -> int:
        wanted = set(_status_values(statuses))
        excluded = set(exclude_request_types)
        return sum(
            1
            for e in self._entries
            if e.user_id == user_id
            and e.start_time >= since
            and e.status.value in wanted
            and e.request_type not in excluded
        )

    async def list_entries(
        self,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        feature: Optional[str] = None,
    ) -> List[AuditLogEntry]:
        return [
            e
            for e in self._entries
            if (user_id is None or e.user_id == user_id)
            and (since is None or e.start_time >= since)
            and (feature is None or e.feature == feature)
        ]


class SupabaseAuditRepository:
    """Audit log stored in the ``ai_logs`` table."""

    def __init__(self, client):
        self.client = client

    async def append(self, entry: AuditLogEntry) -> None:
        row = entry.model_dump(mode="json")
        await run_sync(lambda: self.client.table(AUDIT_TABLE).insert(row).execute())

    async def count_since(
        self,
        user_id: str,
        since: datetime,
        statuses: Iterable[AuditStatus],
        exclude_request_types: Iterable[str] = (FEEDBACK_REQUEST_TYPE,),
    ) -> int:
        def _query():
            query = (
                self.client.table(AUDIT_TABLE)
                .select("id", count="exact")
                .eq("user_id", user_id)
                .gte("start_time", since.isoformat())
                .in_("status", _status_values(statuses))
            )
            for request_type in exclude_request_types:
                query = query.neq("request_type", request_type)
            return query.execute()

        response = await run_sync(_query)
        return int(response.count or 0)

    async def list_entries(
        self,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        feature: Optional[str] = None,
    ) -> List[AuditLogEntry]:
        def _query():
            query = self.client.table(AUDIT_TABLE).select("*")
            if user_id is not None:
                query = query.eq("user_id", user_id)
            if since is not None:
                query = query.gte("start_time", since.isoformat())
            if feature is not None:
                query = query.eq("feature", feature)
            return query.order("start_time").execute()

        response = await run_sync(_query)
        return [AuditLogEntry.model_validate(row) for row in response.data or []]


def _reset_if_stale(record: Dict[str, Any], today: date, limit: int) -> Dict[str, Any]:
    last_reset = record.get("last_reset")
    if isinstance(last_reset, str):
        last_reset = date.fromisoformat(last_reset[:10])
    if last_reset != today:
        return {"used": 0, "limit": limit, "last_reset": today}
    return dict(record, limit=limit, last_reset=last_reset)


class InMemoryUsageStore:
    """Per-user usage counters with a daily reset."""

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(user_id)
        return dict(record) if record else None

    async def increment(self, user_id: str, limit: int, today: date) -> Dict[str, Any]:
        async with self._lock:
            record = _reset_if_stale(self._records.get(user_id, {}), today, limit)
            record["used"] += 1
            self._records[user_id] = record
            return dict(record)


class SupabaseUsageStore:
    """Usage counters in the ``ai_usage`` table (one row per user)."""

    def __init__(self, client):
        self.client = client

    async def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        response = await run_sync(
            lambda: self.client.table(USAGE_TABLE)
            .select("user_id, used, daily_limit, last_reset")
            .eq("user_id", user_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        row = rows[0]
        return {"used": row.get("used", 0), "limit": row.get("daily_limit"), "last_reset": row.get("last_reset")}

    async def increment(self, user_id: str, limit: int, today: date) -> Dict[str, Any]:
        # Read-modify-write; the counter is a secondary signal so lost updates are tolerated.
        current = await self.get(user_id) or {}
        record = _reset_if_stale(current, today, limit)
        record["used"] += 1
        row = {
            "user_id": user_id,
            "used": record["used"],
            "daily_limit": limit,
            "last_reset": record["last_reset"].isoformat(),
        }
        await run_sync(lambda: self.client.table(USAGE_TABLE).upsert(row).execute())
        return record


_audit_repository = None
_usage_store = None


def get_audit_repository():
    """Supabase-backed audit log when configured, in-memory otherwise."""
    global _audit_repository
    if _audit_repository is None:
        client = get_supabase_client()
        if client is not None:
            _audit_repository = SupabaseAuditRepository(client)
        else:
            logger.warning("audit_repository_in_memory", message="Audit log will not survive restarts")
            _audit_repository = InMemoryAuditRepository()
    return _audit_repository


def get_usage_store():
    global _usage_store
    if _usage_store is None:
        client = get_supabase_client()
        _usage_store = SupabaseUsageStore(client) if client is not None else InMemoryUsageStore()
    return _usage_store
