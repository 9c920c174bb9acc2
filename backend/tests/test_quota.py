"""
Unit tests for the daily quota tracker.
"""
from datetime import datetime, timedelta, timezone

import pytest

from crm_ai.services.ai.persistence import InMemoryAuditRepository
from crm_ai.services.ai.quota import QuotaTracker, day_start
from crm_ai.services.ai.schema import FEEDBACK_REQUEST_TYPE, AuditLogEntry, AuditStatus

NOW = datetime(2024, 3, 15, 14, 30, tzinfo=timezone.utc)


def entry(user_id="user-1", status=AuditStatus.COMPLETED, at=NOW, request_type="suggest"):
    return AuditLogEntry(
        feature="deal_coach",
        request_type=request_type,
        user_id=user_id,
        status=status,
        start_time=at,
        end_time=at,
    )


class ExplodingRepository:
    async def count_since(self, *args, **kwargs):
        raise ConnectionError("audit store unreachable")


def test_day_start_is_local_midnight():
    assert day_start(NOW) == datetime(2024, 3, 15, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_under_limit_is_allowed():
    repo = InMemoryAuditRepository()
    for _ in range(2):
        await repo.append(entry())
    tracker = QuotaTracker(repo, daily_limit=3, clock=lambda: NOW)

    assert await tracker.check_limit("user-1") is True
    state = await tracker.get_state("user-1")
    assert state.used == 2
    assert state.remaining == 1


@pytest.mark.asyncio
async def test_at_limit_is_denied():
    repo = InMemoryAuditRepository()
    for _ in range(3):
        await repo.append(entry())
    tracker = QuotaTracker(repo, daily_limit=3, clock=lambda: NOW)

    allowed, state = await tracker.check("user-1")
    assert allowed is False
    assert state.used == 3
    assert state.exceeded


@pytest.mark.asyncio
async def test_only_completed_and_pending_count():
    repo = InMemoryAuditRepository()
    await repo.append(entry(status=AuditStatus.COMPLETED))
    await repo.append(entry(status=AuditStatus.PENDING))
    await repo.append(entry(status=AuditStatus.FAILED))
    await repo.append(entry(status=AuditStatus.REJECTED))
    await repo.append(entry(request_type=FEEDBACK_REQUEST_TYPE))
    tracker = QuotaTracker(repo, daily_limit=10, clock=lambda: NOW)

    state = await tracker.get_state("user-1")
    assert state.used == 2


@pytest.mark.asyncio
async def test_usage_is_per_user():
    repo = InMemoryAuditRepository()
    for _ in range(3):
        await repo.append(entry(user_id="user-2"))
    tracker = QuotaTracker(repo, daily_limit=3, clock=lambda: NOW)

    assert await tracker.check_limit("user-1") is True
    assert await tracker.check_limit("user-2") is False


@pytest.mark.asyncio
async def test_new_day_resets_usage():
    repo = InMemoryAuditRepository()
    yesterday = NOW - timedelta(days=1)
    for _ in range(3):
        await repo.append(entry(at=yesterday))
    tracker = QuotaTracker(repo, daily_limit=3, clock=lambda: NOW)

    state = await tracker.get_state("user-1")
    assert state.used == 0
    assert await tracker.check_limit("user-1") is True


@pytest.mark.asyncio
async def test_count_failure_denies():
    tracker = QuotaTracker(ExplodingRepository(), daily_limit=100, clock=lambda: NOW)

    allowed, state = await tracker.check("user-1")
    assert allowed is False
    assert state is None

    with pytest.raises(ConnectionError):
        await tracker.get_state("user-1")


def test_negative_limit_rejected():
    with pytest.raises(ValueError):
        QuotaTracker(InMemoryAuditRepository(), daily_limit=-1)
