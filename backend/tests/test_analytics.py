"""
Tests for feedback collection and usage summaries.
"""
from datetime import datetime, timedelta, timezone

import pytest

from crm_ai.services.ai.analytics import AIAnalyticsService
from crm_ai.services.ai.quota import QuotaTracker
from crm_ai.services.ai.schema import AuditLogEntry, AuditStatus

NOW = datetime.now(timezone.utc)


def request_entry(feature, user_id="u1", age=timedelta(0), response_time_ms=100, status=AuditStatus.COMPLETED):
    start = NOW - age
    return AuditLogEntry(
        feature=feature,
        request_type="suggest",
        user_id=user_id,
        status=status,
        start_time=start,
        end_time=start,
        response_time_ms=response_time_ms,
    )


@pytest.fixture
def analytics(audit_repository):
    return AIAnalyticsService(audit_repository, QuotaTracker(audit_repository, daily_limit=10), clock=lambda: NOW)


class TestFeedback:
    @pytest.mark.asyncio
    async def test_feedback_is_logged(self, analytics, audit_repository):
        entry = await analytics.submit_feedback(
            "u1", "deal_coach", "positive", response_id="resp-1", rating=5, comments="Very useful"
        )

        assert entry.request_type == "feedback"
        assert entry.model == "feedback"
        assert entry.metadata == {"response_id": "resp-1", "feedback": "positive", "rating": 5}
        assert len(audit_repository) == 1

    @pytest.mark.asyncio
    async def test_feedback_does_not_count_against_quota(self, analytics):
        for _ in range(3):
            await analytics.submit_feedback("u1", "deal_coach", "negative")
        state = await analytics.quota_tracker.get_state("u1")
        assert state.used == 0

    @pytest.mark.asyncio
    async def test_invalid_feedback(self, analytics):
        with pytest.raises(ValueError):
            await analytics.submit_feedback("u1", "deal_coach", "meh")
        with pytest.raises(ValueError):
            await analytics.submit_feedback("u1", "lead_scoring", "positive")


class TestUsageSummary:
    @pytest.mark.asyncio
    async def test_summary(self, analytics, audit_repository):
        await audit_repository.append(request_entry("deal_coach", response_time_ms=100))
        await audit_repository.append(request_entry("deal_coach", response_time_ms=300))
        await audit_repository.append(request_entry("persona_builder", response_time_ms=0))
        await audit_repository.append(request_entry("deal_coach", age=timedelta(days=10)))
        await audit_repository.append(request_entry("deal_coach", user_id="someone-else"))
        await analytics.submit_feedback("u1", "deal_coach", "positive")
        await analytics.submit_feedback("u1", "deal_coach", "positive")
        await analytics.submit_feedback("u1", "persona_builder", "negative")

        summary = await analytics.usage_summary("u1", "7d")

        assert summary.period == "7d"
        assert summary.total_requests == 3
        assert summary.feature_usage == {"deal_coach": 2, "persona_builder": 1}
        assert summary.avg_response_time_ms == 200
        assert summary.feedback_count == 3
        assert summary.positive_feedback_pct == 67
        assert summary.end - summary.start == timedelta(days=7)

    @pytest.mark.asyncio
    async def test_longer_period_includes_older_entries(self, analytics, audit_repository):
        await audit_repository.append(request_entry("deal_coach", age=timedelta(days=10)))
        summary = await analytics.usage_summary("u1", "30d")
        assert summary.total_requests == 1

    @pytest.mark.asyncio
    async def test_unknown_period_defaults_to_week(self, analytics):
        summary = await analytics.usage_summary("u1", "90d")
        assert summary.period == "7d"

    @pytest.mark.asyncio
    async def test_empty_history(self, analytics):
        summary = await analytics.usage_summary("nobody")
        assert summary.total_requests == 0
        assert summary.avg_response_time_ms == 0
        assert summary.positive_feedback_pct == 0
        assert summary.remaining_requests == 10
