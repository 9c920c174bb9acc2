"""
Feedback collection and per-user AI usage analytics, read from the audit log.

Feedback entries use request type ``feedback`` and are excluded from request
counts and from the daily quota.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from crm_ai.core.logging import get_logger
from crm_ai.core.metrics import record_feedback
from crm_ai.services.ai.features import Feature
from crm_ai.services.ai.schema import FEEDBACK_REQUEST_TYPE, AuditLogEntry, AuditStatus

logger = get_logger(__name__)

PERIODS = {"1d": 1, "7d": 7, "30d": 30}
DEFAULT_PERIOD = "7d"
FEEDBACK_VALUES = ("positive", "negative")


class UsageSummary(BaseModel):
    user_id: str
    period: str
    start: datetime
    end: datetime
    total_requests: int = 0
    feature_usage: Dict[str, int] = Field(default_factory=dict)
    avg_response_time_ms: int = 0
    positive_feedback_pct: int = 0
    feedback_count: int = 0
    todays_usage: int = 0
    remaining_requests: int = 0


class AIAnalyticsService:
    """Feedback writes and usage summaries over the audit log."""

    def __init__(self, audit_repository, quota_tracker, clock=None):
        self.audit_repository = audit_repository
        self.quota_tracker = quota_tracker
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def submit_feedback(
        self,
        user_id: str,
        feature,
        feedback: str,
        response_id: Optional[str] = None,
        rating: Optional[int] = None,
        comments: Optional[str] = None,
    ) -> AuditLogEntry:
        """
        Record positive/negative feedback on an AI response.

        Raises:
            ValueError: unknown feature, or feedback not positive/negative.
        """
        feature = Feature(feature)
        if feedback not in FEEDBACK_VALUES:
            raise ValueError("feedback must be 'positive' or 'negative'")

        now = self._clock()
        entry = AuditLogEntry(
            feature=feature.value,
            request_type=FEEDBACK_REQUEST_TYPE,
            user_id=user_id,
            input_summary=(comments or "")[:200],
            status=AuditStatus.COMPLETED,
            start_time=now,
            end_time=now,
            response_time_ms=0,
            estimated_cost=0.0,
            model="feedback",
            metadata={"response_id": response_id, "feedback": feedback, "rating": rating},
        )
        await self.audit_repository.append(entry)
        record_feedback(feature.value, feedback)
        logger.info("ai_feedback_received", feature=feature.value, feedback=feedback)
        return entry

    async def usage_summary(self, user_id: str, period: str = DEFAULT_PERIOD) -> UsageSummary:
        """Request totals, per-feature counts, latency, feedback and remaining quota."""
        if period not in PERIODS:
            period = DEFAULT_PERIOD
        end = self._clock()
        start = end - timedelta(days=PERIODS[period])

        entries = await self.audit_repository.list_entries(user_id=user_id, since=start)
        requests = [e for e in entries if e.request_type != FEEDBACK_REQUEST_TYPE]
        feedback = [e for e in entries if e.request_type == FEEDBACK_REQUEST_TYPE]

        feature_usage: Dict[str, int] = {}
        for e in requests:
            feature_usage[e.feature] = feature_usage.get(e.feature, 0) + 1

        timed = [e.response_time_ms for e in requests if e.response_time_ms > 0]
        avg_ms = round(sum(timed) / len(timed)) if timed else 0

        positive = sum(1 for e in feedback if e.metadata.get("feedback") == "positive")
        rated = sum(1 for e in feedback if e.metadata.get("feedback") in FEEDBACK_VALUES)
        positive_pct = round(positive / rated * 100) if rated else 0

        state = await self.quota_tracker.get_state(user_id)

        return UsageSummary(
            user_id=user_id,
            period=period,
            start=start,
            end=end,
            total_requests=len(requests),
            feature_usage=feature_usage,
            avg_response_time_ms=avg_ms,
            positive_feedback_pct=positive_pct,
            feedback_count=len(feedback),
            todays_usage=state.used,
            remaining_requests=state.remaining,
        )


_analytics_service: Optional[AIAnalyticsService] = None


def get_analytics_service() -> AIAnalyticsService:
    global _analytics_service
    if _analytics_service is None:
        from crm_ai.services.ai.persistence import get_audit_repository
        from crm_ai.services.ai.quota import get_quota_tracker

        _analytics_service = AIAnalyticsService(get_audit_repository(), get_quota_tracker())
    return _analytics_service
