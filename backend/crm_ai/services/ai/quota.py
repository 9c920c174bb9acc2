"""
Per-user, per-day request quota.

``used`` is derived on every read from the audit log: entries for the user
with status completed or pending whose start time is at or after today's
local midnight. Nothing is cached, so a new calendar day always starts at 0.

Fails closed: if the count query errors, the request is denied.
"""
from datetime import datetime, time as dt_time
from typing import Callable, Optional, Tuple

from crm_ai.core.config import get_settings
from crm_ai.core.logging import get_logger
from crm_ai.core.metrics import record_quota_denial
from crm_ai.services.ai.schema import QUOTA_COUNTED_STATUSES, QuotaState

logger = get_logger(__name__)


def local_now() -> datetime:
    return datetime.now().astimezone()


def day_start(now: datetime) -> datetime:
    """Midnight of ``now``'s calendar day, in ``now``'s timezone."""
    return datetime.combine(now.date(), dt_time.min, tzinfo=now.tzinfo)


class QuotaTracker:
    """Daily request budget backed by the audit log."""

    def __init__(
        self,
        audit_repository,
        daily_limit: int = 100,
        clock: Callable[[], datetime] = local_now,
    ):
        if daily_limit < 0:
            raise ValueError("daily_limit must be non-negative")
        self.audit_repository = audit_repository
        self.daily_limit = daily_limit
        self._clock = clock

    async def get_state(self, user_id: str) -> QuotaState:
        """Current usage for ``user_id``. Propagates repository errors."""
        window_start = day_start(self._clock())
        used = await self.audit_repository.count_since(
            user_id, window_start, QUOTA_COUNTED_STATUSES
        )
        return QuotaState(user_id=user_id, window_start=window_start, used=used, limit=self.daily_limit)

    async def check(self, user_id: str) -> Tuple[bool, Optional[QuotaState]]:
        """
        Decide whether ``user_id`` may make another request today.

        Returns the decision and the state it was based on (None when the
        count could not be read, in which case the request is denied).
        """
        try:
            state = await self.get_state(user_id)
        except Exception as e:
            record_quota_denial("count_failed")
            logger.error(
                "quota_check_failed",
                user_id=user_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False, None

        if state.exceeded:
            record_quota_denial("limit_reached")
            logger.info("quota_exceeded", user_id=user_id, used=state.used, limit=state.limit)
            return False, state
        return True, state

    async def check_limit(self, user_id: str) -> bool:
        """True when the user may make another request today."""
        allowed, _ = await self.check(user_id)
        return allowed


_quota_tracker: Optional[QuotaTracker] = None


def get_quota_tracker() -> QuotaTracker:
    global _quota_tracker
    if _quota_tracker is None:
        from crm_ai.services.ai.persistence import get_audit_repository

        _quota_tracker = QuotaTracker(
            audit_repository=get_audit_repository(),
            daily_limit=get_settings().ai_requests_per_day,
        )
    return _quota_tracker
