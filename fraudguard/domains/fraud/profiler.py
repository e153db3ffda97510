"""Long-term user risk scoring.

Scores are computed on demand from current state and never cached, so two
calls with no state change in between return the same value.

An activity counts while it is active and was last detected inside the
lookback. Re-detections bump one row per type, so its ``created_at`` can be
much older than the lookback.
"""

from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fraudguard.db.models import SuspiciousActivity, UserAccount

from . import history
from .config import FraudConfig, default_config
from .models import ActivityStatus

logger = structlog.get_logger()


def account_age_points(account_age: timedelta | None, config: FraudConfig) -> float:
    cfg = config.profiler
    if account_age is None:
        return 0.0
    if account_age < cfg.new_account_age:
        return cfg.new_account_points
    if account_age < cfg.young_account_age:
        return cfg.young_account_points
    return 0.0


def combine_user_risk(
    activity_score_sum: float,
    daily_transaction_count: int,
    account_age: timedelta | None,
    config: FraudConfig = default_config,
) -> float:
    """Weighted activity risk + daily velocity surcharge + account-age surcharge, in [0, 100]."""
    cfg = config.profiler
    score = activity_score_sum * cfg.activity_weight

    daily_cap = config.velocity.daily_transaction_limit
    if daily_transaction_count > daily_cap * cfg.daily_velocity_ratio:
        score += cfg.daily_velocity_points

    score += account_age_points(account_age, config)
    return round(max(0.0, min(score, 100.0)), 2)


class UserRiskProfiler:
    """Aggregates a user's long-term risk signals into a single score."""

    async def _active_activity_sum(
        self, user_id: str, session: AsyncSession, since: datetime
    ) -> float:
        stmt = select(func.coalesce(func.sum(SuspiciousActivity.risk_score), 0)).where(
            SuspiciousActivity.user_id == user_id,
            SuspiciousActivity.status == ActivityStatus.ACTIVE.value,
            SuspiciousActivity.last_detected_at >= since,
        )
        result = await session.execute(stmt)
        return float(result.scalar_one())

    async def _account_age(
        self, user_id: str, session: AsyncSession, now: datetime
    ) -> timedelta | None:
        stmt = select(UserAccount.created_at).where(UserAccount.user_id == user_id)
        result = await session.execute(stmt)
        created_at = result.scalar_one_or_none()
        if created_at is None:
            return None
        return now - created_at

    async def score(
        self,
        user_id: str,
        session: AsyncSession,
        config: FraudConfig = default_config,
        now: datetime | None = None,
    ) -> float:
        now = now or datetime.now(UTC)

        activity_sum = await self._active_activity_sum(
            user_id, session, now - config.profiler.activity_lookback
        )
        daily_count = await history.count_payments_since(session, user_id, now - timedelta(days=1))
        account_age = await self._account_age(user_id, session, now)

        score = combine_user_risk(activity_sum, daily_count, account_age, config)
        logger.debug(
            "user_risk_scored",
            user_id=user_id,
            score=score,
            activity_sum=activity_sum,
            daily_count=daily_count,
            account_age_days=account_age.days if account_age is not None else None,
        )
        return score
