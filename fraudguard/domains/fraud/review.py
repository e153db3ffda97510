"""Admin review operations over persisted checks and suspicious activities.

Risk checks are append-only: only the status and review fields change here.
"""

from datetime import UTC, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fraudguard.db.models import RiskCheck, SuspiciousActivity

from .config import FraudConfig, default_config
from .errors import (
    InvalidReviewStateError,
    RiskCheckNotFoundError,
    SuspiciousActivityNotFoundError,
)
from .models import ActivityStatus, ActivityType, CheckStatus
from .patterns import PatternDetector

logger = structlog.get_logger()

_OPEN_CHECK_STATUSES = (CheckStatus.PENDING.value, CheckStatus.UNDER_REVIEW.value)
_OPEN_ACTIVITY_STATUSES = (ActivityStatus.ACTIVE.value, ActivityStatus.UNDER_INVESTIGATION.value)


async def _get_check(check_id: str, session: AsyncSession) -> RiskCheck:
    result = await session.execute(select(RiskCheck).where(RiskCheck.check_id == check_id))
    check = result.scalar_one_or_none()
    if check is None:
        raise RiskCheckNotFoundError(f"Risk check {check_id} not found")
    return check


async def get_pending_reviews(session: AsyncSession, limit: int = 100) -> list[RiskCheck]:
    """Checks awaiting a reviewer, newest first."""
    stmt = (
        select(RiskCheck)
        .where(RiskCheck.status.in_(_OPEN_CHECK_STATUSES))
        .order_by(RiskCheck.created_at.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_active_suspicious_activities(
    session: AsyncSession, limit: int = 100
) -> list[SuspiciousActivity]:
    """Open activities, riskiest first."""
    stmt = (
        select(SuspiciousActivity)
        .where(SuspiciousActivity.status.in_(_OPEN_ACTIVITY_STATUSES))
        .order_by(SuspiciousActivity.risk_score.desc(), SuspiciousActivity.created_at.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def start_review(check_id: str, reviewer_id: str, session: AsyncSession) -> RiskCheck:
    check = await _get_check(check_id, session)
    if check.status != CheckStatus.PENDING.value:
        raise InvalidReviewStateError(f"Risk check {check_id} is {check.status}, not pending")
    check.status = CheckStatus.UNDER_REVIEW.value
    check.reviewed_by = reviewer_id
    await session.commit()
    logger.info("risk_check_review_started", check_id=check_id, reviewer_id=reviewer_id)
    return check


async def review_risk_check(
    check_id: str,
    approved: bool,
    review_notes: str,
    reviewer_id: str,
    session: AsyncSession,
) -> RiskCheck:
    """Record a reviewer's approve/reject decision on an open check."""
    check = await _get_check(check_id, session)
    if check.status not in _OPEN_CHECK_STATUSES:
        raise InvalidReviewStateError(f"Risk check {check_id} already {check.status}")

    check.status = CheckStatus.APPROVED.value if approved else CheckStatus.REJECTED.value
    check.review_notes = review_notes
    check.reviewed_by = reviewer_id
    check.reviewed_at = datetime.now(UTC)
    await session.commit()

    logger.info(
        "risk_check_reviewed",
        check_id=check_id,
        reviewer_id=reviewer_id,
        approved=approved,
    )
    return check


async def resolve_suspicious_activity(
    activity_id: str,
    status: ActivityStatus,
    notes: str,
    resolved_by: str,
    session: AsyncSession,
) -> SuspiciousActivity:
    result = await session.execute(
        select(SuspiciousActivity).where(SuspiciousActivity.activity_id == activity_id)
    )
    activity = result.scalar_one_or_none()
    if activity is None:
        raise SuspiciousActivityNotFoundError(f"Suspicious activity {activity_id} not found")
    if status == ActivityStatus.ACTIVE:
        raise ValueError("Resolution status cannot be 'active'")

    activity.status = status.value
    activity.investigation_notes = notes
    activity.resolved_by = resolved_by
    activity.resolved_at = datetime.now(UTC)
    await session.commit()

    logger.info(
        "suspicious_activity_resolved",
        activity_id=activity_id,
        resolved_by=resolved_by,
        status=status.value,
    )
    return activity


async def flag_user(
    user_id: str,
    reason: str,
    flagged_by: str,
    session: AsyncSession,
    config: FraudConfig = default_config,
    detector: PatternDetector | None = None,
) -> SuspiciousActivity:
    """Mark a user high-risk. The flag feeds the user's long-term risk score."""
    detector = detector or PatternDetector()
    activity = await detector.record_activity(
        user_id,
        ActivityType.HIGH_RISK_USER,
        f"User flagged: {reason}",
        config.review.flagged_user_score,
        session,
        pattern_data={"reason": reason, "flagged_by": flagged_by},
        requires_manual_review=True,
    )
    await session.commit()
    logger.warning("user_flagged", user_id=user_id, flagged_by=flagged_by, reason=reason)
    return activity


async def unflag_user(
    user_id: str, reason: str, unflagged_by: str, session: AsyncSession
) -> int:
    """Resolve the user's active high-risk flags. Returns how many were resolved."""
    stmt = select(SuspiciousActivity).where(
        SuspiciousActivity.user_id == user_id,
        SuspiciousActivity.activity_type == ActivityType.HIGH_RISK_USER.value,
        SuspiciousActivity.status == ActivityStatus.ACTIVE.value,
    )
    result = await session.execute(stmt)
    activities = list(result.scalars().all())

    now = datetime.now(UTC)
    for activity in activities:
        activity.status = ActivityStatus.RESOLVED.value
        activity.investigation_notes = f"User unflagged: {reason}"
        activity.resolved_by = unflagged_by
        activity.resolved_at = now
    await session.commit()

    logger.info(
        "user_unflagged",
        user_id=user_id,
        unflagged_by=unflagged_by,
        reason=reason,
        resolved_count=len(activities),
    )
    return len(activities)


async def is_user_flagged(user_id: str, session: AsyncSession) -> bool:
    stmt = (
        select(SuspiciousActivity.id)
        .where(
            SuspiciousActivity.user_id == user_id,
            SuspiciousActivity.activity_type == ActivityType.HIGH_RISK_USER.value,
            SuspiciousActivity.status == ActivityStatus.ACTIVE.value,
        )
        .limit(1)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none() is not None
