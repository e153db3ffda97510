"""Per-user fixed-window velocity limits.

Each (user, limit type) row carries fixed-window counters. ``check`` is
read-only; ``commit`` and ``reserve`` lock the user's rows with
``SELECT ... FOR UPDATE`` so two concurrent payments for the same user
serialize on the counters. Neither commits the session: the caller's unit of
work does.

Windows are fixed, not sliding: a burst straddling a window boundary can use
the full limit on both sides of it.
"""

from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fraudguard.db.models import VelocityLimit

from .models import BreachedLimit, LimitType

logger = structlog.get_logger()


def _window_expired(limit: VelocityLimit, now: datetime) -> bool:
    return now - limit.window_start > timedelta(seconds=limit.time_window_seconds)


def _applies(limit: VelocityLimit, now: datetime) -> bool:
    if not limit.is_active:
        return False
    return limit.expires_at is None or limit.expires_at > now


def effective_usage(limit: VelocityLimit, now: datetime) -> tuple[int, int]:
    """Counters as they stand at ``now``, treating an elapsed window as empty."""
    if _window_expired(limit, now):
        return 0, 0
    return limit.current_amount_minor, limit.current_transactions


def breach_for(limit: VelocityLimit, amount_minor: int, now: datetime) -> BreachedLimit | None:
    current_amount, current_count = effective_usage(limit, now)
    if (
        current_amount + amount_minor > limit.amount_limit_minor
        or current_count + 1 > limit.transaction_limit
    ):
        return BreachedLimit(
            limit_type=LimitType(limit.limit_type),
            current_amount_minor=current_amount,
            amount_limit_minor=limit.amount_limit_minor,
            current_transactions=current_count,
            transaction_limit=limit.transaction_limit,
            time_window_seconds=limit.time_window_seconds,
        )
    return None


def apply_usage(limit: VelocityLimit, amount_minor: int, now: datetime) -> None:
    """Roll the window if it elapsed, then add one transaction of ``amount_minor``."""
    if _window_expired(limit, now):
        limit.current_amount_minor = 0
        limit.current_transactions = 0
        limit.window_start = now
    limit.current_amount_minor += amount_minor
    limit.current_transactions += 1


class VelocityLimitTracker:
    """Checks and updates a user's velocity limits."""

    async def get_user_velocity_limits(
        self,
        user_id: str,
        session: AsyncSession,
        for_update: bool = False,
    ) -> list[VelocityLimit]:
        stmt = (
            select(VelocityLimit)
            .where(VelocityLimit.user_id == user_id, VelocityLimit.is_active.is_(True))
            .order_by(VelocityLimit.id)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def breaches(
        self,
        user_id: str,
        amount_minor: int,
        session: AsyncSession,
        now: datetime | None = None,
    ) -> list[BreachedLimit]:
        """Every active limit the payment would exceed. Does not mutate state."""
        now = now or datetime.now(UTC)
        limits = await self.get_user_velocity_limits(user_id, session)

        breached: list[BreachedLimit] = []
        for limit in limits:
            if not _applies(limit, now):
                continue
            breach = breach_for(limit, amount_minor, now)
            if breach is not None:
                breached.append(breach)

        if breached:
            logger.warning(
                "velocity_limit_exceeded",
                user_id=user_id,
                amount_minor=amount_minor,
                limit_types=[b.limit_type.value for b in breached],
            )
        return breached

    async def check(
        self,
        user_id: str,
        amount_minor: int,
        session: AsyncSession,
        now: datetime | None = None,
    ) -> bool:
        """True if the payment fits within every active limit."""
        return not await self.breaches(user_id, amount_minor, session, now)

    async def commit(
        self,
        user_id: str,
        amount_minor: int,
        session: AsyncSession,
        now: datetime | None = None,
    ) -> None:
        """Record an approved payment against every active limit."""
        if amount_minor < 0:
            raise ValueError("amount_minor must be non-negative")
        now = now or datetime.now(UTC)
        limits = await self.get_user_velocity_limits(user_id, session, for_update=True)
        for limit in limits:
            if _applies(limit, now):
                apply_usage(limit, amount_minor, now)
        await session.flush()
        logger.debug("velocity_committed", user_id=user_id, amount_minor=amount_minor)

    async def reserve(
        self,
        user_id: str,
        amount_minor: int,
        session: AsyncSession,
        now: datetime | None = None,
    ) -> bool:
        """Atomically check and record a payment under the user's row locks.

        Returns False, leaving every counter untouched, if any limit would be
        exceeded.
        """
        if amount_minor < 0:
            raise ValueError("amount_minor must be non-negative")
        now = now or datetime.now(UTC)
        limits = await self.get_user_velocity_limits(user_id, session, for_update=True)
        applicable = [limit for limit in limits if _applies(limit, now)]

        for limit in applicable:
            if breach_for(limit, amount_minor, now) is not None:
                logger.warning(
                    "velocity_reservation_rejected",
                    user_id=user_id,
                    amount_minor=amount_minor,
                    limit_type=limit.limit_type,
                )
                return False

        for limit in applicable:
            apply_usage(limit, amount_minor, now)
        await session.flush()
        return True

    async def set_velocity_limit(
        self,
        user_id: str,
        limit_type: LimitType,
        amount_limit_minor: int,
        transaction_limit: int,
        time_window: timedelta,
        session: AsyncSession,
        reason: str | None = None,
        expires_at: datetime | None = None,
    ) -> VelocityLimit:
        """Create or replace a user's limit of the given type."""
        if amount_limit_minor < 0 or transaction_limit < 0:
            raise ValueError("limits must be non-negative")
        if time_window <= timedelta(0):
            raise ValueError("time_window must be positive")

        stmt = select(VelocityLimit).where(
            VelocityLimit.user_id == user_id,
            VelocityLimit.limit_type == limit_type.value,
        )
        result = await session.execute(stmt)
        limit = result.scalar_one_or_none()

        if limit is not None:
            limit.amount_limit_minor = amount_limit_minor
            limit.transaction_limit = transaction_limit
            limit.time_window_seconds = int(time_window.total_seconds())
            limit.is_active = True
            limit.custom_reason = reason
            limit.expires_at = expires_at
        else:
            limit = VelocityLimit(
                user_id=user_id,
                limit_type=limit_type.value,
                amount_limit_minor=amount_limit_minor,
                transaction_limit=transaction_limit,
                time_window_seconds=int(time_window.total_seconds()),
                current_amount_minor=0,
                current_transactions=0,
                window_start=datetime.now(UTC),
                is_active=True,
                custom_reason=reason,
                expires_at=expires_at,
            )
            session.add(limit)

        await session.commit()
        logger.info(
            "velocity_limit_set",
            user_id=user_id,
            limit_type=limit_type.value,
            amount_limit_minor=amount_limit_minor,
            transaction_limit=transaction_limit,
            time_window_seconds=int(time_window.total_seconds()),
        )
        return limit
