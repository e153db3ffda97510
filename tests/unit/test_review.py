"""Unit tests for admin review operations."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from fraudguard.db.models import RiskCheck, SuspiciousActivity
from fraudguard.domains.fraud import review
from fraudguard.domains.fraud.errors import (
    InvalidReviewStateError,
    RiskCheckNotFoundError,
    SuspiciousActivityNotFoundError,
)
from fraudguard.domains.fraud.models import ActivityStatus, ActivityType, CheckStatus
from tests.conftest import NOW, make_result


def _check(status=CheckStatus.PENDING) -> RiskCheck:
    return RiskCheck(
        check_id="chk-1",
        user_id="alice",
        payment_id="pay-1",
        check_type="pattern_analysis",
        risk_score=72.0,
        risk_level="high",
        triggered_rules=["critical_amount_threshold"],
        status=status.value,
        created_at=NOW,
    )


def _flag(activity_id="act-1") -> SuspiciousActivity:
    return SuspiciousActivity(
        activity_id=activity_id,
        user_id="alice",
        activity_type=ActivityType.HIGH_RISK_USER.value,
        description="User flagged: chargebacks",
        risk_score=90.0,
        frequency=1,
        status=ActivityStatus.ACTIVE.value,
        created_at=NOW - timedelta(days=1),
    )


class TestReviewRiskCheck:
    @pytest.mark.asyncio
    async def test_approve_pending_check(self, mock_db_session):
        check = _check()
        mock_db_session.execute.return_value = make_result(scalar_or_none=check)

        result = await review.review_risk_check(
            "chk-1", True, "Known customer", "admin-1", mock_db_session
        )

        assert result.status == CheckStatus.APPROVED.value
        assert result.reviewed_by == "admin-1"
        assert result.review_notes == "Known customer"
        assert result.reviewed_at is not None
        mock_db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reject_check_under_review(self, mock_db_session):
        check = _check(CheckStatus.UNDER_REVIEW)
        mock_db_session.execute.return_value = make_result(scalar_or_none=check)

        result = await review.review_risk_check(
            "chk-1", False, "Confirmed fraud", "admin-1", mock_db_session
        )

        assert result.status == CheckStatus.REJECTED.value

    @pytest.mark.asyncio
    async def test_decided_check_cannot_be_reviewed_again(self, mock_db_session):
        mock_db_session.execute.return_value = make_result(
            scalar_or_none=_check(CheckStatus.REJECTED)
        )

        with pytest.raises(InvalidReviewStateError):
            await review.review_risk_check("chk-1", True, "oops", "admin-2", mock_db_session)
        mock_db_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_check(self, mock_db_session):
        mock_db_session.execute.return_value = make_result(scalar_or_none=None)

        with pytest.raises(RiskCheckNotFoundError):
            await review.review_risk_check("nope", True, "", "admin-1", mock_db_session)


class TestStartReview:
    @pytest.mark.asyncio
    async def test_claims_pending_check(self, mock_db_session):
        check = _check()
        mock_db_session.execute.return_value = make_result(scalar_or_none=check)

        result = await review.start_review("chk-1", "admin-1", mock_db_session)

        assert result.status == CheckStatus.UNDER_REVIEW.value
        assert result.reviewed_by == "admin-1"

    @pytest.mark.asyncio
    async def test_only_pending_checks_can_be_claimed(self, mock_db_session):
        mock_db_session.execute.return_value = make_result(
            scalar_or_none=_check(CheckStatus.UNDER_REVIEW)
        )

        with pytest.raises(InvalidReviewStateError):
            await review.start_review("chk-1", "admin-2", mock_db_session)


class TestQueues:
    @pytest.mark.asyncio
    async def test_pending_reviews(self, mock_db_session):
        checks = [_check(), _check(CheckStatus.UNDER_REVIEW)]
        mock_db_session.execute.return_value = make_result(rows=checks)

        assert await review.get_pending_reviews(mock_db_session, limit=10) == checks

    @pytest.mark.asyncio
    async def test_active_activities(self, mock_db_session):
        activities = [_flag()]
        mock_db_session.execute.return_value = make_result(rows=activities)

        assert await review.get_active_suspicious_activities(mock_db_session) == activities


class TestResolveSuspiciousActivity:
    @pytest.mark.asyncio
    async def test_mark_false_positive(self, mock_db_session):
        activity = _flag()
        mock_db_session.execute.return_value = make_result(scalar_or_none=activity)

        result = await review.resolve_suspicious_activity(
            "act-1", ActivityStatus.FALSE_POSITIVE, "Payroll batch", "admin-1", mock_db_session
        )

        assert result.status == ActivityStatus.FALSE_POSITIVE.value
        assert result.investigation_notes == "Payroll batch"
        assert result.resolved_by == "admin-1"
        mock_db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cannot_resolve_to_active(self, mock_db_session):
        mock_db_session.execute.return_value = make_result(scalar_or_none=_flag())

        with pytest.raises(ValueError):
            await review.resolve_suspicious_activity(
                "act-1", ActivityStatus.ACTIVE, "", "admin-1", mock_db_session
            )

    @pytest.mark.asyncio
    async def test_missing_activity(self, mock_db_session):
        mock_db_session.execute.return_value = make_result(scalar_or_none=None)

        with pytest.raises(SuspiciousActivityNotFoundError):
            await review.resolve_suspicious_activity(
                "nope", ActivityStatus.RESOLVED, "", "admin-1", mock_db_session
            )


class TestUserFlags:
    @pytest.mark.asyncio
    async def test_flag_user_records_high_risk_activity(self, mock_db_session):
        detector = AsyncMock()
        detector.record_activity.return_value = _flag()

        await review.flag_user(
            "alice", "chargebacks", "admin-1", mock_db_session, detector=detector
        )

        args = detector.record_activity.await_args.args
        assert args[0] == "alice"
        assert args[1] == ActivityType.HIGH_RISK_USER
        assert args[3] == 90.0
        assert detector.record_activity.await_args.kwargs["requires_manual_review"]
        mock_db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unflag_resolves_active_flags(self, mock_db_session):
        flags = [_flag("act-1"), _flag("act-2")]
        mock_db_session.execute.return_value = make_result(rows=flags)

        resolved = await review.unflag_user("alice", "cleared", "admin-1", mock_db_session)

        assert resolved == 2
        assert all(f.status == ActivityStatus.RESOLVED.value for f in flags)
        assert all(f.resolved_by == "admin-1" for f in flags)

    @pytest.mark.asyncio
    async def test_is_user_flagged(self, mock_db_session):
        mock_db_session.execute.return_value = make_result(scalar_or_none=7)
        assert await review.is_user_flagged("alice", mock_db_session)

        mock_db_session.execute.return_value = make_result(scalar_or_none=None)
        assert not await review.is_user_flagged("bob", mock_db_session)
