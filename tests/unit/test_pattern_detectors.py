"""Unit tests for the structuring, back-and-forth and rapid-transaction detectors."""

from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from fraudguard.db.models import SuspiciousActivity
from fraudguard.domains.fraud import history
from fraudguard.domains.fraud.config import FraudConfig, PatternThresholds
from fraudguard.domains.fraud.models import ActivityStatus, ActivityType, TransactionEdge
from fraudguard.domains.fraud.patterns import (
    BACK_AND_FORTH,
    RAPID_TRANSACTIONS,
    STRUCTURING,
    PatternDetector,
    detect_back_and_forth,
    detect_rapid_transactions,
    detect_structuring,
)
from tests.conftest import NOW, make_result

# Small-scale structuring config: five payments totalling at least $1,000
STRUCTURING_CONFIG = FraudConfig(
    patterns=replace(
        PatternThresholds(),
        structuring_min_count=5,
        structuring_amount_threshold_minor=100_000,
    )
)


def _edge(payer="alice", payee="bob", dollars=100, minutes_ago=10) -> TransactionEdge:
    return TransactionEdge(
        payer_id=payer,
        payee_id=payee,
        amount_minor=dollars * 100,
        processed_at=NOW - timedelta(minutes=minutes_ago),
    )


def _payments(amounts, payer="alice", spacing_minutes=60):
    return [
        _edge(payer=payer, payee=f"shop-{i}", dollars=a, minutes_ago=(i + 1) * spacing_minutes)
        for i, a in enumerate(amounts)
    ]


class TestStructuringDetection:
    def test_uniform_small_payments_flagged(self):
        txns = _payments([199, 201, 198, 202, 200])
        result = detect_structuring("alice", txns, NOW, STRUCTURING_CONFIG)
        assert result.triggered
        assert result.detector == STRUCTURING
        assert result.evidence.total_minor == 100_000
        assert result.evidence.mean_minor == 20_000
        assert result.evidence.transaction_count == 5
        # MAD = (1 + 1 + 2 + 2 + 0) / 5 = $1.20
        assert result.evidence.mean_abs_deviation_minor == 120

    def test_high_variance_not_flagged(self):
        txns = _payments([50, 600, 100, 900, 50])
        result = detect_structuring("alice", txns, NOW, STRUCTURING_CONFIG)
        assert not result.triggered
        assert result.evidence.total_minor == 170_000

    def test_below_min_count_not_flagged(self):
        txns = _payments([200, 200, 200, 200])
        result = detect_structuring("alice", txns, NOW, STRUCTURING_CONFIG)
        assert not result.triggered
        assert result.evidence is None

    def test_total_below_threshold_not_flagged(self):
        txns = _payments([100, 100, 100, 100, 100])
        result = detect_structuring("alice", txns, NOW, STRUCTURING_CONFIG)
        assert not result.triggered

    def test_mean_at_or_above_ceiling_not_flagged(self):
        txns = _payments([1000, 1000, 1000, 1000, 1000])
        result = detect_structuring("alice", txns, NOW, STRUCTURING_CONFIG)
        assert not result.triggered

    def test_payments_outside_window_ignored(self):
        txns = _payments([199, 201, 198, 202, 200], spacing_minutes=60 * 6)
        result = detect_structuring("alice", txns, NOW, STRUCTURING_CONFIG)
        assert not result.triggered

    def test_default_thresholds_need_ten_payments(self):
        txns = _payments([999] * 11, spacing_minutes=60)
        assert detect_structuring("alice", txns, NOW, FraudConfig()).triggered
        assert not detect_structuring("alice", txns[:9], NOW, FraudConfig()).triggered

    def test_other_payers_ignored(self):
        txns = _payments([199, 201, 198, 202, 200], payer="mallory")
        result = detect_structuring("alice", txns, NOW, STRUCTURING_CONFIG)
        assert not result.triggered


class TestBackAndForthDetection:
    def test_three_reciprocal_payments_flagged(self):
        txns = [
            _edge("alice", "bob", minutes_ago=30),
            _edge("bob", "alice", minutes_ago=20),
            _edge("alice", "bob", minutes_ago=10),
        ]
        result = detect_back_and_forth("alice", "bob", txns, NOW, FraudConfig())
        assert result.triggered
        assert result.detector == BACK_AND_FORTH
        assert result.evidence.reciprocal_count == 3
        assert result.evidence.threshold == 3

    def test_two_reciprocal_payments_not_flagged(self):
        txns = [_edge("alice", "bob"), _edge("bob", "alice")]
        result = detect_back_and_forth("alice", "bob", txns, NOW, FraudConfig())
        assert not result.triggered
        assert result.evidence.reciprocal_count == 2

    def test_unrelated_and_stale_payments_ignored(self):
        txns = [
            _edge("alice", "bob"),
            _edge("bob", "alice"),
            _edge("alice", "carol"),
            _edge("bob", "alice", minutes_ago=60 * 25),
        ]
        result = detect_back_and_forth("alice", "bob", txns, NOW, FraudConfig())
        assert not result.triggered


class TestRapidTransactionDetection:
    def test_burst_flagged(self):
        txns = [_edge(minutes_ago=m) for m in (1, 2, 3, 4, 5)]
        result = detect_rapid_transactions("alice", txns, NOW, FraudConfig())
        assert result.triggered
        assert result.detector == RAPID_TRANSACTIONS
        assert result.evidence.transaction_count == 5
        assert result.evidence.window_seconds == 900

    def test_spread_out_not_flagged(self):
        txns = [_edge(minutes_ago=m) for m in (1, 2, 3, 4, 20)]
        result = detect_rapid_transactions("alice", txns, NOW, FraudConfig())
        assert not result.triggered
        assert result.evidence.transaction_count == 4


class TestPatternDetectorScan:
    detector = PatternDetector()

    @pytest.mark.asyncio
    async def test_scan_runs_all_detectors(self, mock_db_session):
        burst = [_edge(minutes_ago=m) for m in (1, 2, 3, 4, 5)]
        pair = [_edge("alice", "bob"), _edge("bob", "alice"), _edge("alice", "bob")]

        with (
            patch.object(history, "recent_payments_by_payer", AsyncMock(return_value=burst)),
            patch.object(history, "payments_between", AsyncMock(return_value=pair)),
        ):
            scan = await self.detector.scan(
                "alice", mock_db_session, FraudConfig(), NOW, counterparty_id="bob"
            )

        assert {r.detector for r in scan.results} == {STRUCTURING, RAPID_TRANSACTIONS, BACK_AND_FORTH}
        assert scan.triggered(RAPID_TRANSACTIONS) is not None
        assert scan.triggered(BACK_AND_FORTH) is not None
        assert scan.triggered(STRUCTURING) is None
        assert scan.caveats == []

    @pytest.mark.asyncio
    async def test_history_failure_becomes_caveat(self, mock_db_session):
        pair = [_edge("alice", "bob")] * 3
        with (
            patch.object(
                history, "recent_payments_by_payer", AsyncMock(side_effect=RuntimeError("db"))
            ),
            patch.object(history, "payments_between", AsyncMock(return_value=pair)),
        ):
            scan = await self.detector.scan(
                "alice", mock_db_session, FraudConfig(), NOW, counterparty_id="bob"
            )

        assert len(scan.caveats) == 1
        assert "RuntimeError" in scan.caveats[0]
        assert scan.triggered(BACK_AND_FORTH) is not None

    @pytest.mark.asyncio
    async def test_failing_detector_does_not_stop_others(self, mock_db_session):
        burst = [_edge(minutes_ago=m) for m in (1, 2, 3, 4, 5)]
        with (
            patch.object(history, "recent_payments_by_payer", AsyncMock(return_value=burst)),
            patch(
                "fraudguard.domains.fraud.patterns.detect_structuring",
                side_effect=ValueError("malformed"),
            ),
        ):
            scan = await self.detector.scan("alice", mock_db_session, FraudConfig(), NOW)

        assert any(STRUCTURING in c for c in scan.caveats)
        assert scan.triggered(RAPID_TRANSACTIONS) is not None


class TestRecordActivity:
    detector = PatternDetector()

    @pytest.mark.asyncio
    async def test_creates_new_activity(self, mock_db_session):
        mock_db_session.execute.return_value = make_result(rows=[])

        activity = await self.detector.record_activity(
            "alice",
            ActivityType.STRUCTURING_BEHAVIOR,
            "structuring",
            70.0,
            mock_db_session,
            pattern_data={"total_minor": 100_000},
            now=NOW,
        )

        mock_db_session.add.assert_called_once_with(activity)
        assert activity.frequency == 1
        assert activity.status == ActivityStatus.ACTIVE.value
        assert activity.first_detected_at == NOW
        assert activity.pattern_data == {"total_minor": 100_000}

    @pytest.mark.asyncio
    async def test_bumps_existing_active_activity(self, mock_db_session):
        existing = SuspiciousActivity(
            activity_id="act-1",
            user_id="alice",
            activity_type=ActivityType.RAPID_TRANSACTIONS.value,
            description="old",
            risk_score=50.0,
            pattern_data={},
            related_user_ids=["bob"],
            frequency=2,
            first_detected_at=NOW - timedelta(days=2),
            last_detected_at=NOW - timedelta(days=1),
            status=ActivityStatus.ACTIVE.value,
            requires_manual_review=False,
            created_at=NOW - timedelta(days=2),
        )
        mock_db_session.execute.return_value = make_result(rows=[existing])
        mock_db_session.add = MagicMock()

        activity = await self.detector.record_activity(
            "alice",
            ActivityType.RAPID_TRANSACTIONS,
            "new",
            40.0,
            mock_db_session,
            related_user_ids=["carol"],
            now=NOW,
        )

        assert activity is existing
        assert activity.frequency == 3
        assert activity.last_detected_at == NOW
        assert activity.first_detected_at == NOW - timedelta(days=2)
        assert activity.risk_score == 50.0
        assert activity.related_user_ids == ["bob", "carol"]
        mock_db_session.add.assert_not_called()
