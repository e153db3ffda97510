"""Transaction pattern detectors.

Three independent detectors run over a snapshot of completed payments:

  1. Structuring        many near-uniform small payments whose total crosses
                        a laundering-relevant threshold
  2. Back-and-forth     repeated reciprocal payments between the same pair
  3. Rapid transactions a burst of payments from one user in a short window

The ``detect_*`` functions are pure: they take the snapshot and a reference
time and return a ``DetectionResult`` carrying raw evidence. ``PatternDetector``
loads the snapshot and runs each detector in isolation; ``record_activity``
persists or bumps the ``SuspiciousActivity`` row for a detection.

The structuring heuristic does not exempt legitimate recurring payments
(e.g. matching rent installments); its thresholds need product review.
"""

import uuid
from collections.abc import Callable
from datetime import UTC, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fraudguard.db.models import SuspiciousActivity

from . import history
from .config import FraudConfig, default_config
from .models import (
    ActivityStatus,
    ActivityType,
    BackAndForthEvidence,
    DetectionResult,
    PatternScan,
    RapidTransactionsEvidence,
    StructuringEvidence,
    TransactionEdge,
)

logger = structlog.get_logger()

STRUCTURING = "structuring"
BACK_AND_FORTH = "back_and_forth"
RAPID_TRANSACTIONS = "rapid_transactions"


def _within(edges: list[TransactionEdge], cutoff: datetime) -> list[TransactionEdge]:
    return [e for e in edges if e.processed_at >= cutoff]


# ---------------------------------------------------------------------------
# 1. Structuring
# ---------------------------------------------------------------------------


def detect_structuring(
    user_id: str,
    transactions: list[TransactionEdge],
    now: datetime,
    config: FraudConfig = default_config,
) -> DetectionResult:
    """Flag near-uniform sub-ceiling payments whose total crosses the threshold.

    With n payments totalling T, the mean is T/n and the mean absolute
    deviation is sum(|a*n - T|) / n**2, so "MAD < 0.1 * mean" is checked
    exactly as ``10 * sum(|a*n - T|) < T * n`` in integer minor units.
    """
    cfg = config.patterns
    window = cfg.structuring_window
    amounts = [
        e.amount_minor for e in _within(transactions, now - window) if e.payer_id == user_id
    ]
    n = len(amounts)
    if n < cfg.structuring_min_count or n == 0:
        return DetectionResult(detector=STRUCTURING, triggered=False)

    total = sum(amounts)
    deviation_sum = sum(abs(a * n - total) for a in amounts)

    triggered = (
        total >= cfg.structuring_amount_threshold_minor
        and 10 * deviation_sum < total * n
        and total < cfg.structuring_mean_ceiling_minor * n
    )

    evidence = StructuringEvidence(
        user_id=user_id,
        transaction_count=n,
        min_count=cfg.structuring_min_count,
        total_minor=total,
        amount_threshold_minor=cfg.structuring_amount_threshold_minor,
        mean_minor=total // n,
        mean_abs_deviation_minor=deviation_sum // (n * n),
        window_seconds=int(window.total_seconds()),
    )
    return DetectionResult(detector=STRUCTURING, triggered=triggered, evidence=evidence)


# ---------------------------------------------------------------------------
# 2. Back-and-forth
# ---------------------------------------------------------------------------


def detect_back_and_forth(
    user_id: str,
    counterparty_id: str,
    transactions: list[TransactionEdge],
    now: datetime,
    config: FraudConfig = default_config,
) -> DetectionResult:
    """Count payments in either direction between the pair within the window."""
    cfg = config.patterns
    window = cfg.back_and_forth_window
    pair = {(user_id, counterparty_id), (counterparty_id, user_id)}
    count = sum(
        1 for e in _within(transactions, now - window) if (e.payer_id, e.payee_id) in pair
    )

    evidence = BackAndForthEvidence(
        user_id=user_id,
        counterparty_id=counterparty_id,
        reciprocal_count=count,
        threshold=cfg.back_and_forth_threshold,
        window_seconds=int(window.total_seconds()),
    )
    return DetectionResult(
        detector=BACK_AND_FORTH,
        triggered=count >= cfg.back_and_forth_threshold,
        evidence=evidence,
    )


# ---------------------------------------------------------------------------
# 3. Rapid transactions
# ---------------------------------------------------------------------------


def detect_rapid_transactions(
    user_id: str,
    transactions: list[TransactionEdge],
    now: datetime,
    config: FraudConfig = default_config,
) -> DetectionResult:
    cfg = config.patterns
    window = cfg.rapid_transaction_window
    count = sum(1 for e in _within(transactions, now - window) if e.payer_id == user_id)

    evidence = RapidTransactionsEvidence(
        user_id=user_id,
        transaction_count=count,
        threshold=cfg.rapid_transaction_threshold,
        window_seconds=int(window.total_seconds()),
    )
    return DetectionResult(
        detector=RAPID_TRANSACTIONS,
        triggered=count >= cfg.rapid_transaction_threshold,
        evidence=evidence,
    )


# ---------------------------------------------------------------------------
# Snapshot loading and persistence
# ---------------------------------------------------------------------------


class PatternDetector:
    """Runs the detectors for one user and records what they find."""

    async def scan(
        self,
        user_id: str,
        session: AsyncSession,
        config: FraudConfig = default_config,
        now: datetime | None = None,
        counterparty_id: str | None = None,
        detectors: tuple[str, ...] = (STRUCTURING, RAPID_TRANSACTIONS, BACK_AND_FORTH),
    ) -> PatternScan:
        """Load the user's snapshot once and run each requested detector.

        A detector that fails is skipped and reported in ``caveats``; the
        others still run.
        """
        now = now or datetime.now(UTC)
        scan = PatternScan(user_id=user_id)
        cfg = config.patterns

        payer_snapshot: list[TransactionEdge] | None = None
        if STRUCTURING in detectors or RAPID_TRANSACTIONS in detectors:
            lookback = max(cfg.structuring_window, cfg.rapid_transaction_window)
            try:
                payer_snapshot = await history.recent_payments_by_payer(
                    session, user_id, now - lookback
                )
            except Exception as exc:
                logger.exception("pattern_snapshot_failed", user_id=user_id)
                scan.caveats.append(f"transaction history unavailable: {type(exc).__name__}")

        if payer_snapshot is not None:
            if STRUCTURING in detectors:
                self._run(
                    scan, STRUCTURING, detect_structuring, user_id, payer_snapshot, now, config
                )
            if RAPID_TRANSACTIONS in detectors:
                self._run(
                    scan,
                    RAPID_TRANSACTIONS,
                    detect_rapid_transactions,
                    user_id,
                    payer_snapshot,
                    now,
                    config,
                )

        if BACK_AND_FORTH in detectors and counterparty_id:
            try:
                pair_snapshot = await history.payments_between(
                    session, user_id, counterparty_id, now - cfg.back_and_forth_window
                )
            except Exception as exc:
                logger.exception(
                    "pattern_snapshot_failed", user_id=user_id, counterparty_id=counterparty_id
                )
                scan.caveats.append(f"pair history unavailable: {type(exc).__name__}")
            else:
                try:
                    scan.results.append(
                        detect_back_and_forth(user_id, counterparty_id, pair_snapshot, now, config)
                    )
                except Exception as exc:
                    logger.exception("detector_failed", detector=BACK_AND_FORTH, user_id=user_id)
                    scan.caveats.append(f"{BACK_AND_FORTH} detector failed: {type(exc).__name__}")

        logger.debug(
            "pattern_scan_completed",
            user_id=user_id,
            triggered=[r.detector for r in scan.results if r.triggered],
            caveats=len(scan.caveats),
        )
        return scan

    @staticmethod
    def _run(
        scan: PatternScan,
        name: str,
        fn: Callable[[str, list[TransactionEdge], datetime, FraudConfig], DetectionResult],
        user_id: str,
        snapshot: list[TransactionEdge],
        now: datetime,
        config: FraudConfig,
    ) -> None:
        try:
            scan.results.append(fn(user_id, snapshot, now, config))
        except Exception as exc:
            logger.exception("detector_failed", detector=name, user_id=user_id)
            scan.caveats.append(f"{name} detector failed: {type(exc).__name__}")

    async def record_activity(
        self,
        user_id: str,
        activity_type: ActivityType,
        description: str,
        risk_score: float,
        session: AsyncSession,
        pattern_data: dict | None = None,
        related_user_ids: list[str] | None = None,
        requires_manual_review: bool = False,
        now: datetime | None = None,
    ) -> SuspiciousActivity:
        """Create a SuspiciousActivity, or bump the user's active one of that type."""
        now = now or datetime.now(UTC)

        stmt = select(SuspiciousActivity).where(
            SuspiciousActivity.user_id == user_id,
            SuspiciousActivity.activity_type == activity_type.value,
            SuspiciousActivity.status == ActivityStatus.ACTIVE.value,
        )
        result = await session.execute(stmt)
        existing = result.scalars().first()

        if existing is not None:
            existing.frequency += 1
            existing.last_detected_at = now
            existing.risk_score = max(existing.risk_score, risk_score)
            existing.description = description
            if pattern_data is not None:
                existing.pattern_data = pattern_data
            if related_user_ids:
                existing.related_user_ids = sorted(
                    set(existing.related_user_ids or []) | set(related_user_ids)
                )
            existing.requires_manual_review = existing.requires_manual_review or (
                requires_manual_review
            )
            activity = existing
        else:
            activity = SuspiciousActivity(
                activity_id=str(uuid.uuid4()),
                user_id=user_id,
                activity_type=activity_type.value,
                description=description,
                risk_score=risk_score,
                pattern_data=pattern_data or {},
                related_user_ids=sorted(set(related_user_ids or [])),
                frequency=1,
                first_detected_at=now,
                last_detected_at=now,
                status=ActivityStatus.ACTIVE.value,
                requires_manual_review=requires_manual_review,
                created_at=now,
            )
            session.add(activity)

        logger.warning(
            "suspicious_activity_recorded",
            user_id=user_id,
            activity_id=activity.activity_id,
            activity_type=activity_type.value,
            frequency=activity.frequency,
            risk_score=activity.risk_score,
        )
        return activity
