"""Risk evaluation: rules -> weighted score -> decision -> persisted check -> alert.

Scoring is additive on a 0-100 scale:

    velocity breach            +30
    amount >= critical         +40   (else amount >= high  +20)
    round amount               +10
    back-and-forth pair        +25
    long-term user risk        x 0.3
    rapid transactions         +20
    known malicious IP         +50

Each rule runs in isolation. A rule that raises contributes nothing and is
recorded as a caveat. Anything that escapes the rules (storage, commit)
resolves to a fail-closed decision: not approved, review required.
"""

import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from fraudguard.db.models import RiskCheck, SuspiciousActivity

from .alerts import AlertNotifier, LoggingAlertNotifier, notify_review_required
from .config import ConfigProvider, FraudConfig
from .graph import TransactionGraphAnalyzer
from .models import (
    ActivityType,
    AmountThresholdEvidence,
    CheckStatus,
    CheckType,
    CircularNetworkEvidence,
    DetectedActivity,
    EvaluationContext,
    MaliciousIpEvidence,
    PatternScan,
    PaymentRecord,
    RiskDecision,
    RiskLevel,
    RoundAmountEvidence,
    RuleHit,
    RuleName,
    UserRiskEvidence,
    VelocityEvidence,
    max_level,
)
from .money import format_minor, fractional_minor, is_round_amount
from .patterns import (
    BACK_AND_FORTH,
    RAPID_TRANSACTIONS,
    STRUCTURING,
    PatternDetector,
)
from .profiler import UserRiskProfiler
from .velocity import VelocityLimitTracker

logger = structlog.get_logger()

CaptureFn = Callable[[AsyncSession], Awaitable[None]]

AUTO_BLOCK_REASON = "High fraud risk detected. Manual review required."
SYSTEM_ERROR_REASON = "System error during fraud check. Manual review required."
VELOCITY_RACE_REASON = "Velocity limit reached by a concurrent payment. Manual review required."


def classify_risk_level(score: float, config: FraudConfig) -> RiskLevel:
    cfg = config.scoring
    if score >= cfg.critical_level:
        return RiskLevel.CRITICAL
    if score >= cfg.high_level:
        return RiskLevel.HIGH
    if score >= cfg.medium_level:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def clamp_score(score: float) -> float:
    return round(max(0.0, min(score, 100.0)), 2)


def amount_rule(payment: PaymentRecord, config: FraudConfig) -> RuleHit | None:
    amount = payment.amount_minor
    if amount >= config.amount.critical_risk_minor:
        return RuleHit(
            rule=RuleName.CRITICAL_AMOUNT_THRESHOLD,
            points=config.scoring.critical_amount_points,
            evidence=AmountThresholdEvidence(
                amount_minor=amount,
                threshold_minor=config.amount.critical_risk_minor,
                tier="critical",
            ),
        )
    if amount >= config.amount.high_risk_minor:
        return RuleHit(
            rule=RuleName.HIGH_AMOUNT_THRESHOLD,
            points=config.scoring.high_amount_points,
            evidence=AmountThresholdEvidence(
                amount_minor=amount,
                threshold_minor=config.amount.high_risk_minor,
                tier="high",
            ),
        )
    return None


def round_amount_rule(payment: PaymentRecord, config: FraudConfig) -> RuleHit | None:
    tolerance = config.amount.round_amount_tolerance_minor
    if not is_round_amount(payment.amount_minor, tolerance):
        return None
    return RuleHit(
        rule=RuleName.ROUND_AMOUNT_PATTERN,
        points=config.scoring.round_amount_points,
        evidence=RoundAmountEvidence(
            amount_minor=payment.amount_minor,
            fractional_minor=fractional_minor(payment.amount_minor),
            tolerance_minor=tolerance,
        ),
    )


def malicious_ip_rule(context: EvaluationContext, config: FraudConfig) -> RuleHit | None:
    if not context.ip_address or context.ip_address not in config.blocked_ips:
        return None
    return RuleHit(
        rule=RuleName.KNOWN_MALICIOUS_IP,
        points=config.scoring.malicious_ip_points,
        evidence=MaliciousIpEvidence(ip_address=context.ip_address),
    )


def level_floor(hits: list[RuleHit]) -> RiskLevel:
    """Lowest risk level the triggered rules allow, independent of the score."""
    if any(h.rule == RuleName.CRITICAL_AMOUNT_THRESHOLD for h in hits):
        return RiskLevel.HIGH
    return RiskLevel.LOW


class RiskEvaluator:
    """Composes velocity, pattern, network and profile signals into a decision."""

    def __init__(
        self,
        config_provider: ConfigProvider | None = None,
        notifier: AlertNotifier | None = None,
        velocity: VelocityLimitTracker | None = None,
        detector: PatternDetector | None = None,
        graph: TransactionGraphAnalyzer | None = None,
        profiler: UserRiskProfiler | None = None,
    ) -> None:
        self._config_provider = config_provider or ConfigProvider(FraudConfig())
        self._notifier = notifier if notifier is not None else LoggingAlertNotifier()
        self._velocity = velocity or VelocityLimitTracker()
        self._detector = detector or PatternDetector()
        self._graph = graph or TransactionGraphAnalyzer()
        self._profiler = profiler or UserRiskProfiler()
        logger.info("risk_evaluator_initialized")

    @property
    def config_provider(self) -> ConfigProvider:
        return self._config_provider

    # ------------------------------------------------------------------
    # Payment evaluation
    # ------------------------------------------------------------------

    async def evaluate(
        self,
        payment: PaymentRecord,
        session: AsyncSession,
        context: EvaluationContext | None = None,
    ) -> RiskDecision:
        """Evaluate a payment attempt, persist the check and commit it."""
        decision, check = await self._evaluate_payment(payment, session, context, commit=True)
        if check is not None and decision.requires_review:
            await notify_review_required(check, self._notifier)
        return decision

    async def calculate_payment_risk_score(
        self,
        payment: PaymentRecord,
        session: AsyncSession,
        context: EvaluationContext | None = None,
    ) -> float:
        decision = await self.evaluate(payment, session, context)
        return decision.risk_score

    async def authorize_capture(
        self,
        payment: PaymentRecord,
        session: AsyncSession,
        capture: CaptureFn,
        context: EvaluationContext | None = None,
    ) -> RiskDecision:
        """Evaluate and, if approved, capture in one transaction.

        The risk check, the velocity reservation and whatever ``capture``
        writes are committed together. If the reservation loses to a
        concurrent payment the decision is downgraded to review and nothing
        is captured. Any failure rolls everything back and fails closed.
        """
        decision, check = await self._evaluate_payment(payment, session, context, commit=False)
        if decision.fail_closed or check is None:
            return decision

        now = (context.evaluated_at if context else None) or datetime.now(UTC)
        try:
            if decision.approved:
                reserved = await self._velocity.reserve(
                    payment.payer_id, payment.amount_minor, session, now
                )
                if reserved:
                    await capture(session)
                else:
                    decision = self._downgrade_after_lost_reservation(decision, check)
            await session.commit()
        except Exception as exc:
            logger.exception(
                "payment_authorization_failed",
                payment_id=payment.payment_id,
                user_id=payment.payer_id,
            )
            await self._safe_rollback(session)
            return self._fail_closed(decision.risk_score, decision.evidence, decision.caveats, exc)

        if decision.requires_review:
            await notify_review_required(check, self._notifier)

        logger.info(
            "payment_authorized" if decision.approved else "payment_held",
            payment_id=payment.payment_id,
            user_id=payment.payer_id,
            risk_score=decision.risk_score,
            requires_review=decision.requires_review,
        )
        return decision

    async def _evaluate_payment(
        self,
        payment: PaymentRecord,
        session: AsyncSession,
        context: EvaluationContext | None,
        commit: bool,
    ) -> tuple[RiskDecision, RiskCheck | None]:
        context = context or EvaluationContext()
        cfg = self._config_provider.current
        now = context.evaluated_at or datetime.now(UTC)
        user_id = payment.payer_id

        hits: list[RuleHit] = []
        caveats: list[str] = []

        try:
            hits, caveats, scan = await self._collect_payment_hits(
                payment, session, context, cfg, now
            )
            score = clamp_score(sum(h.points for h in hits))
            level = max_level(classify_risk_level(score, cfg), level_floor(hits))

            approved = True
            requires_review = False
            blocking_reason = None
            if score >= cfg.review.auto_block_score:
                approved = False
                requires_review = True
                blocking_reason = AUTO_BLOCK_REASON
            elif score >= cfg.review.manual_review_score:
                requires_review = True
                if cfg.review.hold_on_review:
                    approved = False
                    blocking_reason = "Payment held pending manual review."

            activities = await self._record_scan_activities(user_id, scan, session, cfg, now)

            check = RiskCheck(
                check_id=str(uuid.uuid4()),
                user_id=user_id,
                payment_id=payment.payment_id,
                check_type=CheckType.PATTERN_ANALYSIS.value,
                risk_score=score,
                risk_level=level.value,
                triggered_rules=[h.rule.value for h in hits],
                check_details={
                    "score_method": "sum",
                    "payment_amount_minor": payment.amount_minor,
                    "currency": payment.currency,
                    "payee_id": payment.payee_id,
                    "evidence": [h.model_dump(mode="json") for h in hits],
                    "caveats": caveats,
                    "activities": [a.activity_id for a in activities],
                    "checked_at": now.isoformat(),
                },
                status=(
                    CheckStatus.APPROVED.value
                    if approved and not requires_review
                    else CheckStatus.PENDING.value
                ),
                payment_blocked=not approved,
                user_flagged=score >= cfg.review.auto_block_score,
                admin_notified=requires_review,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                device_fingerprint=context.device_fingerprint,
                created_at=now,
            )
            session.add(check)
            if commit:
                await session.commit()
            else:
                await session.flush()
        except Exception as exc:
            logger.exception(
                "risk_evaluation_failed", payment_id=payment.payment_id, user_id=user_id
            )
            await self._safe_rollback(session)
            partial = clamp_score(sum(h.points for h in hits))
            return self._fail_closed(partial, hits, caveats, exc), None

        decision = RiskDecision(
            approved=approved,
            risk_score=score,
            risk_level=level,
            triggered_rules=[h.rule for h in hits],
            requires_review=requires_review,
            blocking_reason=blocking_reason,
            evidence=hits,
            caveats=caveats,
            detected_activities=[self._to_detected(a) for a in activities],
            risk_check_id=check.check_id,
        )

        logger.info(
            "risk_evaluated",
            payment_id=payment.payment_id,
            user_id=user_id,
            amount=format_minor(payment.amount_minor),
            risk_score=score,
            risk_level=level.value,
            triggered_rules=[h.rule.value for h in hits],
            approved=approved,
            requires_review=requires_review,
            caveats=len(caveats),
        )
        return decision, check

    async def _collect_payment_hits(
        self,
        payment: PaymentRecord,
        session: AsyncSession,
        context: EvaluationContext,
        cfg: FraudConfig,
        now: datetime,
    ) -> tuple[list[RuleHit], list[str], PatternScan]:
        hits: list[RuleHit] = []
        caveats: list[str] = []
        user_id = payment.payer_id

        # 1. Velocity limits
        try:
            breached = await self._velocity.breaches(user_id, payment.amount_minor, session, now)
            if breached:
                hits.append(
                    RuleHit(
                        rule=RuleName.VELOCITY_LIMIT,
                        points=cfg.scoring.velocity_points,
                        evidence=VelocityEvidence(
                            amount_minor=payment.amount_minor, breached_limits=breached
                        ),
                    )
                )
        except Exception as exc:
            self._caveat(caveats, RuleName.VELOCITY_LIMIT, exc, user_id)

        # 2-3. Amount thresholds and round amounts
        for rule_name, rule in (
            (RuleName.CRITICAL_AMOUNT_THRESHOLD, amount_rule),
            (RuleName.ROUND_AMOUNT_PATTERN, round_amount_rule),
        ):
            try:
                if hit := rule(payment, cfg):
                    hits.append(hit)
            except Exception as exc:
                self._caveat(caveats, rule_name, exc, user_id)

        # 4, 6. Pattern detectors (back-and-forth, rapid, structuring)
        scan = PatternScan(user_id=user_id)
        try:
            scan = await self._detector.scan(
                user_id, session, cfg, now, counterparty_id=payment.payee_id
            )
        except Exception as exc:
            self._caveat(caveats, "pattern_scan", exc, user_id)
        caveats.extend(scan.caveats)

        if result := scan.triggered(BACK_AND_FORTH):
            hits.append(
                RuleHit(
                    rule=RuleName.BACK_AND_FORTH_TRANSACTION,
                    points=cfg.scoring.back_and_forth_points,
                    evidence=result.evidence,
                )
            )
        if result := scan.triggered(RAPID_TRANSACTIONS):
            hits.append(
                RuleHit(
                    rule=RuleName.RAPID_TRANSACTIONS,
                    points=cfg.scoring.rapid_transaction_points,
                    evidence=result.evidence,
                )
            )
        if result := scan.triggered(STRUCTURING):
            # Recorded as an activity; it raises the user's long-term score.
            hits.append(
                RuleHit(rule=RuleName.STRUCTURING_PATTERN, points=0.0, evidence=result.evidence)
            )

        # 5. Long-term user risk
        try:
            user_score = await self._profiler.score(user_id, session, cfg, now)
            contribution = round(user_score * cfg.scoring.user_risk_weight, 2)
            if contribution > 0:
                hits.append(
                    RuleHit(
                        rule=RuleName.USER_RISK,
                        points=contribution,
                        evidence=UserRiskEvidence(
                            user_risk_score=user_score,
                            weight=cfg.scoring.user_risk_weight,
                            contribution=contribution,
                        ),
                    )
                )
        except Exception as exc:
            self._caveat(caveats, RuleName.USER_RISK, exc, user_id)

        # 7. Known malicious IPs
        try:
            if hit := malicious_ip_rule(context, cfg):
                hits.append(hit)
        except Exception as exc:
            self._caveat(caveats, RuleName.KNOWN_MALICIOUS_IP, exc, user_id)

        return hits, caveats, scan

    async def _record_scan_activities(
        self,
        user_id: str,
        scan: PatternScan,
        session: AsyncSession,
        cfg: FraudConfig,
        now: datetime,
    ) -> list[SuspiciousActivity]:
        activities: list[SuspiciousActivity] = []

        if result := scan.triggered(STRUCTURING):
            activities.append(
                await self._detector.record_activity(
                    user_id,
                    ActivityType.STRUCTURING_BEHAVIOR,
                    "Potential structuring detected - multiple transactions under "
                    "reporting threshold",
                    cfg.patterns.structuring_activity_score,
                    session,
                    pattern_data=result.evidence.model_dump(mode="json"),
                    requires_manual_review=(
                        cfg.patterns.structuring_activity_score >= cfg.review.manual_review_score
                    ),
                    now=now,
                )
            )

        if result := scan.triggered(RAPID_TRANSACTIONS):
            window_minutes = int(cfg.patterns.rapid_transaction_window.total_seconds() // 60)
            activities.append(
                await self._detector.record_activity(
                    user_id,
                    ActivityType.RAPID_TRANSACTIONS,
                    f"Rapid transaction pattern detected - "
                    f"{result.evidence.transaction_count} transactions in {window_minutes} minutes",
                    cfg.patterns.rapid_activity_score,
                    session,
                    pattern_data=result.evidence.model_dump(mode="json"),
                    requires_manual_review=(
                        cfg.patterns.rapid_activity_score >= cfg.review.manual_review_score
                    ),
                    now=now,
                )
            )

        return activities

    # ------------------------------------------------------------------
    # User activity evaluation
    # ------------------------------------------------------------------

    async def check_user_activity(
        self,
        user_id: str,
        session: AsyncSession,
        context: EvaluationContext | None = None,
    ) -> RiskDecision:
        """Score a user outside of any payment: profile, patterns and network.

        The score is the larger of the long-term user score and the highest
        risk among the activities detected in this pass. Unlike payment
        evaluation, each hit's ``points`` is that candidate score, so the
        points do not sum to ``risk_score``.
        """
        context = context or EvaluationContext()
        cfg = self._config_provider.current
        now = context.evaluated_at or datetime.now(UTC)

        hits: list[RuleHit] = []
        caveats: list[str] = []

        try:
            user_score = 0.0
            try:
                user_score = await self._profiler.score(user_id, session, cfg, now)
                if user_score > 0:
                    hits.append(
                        RuleHit(
                            rule=RuleName.USER_RISK,
                            points=user_score,
                            evidence=UserRiskEvidence(
                                user_risk_score=user_score, weight=1.0, contribution=user_score
                            ),
                        )
                    )
            except Exception as exc:
                self._caveat(caveats, RuleName.USER_RISK, exc, user_id)

            scan = PatternScan(user_id=user_id)
            try:
                scan = await self._detector.scan(
                    user_id, session, cfg, now, detectors=(STRUCTURING, RAPID_TRANSACTIONS)
                )
            except Exception as exc:
                self._caveat(caveats, "pattern_scan", exc, user_id)
            caveats.extend(scan.caveats)

            activities = await self._record_scan_activities(user_id, scan, session, cfg, now)
            if result := scan.triggered(STRUCTURING):
                hits.append(
                    RuleHit(
                        rule=RuleName.STRUCTURING_PATTERN,
                        points=cfg.patterns.structuring_activity_score,
                        evidence=result.evidence,
                    )
                )
            if result := scan.triggered(RAPID_TRANSACTIONS):
                hits.append(
                    RuleHit(
                        rule=RuleName.RAPID_TRANSACTIONS,
                        points=cfg.patterns.rapid_activity_score,
                        evidence=result.evidence,
                    )
                )

            try:
                if network := await self._check_network(user_id, session, cfg, now):
                    hit, activity = network
                    hits.append(hit)
                    activities.append(activity)
            except Exception as exc:
                self._caveat(caveats, RuleName.CIRCULAR_NETWORK, exc, user_id)

            score = clamp_score(max([user_score] + [a.risk_score for a in activities]))
            level = classify_risk_level(score, cfg)
            requires_review = score >= cfg.review.manual_review_score
            approved = score < cfg.review.auto_block_score
            blocking_reason = None if approved else AUTO_BLOCK_REASON

            check = RiskCheck(
                check_id=str(uuid.uuid4()),
                user_id=user_id,
                payment_id=None,
                check_type=CheckType.BEHAVIOR_ANALYSIS.value,
                risk_score=score,
                risk_level=level.value,
                triggered_rules=[h.rule.value for h in hits],
                check_details={
                    # Each hit's points is a candidate score, not an addend.
                    "score_method": "max_of_candidates",
                    "evidence": [h.model_dump(mode="json") for h in hits],
                    "caveats": caveats,
                    "activities": [a.activity_id for a in activities],
                    "checked_at": now.isoformat(),
                },
                status=(
                    CheckStatus.PENDING.value if requires_review else CheckStatus.APPROVED.value
                ),
                payment_blocked=False,
                user_flagged=not approved,
                admin_notified=requires_review,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                device_fingerprint=context.device_fingerprint,
                created_at=now,
            )
            session.add(check)
            await session.commit()
        except Exception as exc:
            logger.exception("user_activity_check_failed", user_id=user_id)
            await self._safe_rollback(session)
            return self._fail_closed(0.0, hits, caveats, exc)

        if requires_review:
            await notify_review_required(check, self._notifier)

        logger.info(
            "user_activity_checked",
            user_id=user_id,
            risk_score=score,
            risk_level=level.value,
            activity_count=len(activities),
        )
        return RiskDecision(
            approved=approved,
            risk_score=score,
            risk_level=level,
            triggered_rules=[h.rule for h in hits],
            requires_review=requires_review,
            blocking_reason=blocking_reason,
            evidence=hits,
            caveats=caveats,
            detected_activities=[self._to_detected(a) for a in activities],
            risk_check_id=check.check_id,
        )

    async def _check_network(
        self,
        user_id: str,
        session: AsyncSession,
        cfg: FraudConfig,
        now: datetime,
    ) -> tuple[RuleHit, SuspiciousActivity] | None:
        connected = await self._graph.get_connected_users(
            user_id, session, depth=cfg.network.connected_users_depth
        )
        candidates = [user_id, *sorted(connected)]
        cycle = await self._graph.find_circular_network(candidates, session, cfg, now)
        if not cycle:
            return None

        evidence = CircularNetworkEvidence(
            root_user_id=user_id,
            candidate_count=len(candidates),
            cycle=cycle,
            window_seconds=int(cfg.network.circular_window.total_seconds()),
        )
        activity = await self._detector.record_activity(
            user_id,
            ActivityType.CIRCULAR_TRANSACTIONS,
            f"Circular payment flow among {len(cycle)} accounts: {' -> '.join(cycle)}",
            cfg.network.circular_activity_score,
            session,
            pattern_data=evidence.model_dump(mode="json"),
            related_user_ids=cycle,
            requires_manual_review=True,
            now=now,
        )
        hit = RuleHit(
            rule=RuleName.CIRCULAR_NETWORK,
            points=cfg.network.circular_activity_score,
            evidence=evidence,
        )
        return hit, activity

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _caveat(caveats: list[str], rule: RuleName | str, exc: Exception, user_id: str) -> None:
        name = rule.value if isinstance(rule, RuleName) else rule
        logger.exception("rule_evaluation_error", rule=name, user_id=user_id)
        caveats.append(f"{name} check failed: {type(exc).__name__}")

    @staticmethod
    async def _safe_rollback(session: AsyncSession) -> None:
        try:
            await session.rollback()
        except Exception:
            logger.exception("session_rollback_failed")

    @staticmethod
    def _to_detected(activity: SuspiciousActivity) -> DetectedActivity:
        return DetectedActivity(
            activity_id=activity.activity_id,
            activity_type=ActivityType(activity.activity_type),
            risk_score=activity.risk_score,
            frequency=activity.frequency,
            description=activity.description,
        )

    @staticmethod
    def _downgrade_after_lost_reservation(decision: RiskDecision, check: RiskCheck) -> RiskDecision:
        check.status = CheckStatus.PENDING.value
        check.payment_blocked = True
        check.admin_notified = True
        check.check_details = {
            **(check.check_details or {}),
            "reservation": "rejected",
        }
        logger.warning(
            "velocity_reservation_lost",
            check_id=check.check_id,
            user_id=check.user_id,
            payment_id=check.payment_id,
        )
        return decision.model_copy(
            update={
                "approved": False,
                "requires_review": True,
                "blocking_reason": VELOCITY_RACE_REASON,
            }
        )

    def _fail_closed(
        self,
        partial_score: float,
        hits: list[RuleHit],
        caveats: list[str],
        exc: Exception,
    ) -> RiskDecision:
        level = max_level(
            classify_risk_level(partial_score, self._config_provider.current), level_floor(hits)
        )
        return RiskDecision(
            approved=False,
            risk_score=clamp_score(partial_score),
            risk_level=level,
            triggered_rules=[h.rule for h in hits],
            requires_review=True,
            blocking_reason=SYSTEM_ERROR_REASON,
            evidence=list(hits),
            caveats=[*caveats, f"evaluation aborted: {type(exc).__name__}"],
            fail_closed=True,
        )
