"""Review alerts: build the payload from a risk check and hand it to the sink.

Delivery (email, chat, paging) belongs to the sink. A sink failure is logged
and never changes the decision returned to the caller.
"""

from typing import Protocol

import structlog

from fraudguard.db.models import RiskCheck

from .models import ReviewAlert, RiskLevel

logger = structlog.get_logger()


class AlertNotifier(Protocol):
    async def notify(self, alert: ReviewAlert) -> None: ...


class LoggingAlertNotifier:
    """Default sink: writes the alert to the structured log."""

    async def notify(self, alert: ReviewAlert) -> None:
        logger.warning(
            "fraud_review_required",
            check_id=alert.check_id,
            user_id=alert.user_id,
            payment_id=alert.payment_id,
            risk_score=alert.risk_score,
            risk_level=alert.risk_level.value,
            triggered_rules=alert.triggered_rules,
            ip_address=alert.ip_address,
        )


def build_review_alert(check: RiskCheck) -> ReviewAlert:
    return ReviewAlert(
        check_id=check.check_id,
        user_id=check.user_id,
        payment_id=check.payment_id,
        risk_score=check.risk_score,
        risk_level=RiskLevel(check.risk_level),
        triggered_rules=list(check.triggered_rules or []),
        ip_address=check.ip_address,
        created_at=check.created_at,
    )


async def notify_review_required(check: RiskCheck, notifier: AlertNotifier | None) -> bool:
    """Send a review alert for ``check``. Returns False if the sink failed."""
    if notifier is None:
        logger.debug("alert_notifier_not_configured", check_id=check.check_id)
        return False

    try:
        await notifier.notify(build_review_alert(check))
    except Exception:
        logger.exception("alert_notify_failed", check_id=check.check_id, user_id=check.user_id)
        return False

    logger.info("alert_sent", check_id=check.check_id, user_id=check.user_id)
    return True
