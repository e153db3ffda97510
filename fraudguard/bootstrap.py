"""Startup wiring for embedding the fraud engine in a host service."""

import structlog

from fraudguard.config import Settings, settings as default_settings
from fraudguard.domains.fraud.alerts import AlertNotifier
from fraudguard.domains.fraud.config import ConfigProvider, FraudConfig
from fraudguard.domains.fraud.evaluator import RiskEvaluator
from fraudguard.shared.logging import setup_logging

logger = structlog.get_logger()


def create_risk_evaluator(
    notifier: AlertNotifier | None = None,
    settings: Settings | None = None,
    config: FraudConfig | None = None,
) -> RiskEvaluator:
    """Configure logging, load and validate fraud config, and build the evaluator.

    Raises FraudConfigError on invalid configuration so a bad deploy fails at
    startup rather than on the first payment.
    """
    settings = settings or default_settings
    setup_logging(settings.log_level)

    provider = ConfigProvider(config) if config is not None else ConfigProvider()
    evaluator = RiskEvaluator(config_provider=provider, notifier=notifier)

    logger.info(
        "fraudguard_started",
        app_name=settings.app_name,
        version=settings.app_version,
        auto_block_score=provider.current.review.auto_block_score,
        manual_review_score=provider.current.review.manual_review_score,
    )
    return evaluator
