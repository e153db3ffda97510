"""Unit tests for engine startup wiring."""

import pytest

from fraudguard.bootstrap import create_risk_evaluator
from fraudguard.config import Settings
from fraudguard.domains.fraud.config import FraudConfig
from fraudguard.domains.fraud.errors import FraudConfigError
from fraudguard.domains.fraud.evaluator import RiskEvaluator


def test_builds_evaluator_from_env(monkeypatch):
    monkeypatch.setenv("FRAUD_AUTO_BLOCK_SCORE", "90")

    evaluator = create_risk_evaluator(settings=Settings(log_level="WARNING"))

    assert isinstance(evaluator, RiskEvaluator)
    assert evaluator.config_provider.current.review.auto_block_score == 90.0


def test_explicit_config_wins():
    config = FraudConfig(blocked_ips=frozenset({"203.0.113.9"}))
    evaluator = create_risk_evaluator(config=config)
    assert evaluator.config_provider.current is config


def test_invalid_config_fails_at_startup(monkeypatch):
    monkeypatch.setenv("FRAUD_MANUAL_REVIEW_SCORE", "95")
    with pytest.raises(FraudConfigError):
        create_risk_evaluator()
