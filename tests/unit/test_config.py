"""Unit tests for fraud engine configuration and hot reload."""

from datetime import timedelta

import pytest

from fraudguard.domains.fraud.config import ConfigProvider, FraudConfig
from fraudguard.domains.fraud.errors import FraudConfigError


class TestFraudConfig:
    def test_defaults_are_valid(self):
        config = FraudConfig()
        assert config.validate() is config
        assert config.amount.high_risk_minor == 200_000
        assert config.amount.critical_risk_minor == 500_000
        assert config.review.auto_block_score == 85.0
        assert config.review.manual_review_score == 60.0
        assert config.blocked_ips == frozenset()

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("FRAUD_HIGH_RISK_AMOUNT", "1500.00")
        monkeypatch.setenv("FRAUD_DAILY_TRANSACTION_LIMIT", "10")
        monkeypatch.setenv("FRAUD_HOLD_ON_REVIEW", "true")
        monkeypatch.setenv("FRAUD_BLOCKED_IPS", "10.0.0.1, 10.0.0.2,,")

        config = FraudConfig.from_env()

        assert config.amount.high_risk_minor == 150_000
        assert config.velocity.daily_transaction_limit == 10
        assert config.review.hold_on_review is True
        assert config.blocked_ips == frozenset({"10.0.0.1", "10.0.0.2"})

    def test_env_overrides_do_not_leak_into_defaults(self, monkeypatch):
        monkeypatch.setenv("FRAUD_CRITICAL_RISK_AMOUNT", "9000")
        FraudConfig.from_env()
        assert FraudConfig().amount.critical_risk_minor == 500_000

    def test_unparseable_env_raises_config_error(self, monkeypatch):
        monkeypatch.setenv("FRAUD_AUTO_BLOCK_SCORE", "very high")
        with pytest.raises(FraudConfigError):
            FraudConfig.from_env()

    def test_inverted_amount_thresholds_rejected(self):
        config = FraudConfig()
        config.amount.high_risk_minor = 600_000
        with pytest.raises(FraudConfigError, match="high <= critical"):
            config.validate()

    def test_all_errors_reported_together(self):
        config = FraudConfig()
        config.review.manual_review_score = 95.0
        config.patterns.rapid_transaction_window = timedelta(0)
        with pytest.raises(FraudConfigError) as exc_info:
            config.validate()
        message = str(exc_info.value)
        assert "manual_review <= auto_block" in message
        assert "rapid_transaction_window" in message

    def test_circular_candidates_below_three_rejected(self):
        config = FraudConfig()
        config.network.circular_min_candidates = 2
        with pytest.raises(FraudConfigError):
            config.validate()

    def test_config_error_is_value_error(self):
        assert issubclass(FraudConfigError, ValueError)


class TestConfigProvider:
    def test_invalid_initial_config_fails_fast(self):
        bad = FraudConfig()
        bad.scoring.medium_level = 70.0
        with pytest.raises(FraudConfigError):
            ConfigProvider(config=bad)

    def test_reload_swaps_snapshot(self):
        replacement = FraudConfig(blocked_ips=frozenset({"203.0.113.9"}))
        provider = ConfigProvider(config=FraudConfig(), loader=lambda: replacement)
        original = provider.current

        assert provider.reload() is replacement
        assert provider.current is replacement
        assert original.blocked_ips == frozenset()

    def test_failed_reload_keeps_previous_snapshot(self):
        def broken_loader():
            config = FraudConfig()
            config.amount.critical_risk_minor = 0
            return config

        provider = ConfigProvider(config=FraudConfig(), loader=broken_loader)
        before = provider.current

        with pytest.raises(FraudConfigError):
            provider.reload()
        assert provider.current is before
