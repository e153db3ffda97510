"""Fraud engine configuration with sensible defaults.

Amounts are integer minor units. Windows are ``timedelta``s. Env overrides use
the ``FRAUD_`` prefix; money values are given in major units ("2000.00").
"""

import os
import threading
from dataclasses import dataclass, field
from datetime import timedelta

import structlog

from .errors import FraudConfigError
from .money import to_minor_units

logger = structlog.get_logger()


@dataclass
class VelocityDefaults:
    # Daily payment cap the user-risk velocity surcharge is measured against.
    # Per-user enforced limits live in velocity_limits rows.
    daily_transaction_limit: int = 20


@dataclass
class AmountThresholds:
    high_risk_minor: int = 200_000
    critical_risk_minor: int = 500_000
    round_amount_tolerance_minor: int = 1


@dataclass
class PatternThresholds:
    back_and_forth_threshold: int = 3
    back_and_forth_window: timedelta = timedelta(hours=24)
    rapid_transaction_threshold: int = 5
    rapid_transaction_window: timedelta = timedelta(minutes=15)
    structuring_min_count: int = 10
    structuring_amount_threshold_minor: int = 1_000_000
    structuring_window: timedelta = timedelta(days=1)
    # Mean amount must stay below this for a sequence to count as structuring.
    structuring_mean_ceiling_minor: int = 100_000
    structuring_activity_score: float = 70.0
    rapid_activity_score: float = 50.0


@dataclass
class NetworkSettings:
    max_network_depth: int = 3
    connected_users_depth: int = 2
    circular_min_candidates: int = 3
    circular_window: timedelta = timedelta(days=7)
    circular_activity_score: float = 80.0


@dataclass
class ScoringSettings:
    velocity_points: float = 30.0
    critical_amount_points: float = 40.0
    high_amount_points: float = 20.0
    round_amount_points: float = 10.0
    back_and_forth_points: float = 25.0
    rapid_transaction_points: float = 20.0
    malicious_ip_points: float = 50.0
    user_risk_weight: float = 0.3

    # Risk level bands on the 0-100 scale
    critical_level: float = 80.0
    high_level: float = 60.0
    medium_level: float = 30.0


@dataclass
class ProfilerSettings:
    activity_lookback: timedelta = timedelta(days=30)
    activity_weight: float = 0.3
    daily_velocity_ratio: float = 0.8
    daily_velocity_points: float = 20.0
    new_account_age: timedelta = timedelta(days=30)
    new_account_points: float = 15.0
    young_account_age: timedelta = timedelta(days=90)
    young_account_points: float = 5.0


@dataclass
class ReviewPolicy:
    auto_block_score: float = 85.0
    manual_review_score: float = 60.0
    # Hold funds (approved=False) for scores in the manual-review band.
    hold_on_review: bool = False
    flagged_user_score: float = 90.0


@dataclass
class FraudConfig:
    velocity: VelocityDefaults = field(default_factory=VelocityDefaults)
    amount: AmountThresholds = field(default_factory=AmountThresholds)
    patterns: PatternThresholds = field(default_factory=PatternThresholds)
    network: NetworkSettings = field(default_factory=NetworkSettings)
    scoring: ScoringSettings = field(default_factory=ScoringSettings)
    profiler: ProfilerSettings = field(default_factory=ProfilerSettings)
    review: ReviewPolicy = field(default_factory=ReviewPolicy)
    blocked_ips: frozenset[str] = frozenset()

    @classmethod
    def from_env(cls) -> "FraudConfig":
        """Load config with env var overrides. Env vars use FRAUD_ prefix."""
        config = cls()

        try:
            # Velocity overrides
            if v := os.getenv("FRAUD_DAILY_TRANSACTION_LIMIT"):
                config.velocity.daily_transaction_limit = int(v)

            # Amount overrides
            if v := os.getenv("FRAUD_HIGH_RISK_AMOUNT"):
                config.amount.high_risk_minor = to_minor_units(v)
            if v := os.getenv("FRAUD_CRITICAL_RISK_AMOUNT"):
                config.amount.critical_risk_minor = to_minor_units(v)

            # Pattern overrides
            if v := os.getenv("FRAUD_BACK_AND_FORTH_THRESHOLD"):
                config.patterns.back_and_forth_threshold = int(v)
            if v := os.getenv("FRAUD_RAPID_TRANSACTION_THRESHOLD"):
                config.patterns.rapid_transaction_threshold = int(v)
            if v := os.getenv("FRAUD_STRUCTURING_MIN_COUNT"):
                config.patterns.structuring_min_count = int(v)
            if v := os.getenv("FRAUD_STRUCTURING_AMOUNT_THRESHOLD"):
                config.patterns.structuring_amount_threshold_minor = to_minor_units(v)

            # Review overrides
            if v := os.getenv("FRAUD_AUTO_BLOCK_SCORE"):
                config.review.auto_block_score = float(v)
            if v := os.getenv("FRAUD_MANUAL_REVIEW_SCORE"):
                config.review.manual_review_score = float(v)
            if v := os.getenv("FRAUD_HOLD_ON_REVIEW"):
                config.review.hold_on_review = v.strip().lower() in ("1", "true", "yes")

            if v := os.getenv("FRAUD_BLOCKED_IPS"):
                config.blocked_ips = frozenset(ip.strip() for ip in v.split(",") if ip.strip())
        except ValueError as exc:
            raise FraudConfigError(f"Invalid fraud configuration: {exc}") from exc

        return config

    def validate(self) -> "FraudConfig":
        """Raise FraudConfigError if thresholds are missing or inconsistent."""
        errors: list[str] = []

        if not 0 < self.amount.high_risk_minor <= self.amount.critical_risk_minor:
            errors.append("amount thresholds must satisfy 0 < high <= critical")
        if not 0 <= self.amount.round_amount_tolerance_minor < 50:
            errors.append("round amount tolerance must be in [0, 50) minor units")
        if not 0 < self.review.manual_review_score <= self.review.auto_block_score <= 100:
            errors.append("review scores must satisfy 0 < manual_review <= auto_block <= 100")
        if not 0 < self.scoring.medium_level < self.scoring.high_level < self.scoring.critical_level:
            errors.append("risk level bands must be strictly increasing")

        for name in (
            "back_and_forth_threshold",
            "rapid_transaction_threshold",
            "structuring_min_count",
        ):
            if getattr(self.patterns, name) < 1:
                errors.append(f"patterns.{name} must be >= 1")
        for name in ("back_and_forth_window", "rapid_transaction_window", "structuring_window"):
            if getattr(self.patterns, name) <= timedelta(0):
                errors.append(f"patterns.{name} must be positive")

        if self.network.connected_users_depth < 1:
            errors.append("network.connected_users_depth must be >= 1")
        if self.network.connected_users_depth > self.network.max_network_depth:
            errors.append("network.connected_users_depth exceeds max_network_depth")
        if self.network.circular_min_candidates < 3:
            errors.append("network.circular_min_candidates must be >= 3")
        if self.velocity.daily_transaction_limit < 1:
            errors.append("velocity.daily_transaction_limit must be >= 1")

        if errors:
            raise FraudConfigError("; ".join(errors))
        return self


class ConfigProvider:
    """Holds the current validated config snapshot and swaps it on reload.

    Callers read ``current`` once per evaluation and use that snapshot for the
    whole call.
    """

    def __init__(self, config: FraudConfig | None = None, loader=FraudConfig.from_env) -> None:
        self._loader = loader
        self._lock = threading.Lock()
        self._current = (config or loader()).validate()
        logger.info("fraud_config_loaded", blocked_ip_count=len(self._current.blocked_ips))

    @property
    def current(self) -> FraudConfig:
        return self._current

    def reload(self) -> FraudConfig:
        """Load and validate a new snapshot. The previous one stays on failure."""
        try:
            candidate = self._loader().validate()
        except FraudConfigError:
            logger.exception("fraud_config_reload_failed")
            raise
        with self._lock:
            self._current = candidate
        logger.info("fraud_config_reloaded", blocked_ip_count=len(candidate.blocked_ips))
        return candidate


# Module-level default instance
default_config = FraudConfig()
