"""Fraud and risk detection domain."""

from .alerts import AlertNotifier, LoggingAlertNotifier
from .config import ConfigProvider, FraudConfig
from .errors import (
    FraudConfigError,
    FraudEngineError,
    InvalidReviewStateError,
    RiskCheckNotFoundError,
    SuspiciousActivityNotFoundError,
)
from .evaluator import RiskEvaluator
from .graph import TransactionGraphAnalyzer
from .models import (
    EvaluationContext,
    PaymentRecord,
    RiskDecision,
    RiskLevel,
    RuleName,
)
from .patterns import PatternDetector
from .profiler import UserRiskProfiler
from .velocity import VelocityLimitTracker

__all__ = [
    "AlertNotifier",
    "ConfigProvider",
    "EvaluationContext",
    "FraudConfig",
    "FraudConfigError",
    "FraudEngineError",
    "InvalidReviewStateError",
    "LoggingAlertNotifier",
    "PatternDetector",
    "PaymentRecord",
    "RiskCheckNotFoundError",
    "RiskDecision",
    "RiskEvaluator",
    "RiskLevel",
    "RuleName",
    "SuspiciousActivityNotFoundError",
    "TransactionGraphAnalyzer",
    "UserRiskProfiler",
    "VelocityLimitTracker",
]
