"""Pydantic models for the fraud domain."""

from datetime import datetime
from enum import StrEnum
from typing import Annotated, Literal

from pydantic import AwareDatetime, BaseModel, Field


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_LEVEL_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


def max_level(a: RiskLevel, b: RiskLevel) -> RiskLevel:
    return a if _LEVEL_ORDER.index(a) >= _LEVEL_ORDER.index(b) else b


class CheckType(StrEnum):
    PATTERN_ANALYSIS = "pattern_analysis"
    BEHAVIOR_ANALYSIS = "behavior_analysis"


class CheckStatus(StrEnum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class ActivityType(StrEnum):
    RAPID_TRANSACTIONS = "rapid_transactions"
    STRUCTURING_BEHAVIOR = "structuring_behavior"
    CIRCULAR_TRANSACTIONS = "circular_transactions"
    HIGH_RISK_USER = "high_risk_user"


class ActivityStatus(StrEnum):
    ACTIVE = "active"
    UNDER_INVESTIGATION = "under_investigation"
    FALSE_POSITIVE = "false_positive"
    CONFIRMED = "confirmed"
    RESOLVED = "resolved"


class LimitType(StrEnum):
    HOURLY_AMOUNT = "hourly_amount"
    HOURLY_TRANSACTIONS = "hourly_transactions"
    DAILY_AMOUNT = "daily_amount"
    DAILY_TRANSACTIONS = "daily_transactions"
    WEEKLY_AMOUNT = "weekly_amount"
    WEEKLY_TRANSACTIONS = "weekly_transactions"
    MONTHLY_AMOUNT = "monthly_amount"
    MONTHLY_TRANSACTIONS = "monthly_transactions"


class RuleName(StrEnum):
    VELOCITY_LIMIT = "velocity_limit"
    CRITICAL_AMOUNT_THRESHOLD = "critical_amount_threshold"
    HIGH_AMOUNT_THRESHOLD = "high_amount_threshold"
    ROUND_AMOUNT_PATTERN = "round_amount_pattern"
    BACK_AND_FORTH_TRANSACTION = "back_and_forth_transaction"
    USER_RISK = "user_risk"
    RAPID_TRANSACTIONS = "rapid_transactions"
    KNOWN_MALICIOUS_IP = "known_malicious_ip"
    STRUCTURING_PATTERN = "structuring_pattern"
    CIRCULAR_NETWORK = "circular_transaction_network"


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


class PaymentRecord(BaseModel):
    """A payment attempt as handed to the evaluator by the payment subsystem."""

    payment_id: str
    payer_id: str
    payee_id: str | None = None
    amount_minor: int = Field(ge=0)
    currency: str = "USD"
    processed_at: AwareDatetime | None = None


class EvaluationContext(BaseModel):
    ip_address: str | None = None
    user_agent: str | None = None
    device_fingerprint: str | None = None
    evaluated_at: AwareDatetime | None = None


class TransactionEdge(BaseModel):
    payer_id: str
    payee_id: str
    amount_minor: int
    processed_at: AwareDatetime


# ---------------------------------------------------------------------------
# Evidence (one model per rule / detector, discriminated by ``kind``)
# ---------------------------------------------------------------------------


class BreachedLimit(BaseModel):
    limit_type: LimitType
    current_amount_minor: int
    amount_limit_minor: int
    current_transactions: int
    transaction_limit: int
    time_window_seconds: int


class VelocityEvidence(BaseModel):
    kind: Literal["velocity"] = "velocity"
    amount_minor: int
    breached_limits: list[BreachedLimit] = []


class AmountThresholdEvidence(BaseModel):
    kind: Literal["amount_threshold"] = "amount_threshold"
    amount_minor: int
    threshold_minor: int
    tier: Literal["high", "critical"]


class RoundAmountEvidence(BaseModel):
    kind: Literal["round_amount"] = "round_amount"
    amount_minor: int
    fractional_minor: int
    tolerance_minor: int


class BackAndForthEvidence(BaseModel):
    kind: Literal["back_and_forth"] = "back_and_forth"
    user_id: str
    counterparty_id: str
    reciprocal_count: int
    threshold: int
    window_seconds: int


class RapidTransactionsEvidence(BaseModel):
    kind: Literal["rapid_transactions"] = "rapid_transactions"
    user_id: str
    transaction_count: int
    threshold: int
    window_seconds: int


class StructuringEvidence(BaseModel):
    kind: Literal["structuring"] = "structuring"
    user_id: str
    transaction_count: int
    min_count: int
    total_minor: int
    amount_threshold_minor: int
    mean_minor: int
    mean_abs_deviation_minor: int
    window_seconds: int


class UserRiskEvidence(BaseModel):
    kind: Literal["user_risk"] = "user_risk"
    user_risk_score: float
    weight: float
    contribution: float


class MaliciousIpEvidence(BaseModel):
    kind: Literal["malicious_ip"] = "malicious_ip"
    ip_address: str


class CircularNetworkEvidence(BaseModel):
    kind: Literal["circular_network"] = "circular_network"
    root_user_id: str
    candidate_count: int
    cycle: list[str]
    window_seconds: int


Evidence = Annotated[
    VelocityEvidence
    | AmountThresholdEvidence
    | RoundAmountEvidence
    | BackAndForthEvidence
    | RapidTransactionsEvidence
    | StructuringEvidence
    | UserRiskEvidence
    | MaliciousIpEvidence
    | CircularNetworkEvidence,
    Field(discriminator="kind"),
]


class RuleHit(BaseModel):
    rule: RuleName
    points: float
    evidence: Evidence


class DetectionResult(BaseModel):
    """Output of a single pattern detector over a transaction snapshot."""

    detector: str
    triggered: bool
    evidence: Evidence | None = None


class PatternScan(BaseModel):
    """Results of one detector pass over a user's transaction snapshot."""

    user_id: str
    results: list[DetectionResult] = []
    caveats: list[str] = []

    def triggered(self, detector: str) -> DetectionResult | None:
        for result in self.results:
            if result.detector == detector and result.triggered:
                return result
        return None


class DetectedActivity(BaseModel):
    activity_id: str
    activity_type: ActivityType
    risk_score: float
    frequency: int
    description: str


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------


class RiskDecision(BaseModel):
    approved: bool
    risk_score: float = Field(ge=0, le=100)
    risk_level: RiskLevel
    triggered_rules: list[RuleName] = []
    requires_review: bool = False
    blocking_reason: str | None = None
    evidence: list[RuleHit] = []
    caveats: list[str] = []
    detected_activities: list[DetectedActivity] = []
    risk_check_id: str | None = None
    fail_closed: bool = False


class ReviewAlert(BaseModel):
    check_id: str
    user_id: str
    payment_id: str | None = None
    risk_score: float
    risk_level: RiskLevel
    triggered_rules: list[str] = []
    ip_address: str | None = None
    created_at: datetime
