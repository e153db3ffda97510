"""Exceptions raised by the fraud engine."""


class FraudEngineError(Exception):
    """Base class for fraud engine errors."""


class FraudConfigError(FraudEngineError, ValueError):
    """Configuration is missing or inconsistent. Raised at startup or reload."""


class RiskCheckNotFoundError(FraudEngineError, LookupError):
    pass


class SuspiciousActivityNotFoundError(FraudEngineError, LookupError):
    pass


class InvalidReviewStateError(FraudEngineError, ValueError):
    """The record has already been decided and cannot be reviewed again."""
