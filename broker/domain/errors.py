# broker/domain/errors.py
"""Exceptions raised by the sell-decision engine."""

from typing import Optional


class BrokerError(Exception):
    """Base class for all engine errors."""


class ConfigError(BrokerError):
    """Settings could not be parsed or are out of range."""


class InvalidSampleError(BrokerError):
    """Price sample rejected (non-positive price or timestamp went backwards)."""


class StaleReadingError(BrokerError):
    """Price reading is older than the allowed reading age."""


class InvalidPurchaseError(BrokerError, ValueError):
    """Purchase data rejected before it reached the ledger."""


class LedgerInvariantError(BrokerError):
    """
    The lot ledger is corrupted (duplicate id, non-positive amounts, ...).
    Fatal: the engine must halt instead of retrying.
    """


class FeedUnavailableError(BrokerError):
    """The price feed could not deliver a price. Retryable."""


class ExecutionError(BrokerError):
    """Base class for execution client failures."""


class ExecutionRejectedError(ExecutionError):
    """The venue refused the order."""

    def __init__(self, reason: str = ""):
        super().__init__(reason or "order rejected")
        self.reason = reason


class ExecutionTimeoutError(ExecutionError):
    """A call to the execution client timed out. The order may still exist."""

    def __init__(self, message: str = "execution call timed out", order_id: Optional[str] = None):
        super().__init__(message)
        self.order_id = order_id


class CycleInProgressError(BrokerError):
    """Another decision cycle already holds the context."""
