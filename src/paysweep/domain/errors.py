from __future__ import annotations

from datetime import datetime

from paysweep.domain.ledger import ExternalTransfer


class PaysweepError(RuntimeError):
    """Base class for engine errors."""


class ConfigurationError(PaysweepError):
    """Fatal at startup: a required setting is missing or invalid."""


class TransientNetworkError(PaysweepError):
    """The ledger could not be reached or answered with a retryable failure."""


class TransferListingTruncatedError(TransientNetworkError):
    """A transfer listing hit the page cap; only transfers up to ``through`` were read."""

    def __init__(self, address: str, transfers: list[ExternalTransfer], through: datetime) -> None:
        super().__init__(f"transfer listing for {address} truncated at {through.isoformat()}")
        self.address = address
        self.transfers = transfers
        self.through = through


class LedgerRejectedError(PaysweepError):
    """The ledger (or signer) refused the request outright."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class InsufficientBalanceObserved(PaysweepError):
    """The source address does not yet hold the expected amount."""


class AccountNotActivatedError(PaysweepError):
    pass


class InsufficientExecutionResourceError(PaysweepError):
    pass


class ConsolidationTimeoutError(PaysweepError):
    def __init__(self, transaction_id: str, attempts: int) -> None:
        super().__init__(
            f"consolidation transfer {transaction_id} not confirmed after {attempts} checks"
        )
        self.transaction_id = transaction_id
        self.attempts = attempts


class ConsolidationExhaustedError(PaysweepError):
    pass


class IllegalTransitionError(PaysweepError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"illegal intent transition {current} -> {target}")
        self.current = current
        self.target = target


class IntentNotFoundError(PaysweepError, LookupError):
    pass


class RateLimitedError(PaysweepError):
    def __init__(self, retry_after_seconds: float) -> None:
        super().__init__(f"rate limited; retry after {retry_after_seconds:.1f}s")
        self.retry_after_seconds = retry_after_seconds
