from decimal import Decimal
from typing import Optional


class AgentError(Exception):
    """Base class for every failure the document agent raises on purpose."""


class ConfigurationError(AgentError):
    pass


class AuthenticationError(AgentError):
    pass


class PageIntelligenceError(AgentError):
    """The page-intelligence backend could not be reached or answered garbage at transport level."""


class ElementNotFoundError(AgentError):
    pass


class LedgerConflictError(AgentError):
    pass


class TerminalPageError(AgentError):
    def __init__(self, signal: str, attempt: int):
        super().__init__(f"Error indicator on page at attempt {attempt}: {signal}")
        self.signal = signal
        self.attempt = attempt


class BatchAffordabilityError(AgentError):
    def __init__(self, fee: Decimal, plot_count: int, balance: Decimal):
        self.fee = fee
        self.plot_count = plot_count
        self.balance = balance
        self.required = fee * plot_count
        self.shortfall = self.required - balance
        super().__init__(
            f"Wallet balance {balance} cannot cover {plot_count} plots at {fee} each "
            f"(required {self.required}, short by {self.shortfall})"
        )


class BatchAbortedError(AgentError):
    """Raised once the batch stopped before any payment; carries the final report."""

    def __init__(self, report, cause: Optional[BatchAffordabilityError] = None):
        self.report = report
        self.cause = cause
        self.shortfall = cause.shortfall if cause else None
        message = "Batch aborted before any payment"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
