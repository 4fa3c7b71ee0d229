# funds.py
import logging
from decimal import Decimal

from errors import BatchAffordabilityError

logger = logging.getLogger(__name__)


class FundsGuard:
    """
    Wallet checks for one batch. The first check compares the balance with
    the fee for every plot in the batch and raises when it falls short; once
    that passes, later checks only need the balance to cover one fee.
    """

    def __init__(self, plot_count: int):
        self.plot_count = plot_count
        self._certified = False

    @property
    def certified(self) -> bool:
        return self._certified

    def check(self, fee: Decimal, balance: Decimal) -> bool:
        if not self._certified:
            required = fee * self.plot_count
            logger.info(
                "💰 Batch check: %d plot(s) × %s = %s against balance %s",
                self.plot_count,
                fee,
                required,
                balance,
            )
            if balance < required:
                raise BatchAffordabilityError(fee, self.plot_count, balance)
            self._certified = True
            logger.info("✅ Wallet covers the whole batch.")
            return True
        if balance < fee:
            logger.warning("⚠️ Balance %s is below the fee %s for this plot.", balance, fee)
            return False
        return True
