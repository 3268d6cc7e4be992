"""Credit ledger — FIFO netting and reversal of investor credits."""

from fundops.credits.ledger import CreditLedger

__all__ = ["CreditLedger"]
