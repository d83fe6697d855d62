"""Per-principal monthly credit ledger."""

from account_engine.ledger.credit_ledger import CreditLedger, LedgerSnapshot
from account_engine.ledger.periods import current_period_start, next_period_start, period_bounds
from account_engine.ledger.plans import PlanTier, quota_for

__all__ = [
    "CreditLedger",
    "LedgerSnapshot",
    "PlanTier",
    "current_period_start",
    "next_period_start",
    "period_bounds",
    "quota_for",
]
