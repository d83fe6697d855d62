"""Subscription plans and their monthly credit quotas.

Plan quotas::

    free:        1_000 credits / month
    paid:       25_000 credits / month
    enterprise: 100_000 credits / month

This table is the only place quota numbers are defined.  Ledger rows copy
the quota at creation time, so a plan change only affects periods opened
afterwards.
"""

from __future__ import annotations

from enum import Enum


class PlanTier(str, Enum):
    """Subscription plans a principal can be on."""

    FREE = "free"
    PAID = "paid"
    ENTERPRISE = "enterprise"


_PLAN_QUOTAS: dict[PlanTier, int] = {
    PlanTier.FREE: 1_000,
    PlanTier.PAID: 25_000,
    PlanTier.ENTERPRISE: 100_000,
}

# Principals imported from the x402 payment flow keep "x402" as their stored
# plan (ck_principals_plan allows it); it bills as the paid tier.
_LEGACY_ALIASES: dict[str, PlanTier] = {
    "x402": PlanTier.PAID,
}


def normalize_plan(plan: str | PlanTier) -> PlanTier:
    """Map a stored plan string (or legacy alias) to a :class:`PlanTier`.

    Raises
    ------
    ValueError
        If *plan* is not a known tier or alias.
    """
    if isinstance(plan, PlanTier):
        return plan
    key = plan.strip().lower()
    if key in _LEGACY_ALIASES:
        return _LEGACY_ALIASES[key]
    try:
        return PlanTier(key)
    except ValueError:
        raise ValueError(f"Unknown plan: {plan!r}") from None


def quota_for(plan: str | PlanTier) -> int:
    """Monthly credit quota for *plan*."""
    return _PLAN_QUOTAS[normalize_plan(plan)]
