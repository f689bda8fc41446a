"""
Proration Calculator

Pure computation of the net charge or credit for a mid-period plan change.
All money is integer minor units; fractions are Decimal, never float.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from billing_engine.domain.plans import BillingPeriod


_ZERO = Decimal(0)
_ONE = Decimal(1)


@dataclass(frozen=True)
class ProrationResult:
    """Outcome of a proration. Positive ``proration_amount`` is owed, negative is a credit."""
    remaining_fraction: Decimal
    unused_credit: int
    new_charge: int
    proration_amount: int
    is_upgrade: bool
    billing_period: BillingPeriod


def _microseconds(delta) -> int:
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


def remaining_fraction(period_start: datetime, period_end: datetime, now: datetime) -> Decimal:
    """
    Share of the current period still unused at ``now``, clamped to [0, 1].

    A degenerate period (start >= end) or a period that already ended yields 0.
    """
    if period_start >= period_end or now >= period_end:
        return _ZERO
    total = _microseconds(period_end - period_start)
    left = _microseconds(period_end - now)
    return min(_ONE, max(_ZERO, Decimal(left) / Decimal(total)))


def _round_minor(amount: Decimal) -> int:
    return int(amount.quantize(_ONE, rounding=ROUND_HALF_UP))


def calculate_proration(
    old_price: int,
    new_price: int,
    billing_period: BillingPeriod,
    period_start: datetime,
    period_end: datetime,
    now: datetime,
) -> ProrationResult:
    """
    Compute the adjustment for switching from ``old_price`` to ``new_price`` at ``now``.

    Both legs are rounded to whole minor units before subtracting, so
    prorating A->B and B->A at the same instant nets to exactly zero.

    Args:
        old_price: Price of the current plan for ``billing_period``
        new_price: Price of the target plan for ``billing_period``
        billing_period: Billing period both prices refer to
        period_start: Start of the current period (inclusive)
        period_end: End of the current period (exclusive)
        now: Instant the change takes effect

    Returns:
        ProrationResult
    """
    if old_price < 0 or new_price < 0:
        raise ValueError("Prices must not be negative")

    fraction = remaining_fraction(period_start, period_end, now)
    unused_credit = _round_minor(Decimal(old_price) * fraction)
    new_charge = _round_minor(Decimal(new_price) * fraction)

    return ProrationResult(
        remaining_fraction=fraction,
        unused_credit=unused_credit,
        new_charge=new_charge,
        proration_amount=new_charge - unused_credit,
        is_upgrade=new_price > old_price,
        billing_period=billing_period,
    )
