"""Transaction total validation.

Any monetary record that carries a derived total must satisfy

    total_amount == amount + tax_amount - discount_amount

within a rounding tolerance of 0.01. Creation flows derive the total instead
of accepting one; amend flows re-check it.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from billing_engine.calculators.proration import ProrationCalculator
from billing_engine.errors import BillingEngineError

TOLERANCE = Decimal("0.01")


@dataclass(frozen=True)
class TotalCheck:
    """Result of checking a record's total."""

    ok: bool
    expected: Decimal
    actual: Decimal

    @property
    def difference(self) -> Decimal:
        return abs(self.actual - self.expected)

    @property
    def message(self) -> str | None:
        if self.ok:
            return None
        return (
            f"total_amount {self.actual} must equal amount + tax - discount "
            f"({self.expected})"
        )


def derive_total(
    amount: Decimal,
    tax_amount: Decimal | None = None,
    discount_amount: Decimal | None = None,
) -> Decimal:
    """Compute the total from its components, rounded to cents."""
    total = amount + (tax_amount or Decimal("0")) - (discount_amount or Decimal("0"))
    return ProrationCalculator.round_to_cents(total)


def check_total(
    amount: Decimal,
    tax_amount: Decimal | None,
    discount_amount: Decimal | None,
    total_amount: Decimal,
) -> TotalCheck:
    """Check |total - (amount + tax - discount)| < 0.01."""
    expected = amount + (tax_amount or Decimal("0")) - (discount_amount or Decimal("0"))
    return TotalCheck(
        ok=abs(total_amount - expected) < TOLERANCE,
        expected=expected,
        actual=total_amount,
    )


class InvalidTotalError(BillingEngineError):
    """Raised when a record's total disagrees with its components."""

    def __init__(self, check: TotalCheck):
        self.check = check
        super().__init__(check.message or "total mismatch")


def validate_total(
    amount: Decimal,
    tax_amount: Decimal | None,
    discount_amount: Decimal | None,
    total_amount: Decimal,
) -> TotalCheck:
    """Like check_total(), but raises InvalidTotalError on mismatch."""
    result = check_total(amount, tax_amount, discount_amount, total_amount)
    if not result.ok:
        raise InvalidTotalError(result)
    return result
