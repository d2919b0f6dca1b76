"""Proration of activity spans against billing periods."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal

from billing_engine.calculators.types import ProrationResult, RateBasis
from billing_engine.errors import BillingEngineError


class InvalidSpanError(BillingEngineError):
    """Raised when a date span ends on or before its start."""

    def __init__(self, start: date, end: date, label: str = "activity"):
        self.start = start
        self.end = end
        self.label = label
        super().__init__(f"Invalid {label} span: end {end} must be after start {start}")


class ProrationCalculator:
    """Converts activity spans into proration factors and prorated amounts.

    Day counting is half-open everywhere: a span [start, end) covers `start`
    and stops before `end`. Activity spans arrive half-open. Billing periods
    are stored as inclusive calendar dates, so [2024-01-01, 2024-01-31] is
    counted as [2024-01-01, 2024-02-01) = 31 days. An assignment ending on
    Feb 1 is therefore never billed for Feb 1 in January and again in
    February.
    """

    OUTPUT_PRECISION = Decimal("0.01")

    @staticmethod
    def round_to_cents(amount: Decimal) -> Decimal:
        """Round amount to 2 decimal places (cents)."""
        return amount.quantize(ProrationCalculator.OUTPUT_PRECISION, rounding=ROUND_HALF_UP)

    @staticmethod
    def period_span(period_start: date, period_end: date) -> tuple[date, date]:
        """Convert an inclusive billing period into a half-open span."""
        if period_end < period_start:
            raise InvalidSpanError(period_start, period_end, label="billing period")
        return period_start, period_end + timedelta(days=1)

    @staticmethod
    def overlap_days(
        start_a: date, end_a: date, start_b: date, end_b: date
    ) -> int:
        """Days shared by two half-open spans (0 when disjoint)."""
        start = max(start_a, start_b)
        end = min(end_a, end_b)
        return max((end - start).days, 0)

    @staticmethod
    def calculate(
        activity_start: date,
        activity_end: date | None,
        period_start: date,
        period_end: date,
        basis: RateBasis = RateBasis.PERIOD,
    ) -> ProrationResult:
        """Compute the proration of an activity against a billing period.

        Args:
            activity_start: First day of the activity (inclusive)
            activity_end: Day the activity stops (exclusive); None = open-ended
            period_start: First day of the billing period (inclusive)
            period_end: Last day of the billing period (inclusive)
            basis: PERIOD divides by period length, OCCURRENCE by activity length

        Returns:
            ProrationResult with the exact factor in [0, 1]

        Raises:
            InvalidSpanError: If activity_end <= activity_start or the period is inverted
        """
        span_start, span_end = ProrationCalculator.period_span(period_start, period_end)

        if activity_end is None:
            # Open-ended activity runs at least to the end of the period
            activity_end = max(span_end, activity_start + timedelta(days=1))
        elif activity_end <= activity_start:
            raise InvalidSpanError(activity_start, activity_end)

        overlap = ProrationCalculator.overlap_days(
            activity_start, activity_end, span_start, span_end
        )

        if basis == RateBasis.OCCURRENCE:
            basis_days = (activity_end - activity_start).days
        else:
            basis_days = (span_end - span_start).days

        factor = Decimal(overlap) / Decimal(basis_days)
        factor = min(max(factor, Decimal("0")), Decimal("1"))

        return ProrationResult(overlap_days=overlap, basis_days=basis_days, factor=factor)

    @staticmethod
    def prorate(base_rate: Decimal, proration: ProrationResult) -> Decimal:
        """Scale a base rate by a proration, rounded half-up to cents.

        Uses the exact day ratio rather than the stored 6-decimal factor so
        850 x 16/31 gives 438.71.
        """
        if proration.is_zero:
            return Decimal("0.00")
        if proration.overlap_days >= proration.basis_days:
            return ProrationCalculator.round_to_cents(base_rate)
        scaled = base_rate * Decimal(proration.overlap_days) / Decimal(proration.basis_days)
        return ProrationCalculator.round_to_cents(scaled)


def calculate_proration(
    activity_start: date,
    activity_end: date | None,
    period_start: date,
    period_end: date,
    basis: RateBasis = RateBasis.PERIOD,
) -> ProrationResult:
    """Shorthand for ProrationCalculator.calculate()."""
    return ProrationCalculator.calculate(
        activity_start, activity_end, period_start, period_end, basis
    )
