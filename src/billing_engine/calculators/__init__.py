"""Charge calculation: proration and total validation."""

from billing_engine.calculators.proration import (
    InvalidSpanError,
    ProrationCalculator,
    calculate_proration,
)
from billing_engine.calculators.totals import (
    InvalidTotalError,
    TotalCheck,
    check_total,
    derive_total,
    validate_total,
)
from billing_engine.calculators.types import (
    ChargeCandidate,
    ChargeType,
    ProrationResult,
    RateBasis,
)

__all__ = [
    "ChargeCandidate",
    "ChargeType",
    "InvalidSpanError",
    "InvalidTotalError",
    "ProrationCalculator",
    "ProrationResult",
    "RateBasis",
    "TotalCheck",
    "calculate_proration",
    "check_total",
    "derive_total",
    "validate_total",
]
