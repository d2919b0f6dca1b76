"""Type definitions for the charge calculation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


class ChargeType(str, Enum):
    """Charge categories."""

    RENT = "rent"
    UTILITIES = "utilities"
    TRANSPORT = "transport"
    OTHER = "other"


class RateBasis(str, Enum):
    """How an activity's base rate relates to time.

    PERIOD: the rate covers the whole billing period (monthly rent, utilities)
        and is scaled by overlap / period length.
    OCCURRENCE: the rate is owed once for the activity (a trip, a manual
        entry) and is scaled by the share of the activity inside the period.
    """

    PERIOD = "period"
    OCCURRENCE = "occurrence"


@dataclass(frozen=True)
class ProrationResult:
    """Outcome of prorating one activity span against a billing period."""

    overlap_days: int
    basis_days: int
    factor: Decimal  # Exact ratio, clamped to [0, 1]

    @property
    def is_zero(self) -> bool:
        return self.overlap_days == 0

    @property
    def is_full(self) -> bool:
        return self.factor == 1

    def stored_factor(self) -> Decimal:
        """Factor at persistence precision (6 decimals)."""
        return self.factor.quantize(Decimal("0.000001"))


@dataclass
class ChargeCandidate:
    """A charge before it is appended to the ledger."""

    staff_id: UUID
    charge_type: ChargeType
    amount: Decimal
    description: str
    proration_factor: Decimal = Decimal("1")
    tax_amount: Decimal = Decimal("0")
    discount_amount: Decimal = Decimal("0")
    total_amount: Decimal | None = None  # Derived when omitted

    # Traceability
    source_id: UUID | None = None
    source_type: str | None = None

    start_date: date | None = None
    end_date: date | None = None
    notes: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
