"""Export line model and grouping of charges into payroll lines."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Iterable
from uuid import UUID

from billing_engine.calculators.types import ChargeType
from billing_engine.models import Charge


class ExportFormat(str, Enum):
    """Supported export file formats."""

    CSV = "csv"
    EXCEL = "excel"
    JSON = "json"

    @property
    def extension(self) -> str:
        return "xlsx" if self is ExportFormat.EXCEL else self.value


class ExportStatus(str, Enum):
    """Payroll export status values."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class PayrollExportLine:
    """One employee's deductions for a billing period."""

    staff_id: UUID
    billing_period: str
    charge_count: int = 0
    by_type: dict[ChargeType, Decimal] = field(
        default_factory=lambda: {t: Decimal("0.00") for t in ChargeType}
    )

    @property
    def total_deductions(self) -> Decimal:
        return sum(self.by_type.values(), Decimal("0.00"))


def build_export_lines(charges: Iterable[Charge], billing_period: str) -> list[PayrollExportLine]:
    """Group charges per staff member, sorted by staff id."""
    lines: dict[UUID, PayrollExportLine] = {}
    for charge in charges:
        line = lines.setdefault(
            charge.staff_id,
            PayrollExportLine(staff_id=charge.staff_id, billing_period=billing_period),
        )
        line.by_type[ChargeType(charge.charge_type)] += charge.amount
        line.charge_count += 1
    return sorted(lines.values(), key=lambda line: str(line.staff_id))
