"""Serializers for payroll export files."""

from __future__ import annotations

import csv
import io
import json
from datetime import date
from decimal import Decimal
from typing import Any

from openpyxl import Workbook
from openpyxl.styles import Font

from billing_engine.calculators.types import ChargeType
from billing_engine.exporters.types import ExportFormat, PayrollExportLine

HEADERS = [
    "Employee ID",
    "Total Deductions",
    "Rent Charges",
    "Utility Charges",
    "Transport Charges",
    "Other Charges",
    "Billing Period",
]

_TYPE_ORDER = [ChargeType.RENT, ChargeType.UTILITIES, ChargeType.TRANSPORT, ChargeType.OTHER]


def export_file_name(period_start: date, period_end: date, fmt: ExportFormat) -> str:
    """payroll_export_<start>_<end>.<ext>"""
    return f"payroll_export_{period_start.isoformat()}_{period_end.isoformat()}.{fmt.extension}"


def _row(line: PayrollExportLine) -> list[Any]:
    return [
        str(line.staff_id),
        line.total_deductions,
        *(line.by_type[t] for t in _TYPE_ORDER),
        line.billing_period,
    ]


def to_csv(lines: list[PayrollExportLine]) -> bytes:
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(HEADERS)
    for line in lines:
        writer.writerow(
            [f"{value:.2f}" if isinstance(value, Decimal) else value for value in _row(line)]
        )
    return output.getvalue().encode("utf-8")


def to_json(lines: list[PayrollExportLine], metadata: dict[str, Any]) -> bytes:
    document = {
        "metadata": metadata,
        "lines": [
            {
                "employee_id": str(line.staff_id),
                "total_deductions": f"{line.total_deductions:.2f}",
                "rent_charges": f"{line.by_type[ChargeType.RENT]:.2f}",
                "utility_charges": f"{line.by_type[ChargeType.UTILITIES]:.2f}",
                "transport_charges": f"{line.by_type[ChargeType.TRANSPORT]:.2f}",
                "other_charges": f"{line.by_type[ChargeType.OTHER]:.2f}",
                "charge_count": line.charge_count,
                "billing_period": line.billing_period,
            }
            for line in lines
        ],
    }
    return json.dumps(document, indent=2, default=str).encode("utf-8")


def to_excel(lines: list[PayrollExportLine], metadata: dict[str, Any]) -> bytes:
    """Workbook with a deductions sheet and a summary sheet."""
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "Payroll Deductions"
    sheet.append(HEADERS)
    for cell in sheet[1]:
        cell.font = Font(bold=True)
    for line in lines:
        sheet.append([float(v) if isinstance(v, Decimal) else v for v in _row(line)])
    for row in sheet.iter_rows(min_row=2, min_col=2, max_col=6):
        for cell in row:
            cell.number_format = "#,##0.00"

    summary = workbook.create_sheet("Summary")
    summary.append(["Metric", "Value"])
    for key, value in metadata.items():
        summary.append([key, str(value)])

    output = io.BytesIO()
    workbook.save(output)
    return output.getvalue()


def serialize(
    fmt: ExportFormat, lines: list[PayrollExportLine], metadata: dict[str, Any]
) -> bytes:
    """Render export lines in the requested format."""
    fmt = ExportFormat(fmt)
    if fmt is ExportFormat.CSV:
        return to_csv(lines)
    if fmt is ExportFormat.JSON:
        return to_json(lines, metadata)
    return to_excel(lines, metadata)
