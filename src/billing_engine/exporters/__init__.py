"""Payroll export rendering and delivery."""

from billing_engine.exporters.formats import HEADERS, export_file_name, serialize
from billing_engine.exporters.sinks import ExportSink, InMemoryExportSink, LocalDirectorySink
from billing_engine.exporters.types import (
    ExportFormat,
    ExportStatus,
    PayrollExportLine,
    build_export_lines,
)

__all__ = [
    "HEADERS",
    "ExportFormat",
    "ExportSink",
    "ExportStatus",
    "InMemoryExportSink",
    "LocalDirectorySink",
    "PayrollExportLine",
    "build_export_lines",
    "export_file_name",
    "serialize",
]
