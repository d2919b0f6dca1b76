"""Billing engine services."""

from billing_engine.services.state_machine import (
    BillingPeriodStateMachine,
    BillingStatus,
    InvalidTransitionError,
)
from billing_engine.services.period_service import BillingPeriodService
from billing_engine.services.ledger_service import (
    AppendResult,
    ChargeFilters,
    ChargeLedger,
    ChargeLockedError,
    InvalidChargeError,
)
from billing_engine.services.charge_generation import (
    ChargeGenerationOrchestrator,
    SourceFailureError,
)
from billing_engine.services.export_service import ExportFailureError, PayrollExportBuilder

__all__ = [
    "AppendResult",
    "BillingPeriodService",
    "BillingPeriodStateMachine",
    "BillingStatus",
    "ChargeFilters",
    "ChargeGenerationOrchestrator",
    "ChargeLedger",
    "ChargeLockedError",
    "ExportFailureError",
    "InvalidChargeError",
    "InvalidTransitionError",
    "PayrollExportBuilder",
    "SourceFailureError",
]
