"""ORM models for the billing engine."""

from billing_engine.models.base import Base, TimestampMixin, UpdatedAtMixin, utcnow
from billing_engine.models.billing import BillingPeriod, Charge, PayrollExport, ProcessingRun
from billing_engine.models.audit import AuditEvent

__all__ = [
    "Base",
    "TimestampMixin",
    "UpdatedAtMixin",
    "utcnow",
    "BillingPeriod",
    "Charge",
    "PayrollExport",
    "ProcessingRun",
    "AuditEvent",
]
