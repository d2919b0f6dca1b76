"""Billing period, charge, processing run and payroll export models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from billing_engine.models.base import Base, TimestampMixin, UpdatedAtMixin, utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


# ===== Billing Periods =====


class BillingPeriod(Base, TimestampMixin, UpdatedAtMixin):
    """One payroll cycle over which charges are accumulated.

    Status is written only through BillingPeriodService, which applies every
    transition as a conditional update on (status, version).
    """

    __tablename__ = "billing_period"

    billing_period_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")
    payroll_export_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Optimistic concurrency
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    active_job_id: Mapped[UUID | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'processing', 'completed', 'exported', 'cancelled')",
            name="billing_period_status_check",
        ),
        CheckConstraint("end_date > start_date", name="billing_period_dates_check"),
        CheckConstraint(
            "payroll_export_date IS NULL OR payroll_export_date >= end_date",
            name="billing_period_export_date_check",
        ),
        Index("ix_billing_period_dates", "start_date", "end_date"),
        Index("ix_billing_period_status", "status"),
    )

    @property
    def period_days(self) -> int:
        """Number of calendar days covered (both ends inclusive)."""
        return (self.end_date - self.start_date).days + 1

    def label(self) -> str:
        """Human-readable label used in exports."""
        return f"{self.start_date.isoformat()} - {self.end_date.isoformat()}"


# ===== Charges =====


class Charge(Base, TimestampMixin, UpdatedAtMixin):
    """One staff-attributed monetary line item within a billing period."""

    __tablename__ = "charge"

    charge_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    billing_period_id: Mapped[UUID] = mapped_column(
        ForeignKey("billing_period.billing_period_id"),
        nullable=False,
    )
    staff_id: Mapped[UUID] = mapped_column(nullable=False)
    charge_type: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)

    # Monetary record with derived total
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    proration_factor: Mapped[Decimal] = mapped_column(
        Numeric(9, 6), nullable=False, default=Decimal("1")
    )

    # Traceability (weak reference to the originating activity)
    source_id: Mapped[UUID | None] = mapped_column(nullable=True)
    source_type: Mapped[str | None] = mapped_column(String(50), nullable=True)

    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )

    # Creation order within the period
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        UniqueConstraint("billing_period_id", "source_id", name="charge_period_source_unique"),
        UniqueConstraint("billing_period_id", "sequence", name="charge_period_sequence_unique"),
        CheckConstraint(
            "charge_type IN ('rent', 'utilities', 'transport', 'other')",
            name="charge_type_check",
        ),
        CheckConstraint("amount > 0", name="charge_amount_positive"),
        CheckConstraint("tax_amount >= 0", name="charge_tax_non_negative"),
        CheckConstraint("discount_amount >= 0", name="charge_discount_non_negative"),
        CheckConstraint(
            "proration_factor >= 0 AND proration_factor <= 1",
            name="charge_proration_range",
        ),
        CheckConstraint(
            "start_date IS NULL OR end_date IS NULL OR end_date > start_date",
            name="charge_dates_check",
        ),
        Index("ix_charge_staff_period", "staff_id", "billing_period_id"),
        Index("ix_charge_type", "charge_type"),
    )


# ===== Processing Runs =====


class ProcessingRun(Base):
    """One charge-generation run against a billing period."""

    __tablename__ = "processing_run"

    run_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    billing_period_id: Mapped[UUID] = mapped_column(
        ForeignKey("billing_period.billing_period_id"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")
    is_retry: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sources_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sources_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    charges_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    charges_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_source: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('running', 'succeeded', 'failed')",
            name="processing_run_status_check",
        ),
        Index("ix_processing_run_period", "billing_period_id", "started_at"),
    )

    @property
    def progress(self) -> float:
        """Fraction of sources consumed so far."""
        if self.sources_total == 0:
            return 1.0 if self.status == "succeeded" else 0.0
        return self.sources_processed / self.sources_total


# ===== Payroll Exports =====


class PayrollExport(Base, TimestampMixin):
    """Generated export artifact for a completed billing period."""

    __tablename__ = "payroll_export"

    payroll_export_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    billing_period_id: Mapped[UUID] = mapped_column(
        ForeignKey("billing_period.billing_period_id"),
        nullable=False,
    )
    export_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    format: Mapped[str] = mapped_column(String(20), nullable=False, default="csv")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        JSONType, nullable=False, default=dict
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="payroll_export_status_check",
        ),
        CheckConstraint(
            "format IN ('csv', 'excel', 'json')",
            name="payroll_export_format_check",
        ),
        CheckConstraint("record_count >= 0", name="payroll_export_record_count_check"),
        CheckConstraint("total_amount >= 0", name="payroll_export_total_check"),
        Index(
            "uq_payroll_export_completed_per_period",
            "billing_period_id",
            unique=True,
            sqlite_where=text("status = 'completed'"),
            postgresql_where=text("status = 'completed'"),
        ),
    )
