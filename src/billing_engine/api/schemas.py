"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from billing_engine.calculators.types import ChargeType
from billing_engine.exporters import ExportFormat


# ============================================================================
# Billing Period schemas
# ============================================================================


class BillingPeriodCreate(BaseModel):
    """Schema for creating a new billing period."""

    start_date: date
    end_date: date
    name: str | None = Field(default=None, max_length=120)


class BillingPeriodDatesUpdate(BaseModel):
    """Schema for changing a draft period's date range."""

    start_date: date
    end_date: date


class BillingPeriodResponse(BaseModel):
    """Schema for billing period response."""

    model_config = ConfigDict(from_attributes=True)

    billing_period_id: UUID
    name: str | None = None
    start_date: date
    end_date: date
    status: str
    payroll_export_date: datetime | None = None
    version: int
    active_job_id: UUID | None = None
    period_days: int
    allowed_transitions: list[str] = []
    created_at: datetime
    updated_at: datetime


class BillingPeriodListResponse(BaseModel):
    """Schema for listing billing periods."""

    items: list[BillingPeriodResponse]
    total: int
    page: int
    page_size: int


class TransitionRequest(BaseModel):
    """Optional reason for cancel/reactivate."""

    reason: str | None = Field(default=None, max_length=500)


# ============================================================================
# Charge schemas
# ============================================================================


class ChargeResponse(BaseModel):
    """Schema for charge response."""

    model_config = ConfigDict(from_attributes=True)

    charge_id: UUID
    billing_period_id: UUID
    staff_id: UUID
    charge_type: str
    description: str
    amount: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    proration_factor: Decimal
    source_id: UUID | None = None
    source_type: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    notes: str | None = None
    metadata_json: dict[str, Any] = {}
    sequence: int
    created_at: datetime
    updated_at: datetime


class ChargeListResponse(BaseModel):
    """Schema for listing charges."""

    items: list[ChargeResponse]
    total: int


class ChargeAmend(BaseModel):
    """Fields an operator may change while the period is draft or processing."""

    amount: Decimal | None = Field(default=None, gt=0, decimal_places=2)
    description: str | None = Field(default=None, min_length=1, max_length=500)
    notes: str | None = None
    tax_amount: Decimal | None = Field(default=None, ge=0, decimal_places=2)
    discount_amount: Decimal | None = Field(default=None, ge=0, decimal_places=2)
    total_amount: Decimal | None = Field(default=None, decimal_places=2)


class ChargeTotalsResponse(BaseModel):
    """Summed charge amounts per type for one period."""

    billing_period_id: UUID
    totals: dict[ChargeType, Decimal]
    total_amount: Decimal


class StaffSummaryResponse(BaseModel):
    """Per-staff aggregate for one period."""

    staff_id: UUID
    charge_count: int
    total_amount: Decimal
    by_type: dict[ChargeType, Decimal]


# ============================================================================
# Processing schemas
# ============================================================================


class ProcessingRunResponse(BaseModel):
    """Schema for processing run / progress response."""

    model_config = ConfigDict(from_attributes=True)

    run_id: UUID
    billing_period_id: UUID
    status: str
    is_retry: bool
    sources_total: int
    sources_processed: int
    charges_created: int
    charges_skipped: int
    progress: float
    failed_source: str | None = None
    error_message: str | None = None
    started_at: datetime
    finished_at: datetime | None = None


# ============================================================================
# Export schemas
# ============================================================================


class ExportRequest(BaseModel):
    """Schema for requesting a payroll export."""

    format: ExportFormat = ExportFormat.CSV
    export_date: datetime | None = None


class PayrollExportResponse(BaseModel):
    """Schema for payroll export response."""

    model_config = ConfigDict(from_attributes=True)

    payroll_export_id: UUID
    billing_period_id: UUID
    export_date: datetime
    file_name: str
    format: str
    status: str
    record_count: int
    total_amount: Decimal
    file_size: int | None = None
    file_path: str | None = None
    error_message: str | None = None
    metadata_json: dict[str, Any] = {}
    created_at: datetime
    completed_at: datetime | None = None


# ============================================================================
# Audit / error schemas
# ============================================================================


class AuditEventResponse(BaseModel):
    """Schema for audit event response."""

    model_config = ConfigDict(from_attributes=True)

    audit_event_id: UUID
    entity_type: str
    entity_id: UUID
    action: str
    actor: str | None = None
    details_json: dict[str, Any] | None = None
    created_at: datetime


class ErrorResponse(BaseModel):
    """Schema for error response."""

    detail: str
    code: str | None = None
    context: dict[str, Any] | None = None
