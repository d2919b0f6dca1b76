"""Payroll export builder - completed period → export artifact → exported."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.calculators.proration import ProrationCalculator
from billing_engine.calculators.types import ChargeType
from billing_engine.errors import BillingEngineError, NotFoundError
from billing_engine.exporters import (
    ExportFormat,
    ExportSink,
    ExportStatus,
    build_export_lines,
    export_file_name,
    serialize,
)
from billing_engine.models import PayrollExport, utcnow
from billing_engine.services.audit import record_audit
from billing_engine.services.ledger_service import ChargeLedger
from billing_engine.services.period_service import BillingPeriodService
from billing_engine.services.state_machine import BillingStatus, InvalidTransitionError

logger = logging.getLogger(__name__)


class ExportFailureError(BillingEngineError):
    """Raised when an export could not be serialized or written."""

    def __init__(self, payroll_export_id: UUID, reason: str):
        self.payroll_export_id = payroll_export_id
        self.reason = reason
        super().__init__(f"Payroll export {payroll_export_id} failed: {reason}")


class PayrollExportBuilder:
    """Builds the payroll export for a completed billing period.

    Invariants:
    - Only completed periods are exported
    - At most one completed export per period
    - A completed export's total equals the sum of the period's charge amounts
    - A failed export leaves the period completed so it can be retried
    """

    def __init__(
        self,
        session: AsyncSession,
        sink: ExportSink,
        timeout_seconds: float = 60.0,
    ):
        self.session = session
        self.sink = sink
        self.timeout_seconds = timeout_seconds
        self.periods = BillingPeriodService(session)
        self.ledger = ChargeLedger(session)

    async def build_export(
        self,
        billing_period_id: UUID,
        fmt: ExportFormat = ExportFormat.CSV,
        *,
        actor: str | None = None,
        export_date: datetime | None = None,
    ) -> PayrollExport:
        """Generate, write and register the export, then mark the period exported.

        Raises:
            NotFoundError: If the period does not exist
            InvalidTransitionError: If the period is not completed
            ConcurrentModificationError: If another export job holds the period
            ExportFailureError: If serialization or the sink write fails
        """
        fmt = ExportFormat(fmt)
        export_date = export_date or utcnow()

        period = await self.periods.require_period(billing_period_id)
        if period.status != BillingStatus.COMPLETED:
            raise InvalidTransitionError(
                period.status, BillingStatus.EXPORTED, "only completed periods can be exported"
            )
        if export_date.date() < period.end_date:
            raise InvalidTransitionError(
                period.status,
                BillingStatus.EXPORTED,
                "payroll export date cannot be before the period end date",
            )

        job_id = uuid4()
        try:
            await self.periods.claim_job(billing_period_id, BillingStatus.COMPLETED, job_id)
        except BillingEngineError:
            await self.session.rollback()
            raise

        period_start, period_end = period.start_date, period.end_date
        period_label = period.label()
        export = PayrollExport(
            payroll_export_id=job_id,
            billing_period_id=billing_period_id,
            export_date=export_date,
            file_name=export_file_name(period_start, period_end, fmt),
            format=fmt.value,
            status=ExportStatus.PENDING.value,
            record_count=0,
            total_amount=Decimal("0.00"),
            metadata_json={},
        )
        self.session.add(export)
        await self.session.commit()

        try:
            charges = await self.ledger.all_for_period(billing_period_id)
            lines = build_export_lines(charges, period_label)
            total = ProrationCalculator.round_to_cents(
                sum((c.amount for c in charges), Decimal("0"))
            )
            totals_by_type = {t: Decimal("0.00") for t in ChargeType}
            for charge in charges:
                totals_by_type[ChargeType(charge.charge_type)] += charge.amount
            metadata = {
                "billing_period_id": str(billing_period_id),
                "billing_period": period_label,
                "charge_count": len(charges),
                "staff_count": len(lines),
                "total_amount": str(total),
                "totals_by_type": {t.value: str(v) for t, v in totals_by_type.items()},
                "generated_at": utcnow().isoformat(),
            }
            data = serialize(fmt, lines, metadata)
            location = await asyncio.wait_for(
                self.sink.write(export.file_name, data), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            reason = f"export write timed out after {self.timeout_seconds}s"
            await self._fail(job_id, reason)
            raise ExportFailureError(job_id, reason) from exc
        except Exception as exc:
            logger.exception("Payroll export %s failed during generation", job_id)
            await self._fail(job_id, str(exc) or type(exc).__name__)
            raise ExportFailureError(job_id, str(exc) or type(exc).__name__) from exc

        export.status = ExportStatus.COMPLETED.value
        export.record_count = len(charges)
        export.total_amount = total
        export.file_size = len(data)
        export.file_path = location
        export.metadata_json = metadata
        export.completed_at = utcnow()
        try:
            await self.session.flush()
            await self.periods.transition_status(
                billing_period_id,
                BillingStatus.EXPORTED,
                actor=actor,
                reason=f"payroll export {job_id}",
                expected_job_id=job_id,
                active_job_id=None,
                payroll_export_date=export_date,
            )
        except IntegrityError as exc:
            await self._fail(
                job_id, "a completed export already exists for this period", location
            )
            raise ExportFailureError(
                job_id, "a completed export already exists for this period"
            ) from exc
        except BillingEngineError as exc:
            await self._fail(job_id, str(exc), location)
            raise

        await record_audit(
            self.session,
            entity_type="payroll_export",
            entity_id=job_id,
            action="completed",
            actor=actor,
            details={"record_count": len(charges), "total_amount": str(total)},
        )
        await self.session.commit()

        logger.info(
            "Exported billing period %s: %d charges for %d staff, total %s (%s)",
            billing_period_id,
            len(charges),
            len(lines),
            total,
            location,
        )
        return export

    async def get_export(self, payroll_export_id: UUID) -> PayrollExport:
        """Load an export or raise NotFoundError."""
        result = await self.session.execute(
            select(PayrollExport)
            .where(PayrollExport.payroll_export_id == payroll_export_id)
            .execution_options(populate_existing=True)
        )
        export = result.scalar_one_or_none()
        if export is None:
            raise NotFoundError("Payroll export", payroll_export_id)
        return export

    async def list_exports(self, billing_period_id: UUID) -> list[PayrollExport]:
        """Export history for a period, newest first."""
        result = await self.session.execute(
            select(PayrollExport)
            .where(PayrollExport.billing_period_id == billing_period_id)
            .order_by(PayrollExport.created_at.desc())
        )
        return list(result.scalars().all())

    async def _fail(
        self, payroll_export_id: UUID, reason: str, file_path: str | None = None
    ) -> None:
        """Mark the export failed and release the period. `file_path` names an
        artifact the sink already wrote.
        """
        await self.session.rollback()
        export = await self.get_export(payroll_export_id)
        export.status = ExportStatus.FAILED.value
        export.error_message = reason
        export.file_path = file_path
        await self.periods.release_job(export.billing_period_id, payroll_export_id)
        await record_audit(
            self.session,
            entity_type="payroll_export",
            entity_id=payroll_export_id,
            action="failed",
            details={"error": reason},
        )
        await self.session.commit()
        logger.warning(
            "Payroll export %s for billing period %s failed: %s",
            payroll_export_id,
            export.billing_period_id,
            reason,
        )
