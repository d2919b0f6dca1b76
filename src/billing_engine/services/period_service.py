"""Billing period service - lifecycle and optimistic status writes."""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.errors import ConcurrentModificationError, InvalidPeriodError, NotFoundError
from billing_engine.models import BillingPeriod, PayrollExport
from billing_engine.services.audit import record_audit
from billing_engine.services.state_machine import (
    BillingPeriodStateMachine,
    BillingStatus,
    InvalidTransitionError,
)

logger = logging.getLogger(__name__)

_UNSET: Any = object()


class BillingPeriodService:
    """Service for managing billing period lifecycle.

    Every status write goes through transition_status(), which reads the
    persisted row and applies the new status with a conditional UPDATE on
    (status, version). A writer that loses the race gets
    ConcurrentModificationError and must not continue.

    Operations:
    - create_period: New draft period (no overlap with live periods)
    - update_period_dates: Date edits while draft
    - cancel_period: draft | processing → cancelled
    - reactivate_period: cancelled → draft
    - claim_job / release_job: hold a period for one processing or export run
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_period(self, billing_period_id: UUID) -> BillingPeriod | None:
        """Load a billing period, refreshing any cached copy from the store."""
        result = await self.session.execute(
            select(BillingPeriod)
            .where(BillingPeriod.billing_period_id == billing_period_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def require_period(self, billing_period_id: UUID) -> BillingPeriod:
        """Load a billing period or raise NotFoundError."""
        period = await self.get_period(billing_period_id)
        if period is None:
            raise NotFoundError("Billing period", billing_period_id)
        return period

    async def list_periods(
        self,
        status: str | None = None,
        start_from: date | None = None,
        end_to: date | None = None,
    ) -> list[BillingPeriod]:
        """List periods, newest first, optionally filtered."""
        query = select(BillingPeriod)
        if status:
            query = query.where(BillingPeriod.status == status)
        if start_from:
            query = query.where(BillingPeriod.start_date >= start_from)
        if end_to:
            query = query.where(BillingPeriod.end_date <= end_to)
        result = await self.session.execute(query.order_by(BillingPeriod.start_date.desc()))
        return list(result.scalars().all())

    async def create_period(
        self,
        start_date: date,
        end_date: date,
        name: str | None = None,
        actor: str | None = None,
    ) -> BillingPeriod:
        """Create a billing period in draft status.

        Raises:
            InvalidPeriodError: If the range is inverted or overlaps a live period
        """
        self._validate_dates(start_date, end_date)
        await self._ensure_no_overlap(start_date, end_date)

        period = BillingPeriod(
            name=name,
            start_date=start_date,
            end_date=end_date,
            status=BillingStatus.DRAFT.value,
            version=1,
        )
        self.session.add(period)
        await self.session.flush()

        await record_audit(
            self.session,
            entity_type="billing_period",
            entity_id=period.billing_period_id,
            action="created",
            actor=actor,
            details={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        )
        logger.info(
            "Created billing period %s [%s, %s]",
            period.billing_period_id,
            start_date,
            end_date,
        )
        return period

    async def update_period_dates(
        self,
        billing_period_id: UUID,
        start_date: date,
        end_date: date,
        actor: str | None = None,
    ) -> BillingPeriod:
        """Change the date range of a draft period."""
        period = await self.require_period(billing_period_id)
        if not BillingPeriodStateMachine.can_edit_dates(period.status):
            raise InvalidPeriodError(
                f"date range is immutable once status leaves draft (current: {period.status})"
            )
        self._validate_dates(start_date, end_date)
        await self._ensure_no_overlap(start_date, end_date, exclude_id=billing_period_id)

        result = await self.session.execute(
            update(BillingPeriod)
            .where(
                BillingPeriod.billing_period_id == billing_period_id,
                BillingPeriod.status == BillingStatus.DRAFT.value,
                BillingPeriod.version == period.version,
            )
            .values(start_date=start_date, end_date=end_date, version=period.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrentModificationError(billing_period_id, BillingStatus.DRAFT.value)

        await self.session.refresh(period)
        await record_audit(
            self.session,
            entity_type="billing_period",
            entity_id=billing_period_id,
            action="dates_changed",
            actor=actor,
            details={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        )
        return period

    async def transition_status(
        self,
        billing_period_id: UUID,
        to_status: str,
        *,
        actor: str | None = None,
        reason: str | None = None,
        expected_job_id: UUID | None = _UNSET,
        active_job_id: UUID | None = _UNSET,
        payroll_export_date: datetime | None = None,
    ) -> BillingPeriod:
        """Transition a billing period to a new status.

        Args:
            billing_period_id: Period to transition
            to_status: Target status
            actor: Who requested the transition (audit only)
            reason: Free-text reason (audit only)
            expected_job_id: If given, the persisted active_job_id must match
            active_job_id: If given, the new active_job_id to store
            payroll_export_date: Stamped on completed → exported

        Raises:
            InvalidTransitionError: If the transition is not allowed from the persisted status
            ConcurrentModificationError: If the row changed between read and write
        """
        to_status = BillingStatus(to_status).value
        period = await self.require_period(billing_period_id)
        from_status = period.status

        BillingPeriodStateMachine.validate_transition(from_status, to_status)

        values: dict[str, Any] = {
            "status": to_status,
            "version": period.version + 1,
        }

        # Transition side effects
        if to_status == BillingStatus.EXPORTED:
            if payroll_export_date is None:
                raise InvalidTransitionError(
                    from_status, to_status, "payroll_export_date is required"
                )
            if payroll_export_date.date() < period.end_date:
                raise InvalidTransitionError(
                    from_status,
                    to_status,
                    "payroll export date cannot be before the period end date",
                )
            if not await self._has_completed_export(billing_period_id):
                raise InvalidTransitionError(
                    from_status, to_status, "no completed payroll export exists"
                )
            values["payroll_export_date"] = payroll_export_date

        elif to_status == BillingStatus.CANCELLED:
            values["active_job_id"] = None

        elif BillingPeriodStateMachine.is_reactivation(from_status, to_status):
            await self._ensure_no_overlap(
                period.start_date, period.end_date, exclude_id=billing_period_id
            )

        if active_job_id is not _UNSET:
            values["active_job_id"] = active_job_id

        conditions = [
            BillingPeriod.billing_period_id == billing_period_id,
            BillingPeriod.status == from_status,
            BillingPeriod.version == period.version,
        ]
        if expected_job_id is not _UNSET:
            if expected_job_id is None:
                conditions.append(BillingPeriod.active_job_id.is_(None))
            else:
                conditions.append(BillingPeriod.active_job_id == expected_job_id)

        result = await self.session.execute(
            update(BillingPeriod)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(
                "Lost status race on billing period %s (%s → %s)",
                billing_period_id,
                from_status,
                to_status,
            )
            raise ConcurrentModificationError(billing_period_id, from_status)

        await self.session.refresh(period)
        await record_audit(
            self.session,
            entity_type="billing_period",
            entity_id=billing_period_id,
            action=f"status_change:{from_status}:{to_status}",
            actor=actor,
            details={"reason": reason} if reason else None,
        )
        logger.info(
            "Billing period %s transitioned %s → %s", billing_period_id, from_status, to_status
        )
        return period

    async def cancel_period(
        self,
        billing_period_id: UUID,
        actor: str | None = None,
        reason: str | None = None,
    ) -> BillingPeriod:
        """Cancel a draft or processing period. Charges are kept."""
        return await self.transition_status(
            billing_period_id, BillingStatus.CANCELLED, actor=actor, reason=reason
        )

    async def reactivate_period(
        self,
        billing_period_id: UUID,
        actor: str | None = None,
        reason: str | None = None,
    ) -> BillingPeriod:
        """Return a cancelled period to draft. Existing charges stay attached."""
        return await self.transition_status(
            billing_period_id, BillingStatus.DRAFT, actor=actor, reason=reason
        )

    async def claim_job(
        self,
        billing_period_id: UUID,
        expected_status: str,
        job_id: UUID,
    ) -> BillingPeriod:
        """Hold an idle period for one run without changing its status.

        Raises:
            InvalidTransitionError: If the period is not in expected_status
            ConcurrentModificationError: If another run holds the period
        """
        expected_status = BillingStatus(expected_status).value
        period = await self.require_period(billing_period_id)
        if period.status != expected_status:
            raise InvalidTransitionError(
                period.status,
                expected_status,
                f"period must be {expected_status} (current: {period.status})",
            )
        if period.active_job_id is not None:
            raise ConcurrentModificationError(
                billing_period_id, expected_status, f"job {period.active_job_id} is active"
            )

        result = await self.session.execute(
            update(BillingPeriod)
            .where(
                BillingPeriod.billing_period_id == billing_period_id,
                BillingPeriod.status == expected_status,
                BillingPeriod.version == period.version,
                BillingPeriod.active_job_id.is_(None),
            )
            .values(active_job_id=job_id, version=period.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise ConcurrentModificationError(billing_period_id, expected_status)

        await self.session.refresh(period)
        return period

    async def release_job(self, billing_period_id: UUID, job_id: UUID) -> bool:
        """Release a period held by job_id. Returns False if it was not held by it."""
        result = await self.session.execute(
            update(BillingPeriod)
            .where(
                BillingPeriod.billing_period_id == billing_period_id,
                BillingPeriod.active_job_id == job_id,
            )
            .values(active_job_id=None, version=BillingPeriod.version + 1)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def _has_completed_export(self, billing_period_id: UUID) -> bool:
        result = await self.session.execute(
            select(
                exists().where(
                    PayrollExport.billing_period_id == billing_period_id,
                    PayrollExport.status == "completed",
                )
            )
        )
        return bool(result.scalar())

    async def _ensure_no_overlap(
        self,
        start_date: date,
        end_date: date,
        exclude_id: UUID | None = None,
    ) -> None:
        query = select(BillingPeriod.billing_period_id).where(
            BillingPeriod.status != BillingStatus.CANCELLED.value,
            BillingPeriod.start_date <= end_date,
            BillingPeriod.end_date >= start_date,
        )
        if exclude_id is not None:
            query = query.where(BillingPeriod.billing_period_id != exclude_id)
        result = await self.session.execute(query.limit(1))
        clash = result.scalar_one_or_none()
        if clash is not None:
            raise InvalidPeriodError(f"overlaps existing billing period {clash}")

    @staticmethod
    def _validate_dates(start_date: date, end_date: date) -> None:
        if end_date <= start_date:
            raise InvalidPeriodError("end date must be after start date")
