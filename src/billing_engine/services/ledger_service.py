"""Charge ledger - validated, idempotent charge persistence per billing period.

Provides:
- Append with full invariant validation and per-source idempotency
- Amend while the owning period is draft or processing
- Aggregate queries (totals by type, per-staff summaries)
- Ordered charge listing for export line generation
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.calculators.totals import check_total, derive_total
from billing_engine.calculators.types import ChargeCandidate, ChargeType
from billing_engine.errors import BillingEngineError, ConcurrentModificationError, NotFoundError
from billing_engine.models import BillingPeriod, Charge
from billing_engine.services.audit import record_audit
from billing_engine.services.state_machine import BillingPeriodStateMachine

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 500
AMENDABLE_FIELDS = frozenset(
    {"amount", "description", "notes", "tax_amount", "discount_amount", "total_amount"}
)
NON_NULLABLE_FIELDS = ("amount", "description", "tax_amount", "discount_amount", "total_amount")

# Ledger writes are serialized per period within this process. Entries vanish
# once no writer holds the lock.
_period_locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = weakref.WeakValueDictionary()


def _period_lock(billing_period_id: UUID) -> asyncio.Lock:
    lock = _period_locks.get(billing_period_id)
    if lock is None:
        lock = asyncio.Lock()
        _period_locks[billing_period_id] = lock
    return lock


class InvalidChargeError(BillingEngineError):
    """Raised when a charge violates one or more charge invariants."""

    def __init__(self, violations: list[str]):
        self.violations = violations
        super().__init__(f"Invalid charge: {'; '.join(violations)}")


class ChargeLockedError(BillingEngineError):
    """Raised when a charge write is attempted in a status that forbids it."""

    def __init__(self, billing_period_id: UUID, status: str, operation: str = "amend"):
        self.billing_period_id = billing_period_id
        self.status = status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} charges of billing period {billing_period_id} "
            f"in status '{status}'"
        )


@dataclass(frozen=True)
class AppendResult:
    """Result of a ledger append.

    If `is_new=False`, a charge for the same source already existed and was
    returned unchanged.
    """

    charge: Charge
    is_new: bool


@dataclass
class ChargeFilters:
    """Optional filters for charge listings."""

    staff_id: UUID | None = None
    charge_type: ChargeType | None = None
    source_id: UUID | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    search: str | None = None


@dataclass
class StaffChargeSummary:
    """Per-staff aggregate for one billing period."""

    staff_id: UUID
    charge_count: int = 0
    total_amount: Decimal = Decimal("0")
    by_type: dict[ChargeType, Decimal] = field(
        default_factory=lambda: {t: Decimal("0") for t in ChargeType}
    )


class ChargeLedger:
    """Owns the Charge records of billing periods.

    Key invariants:
    1. amount > 0, description non-empty and at most 500 chars
    2. proration_factor within [0, 1]
    3. sub-span (when both dates given) inside the period and start < end
    4. total_amount == amount + tax - discount within 0.01 (derived if omitted)
    5. At most one charge per (billing_period_id, source_id)
    6. Appends only while processing; amends only while draft or processing
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def append(
        self,
        billing_period_id: UUID,
        candidate: ChargeCandidate,
        actor: str | None = None,
    ) -> AppendResult:
        """Append a charge to a processing period.

        Raises:
            NotFoundError: If the period does not exist
            ChargeLockedError: If the period is not processing
            InvalidChargeError: If any charge invariant is violated
        """
        async with _period_lock(billing_period_id):
            period = await self._load_period(billing_period_id)
            if not BillingPeriodStateMachine.can_append_charges(period.status):
                raise ChargeLockedError(billing_period_id, period.status, operation="append")

            if candidate.source_id is not None:
                existing = await self.find_by_source(billing_period_id, candidate.source_id)
                if existing is not None:
                    return AppendResult(charge=existing, is_new=False)

            total_amount = candidate.total_amount
            if total_amount is None:
                total_amount = derive_total(
                    candidate.amount, candidate.tax_amount, candidate.discount_amount
                )

            values: dict[str, Any] = {
                "staff_id": candidate.staff_id,
                "charge_type": ChargeType(candidate.charge_type).value,
                "amount": candidate.amount,
                "tax_amount": candidate.tax_amount,
                "discount_amount": candidate.discount_amount,
                "total_amount": total_amount,
                "description": candidate.description,
                "proration_factor": candidate.proration_factor,
                "start_date": candidate.start_date,
                "end_date": candidate.end_date,
            }
            violations = self.validate(values, period)
            if violations:
                raise InvalidChargeError(violations)

            charge = Charge(
                billing_period_id=billing_period_id,
                source_id=candidate.source_id,
                source_type=candidate.source_type,
                notes=candidate.notes,
                metadata_json=dict(candidate.metadata),
                sequence=await self._next_sequence(billing_period_id),
                **values,
            )
            status = period.status
            self.session.add(charge)
            try:
                await self.session.flush()
            except IntegrityError as exc:
                await self.session.rollback()
                raise ConcurrentModificationError(
                    billing_period_id, status, f"charge append conflicted: {exc.orig}"
                ) from exc

            await record_audit(
                self.session,
                entity_type="charge",
                entity_id=charge.charge_id,
                action="appended",
                actor=actor,
                details={
                    "billing_period_id": str(billing_period_id),
                    "amount": str(charge.amount),
                    "source_id": str(charge.source_id) if charge.source_id else None,
                },
            )
            return AppendResult(charge=charge, is_new=True)

    async def amend(
        self,
        charge_id: UUID,
        patch: dict[str, Any],
        actor: str | None = None,
    ) -> Charge:
        """Amend amount/description/notes/tax/discount of a charge.

        The total is re-derived unless the patch supplies one, in which case
        it must agree with the merged components.

        Raises:
            NotFoundError: If the charge does not exist
            ChargeLockedError: If the period has progressed past processing
            InvalidChargeError: If the patch touches other fields or breaks an invariant
        """
        charge = await self.get_charge(charge_id)
        if charge is None:
            raise NotFoundError("Charge", charge_id)

        unknown = sorted(set(patch) - AMENDABLE_FIELDS)
        if unknown:
            raise InvalidChargeError([f"field(s) not amendable: {', '.join(unknown)}"])
        nulls = [name for name in NON_NULLABLE_FIELDS if name in patch and patch[name] is None]
        if nulls:
            raise InvalidChargeError([f"{name} must not be null" for name in nulls])

        async with _period_lock(charge.billing_period_id):
            period = await self._load_period(charge.billing_period_id)
            if not BillingPeriodStateMachine.can_amend_charges(period.status):
                raise ChargeLockedError(charge.billing_period_id, period.status)

            merged: dict[str, Any] = {
                "staff_id": charge.staff_id,
                "charge_type": charge.charge_type,
                "amount": patch.get("amount", charge.amount),
                "tax_amount": patch.get("tax_amount", charge.tax_amount),
                "discount_amount": patch.get("discount_amount", charge.discount_amount),
                "description": patch.get("description", charge.description),
                "proration_factor": charge.proration_factor,
                "start_date": charge.start_date,
                "end_date": charge.end_date,
            }
            if "total_amount" in patch:
                merged["total_amount"] = patch["total_amount"]
            else:
                merged["total_amount"] = derive_total(
                    merged["amount"], merged["tax_amount"], merged["discount_amount"]
                )

            violations = self.validate(merged, period)
            if violations:
                raise InvalidChargeError(violations)

            before = {k: str(getattr(charge, k)) for k in patch if k != "notes"}
            charge.amount = merged["amount"]
            charge.tax_amount = merged["tax_amount"]
            charge.discount_amount = merged["discount_amount"]
            charge.total_amount = merged["total_amount"]
            charge.description = merged["description"]
            if "notes" in patch:
                charge.notes = patch["notes"]
            await self.session.flush()

            await record_audit(
                self.session,
                entity_type="charge",
                entity_id=charge.charge_id,
                action="amended",
                actor=actor,
                details={"before": before, "fields": sorted(patch)},
            )
            logger.info("Amended charge %s (%s)", charge_id, ", ".join(sorted(patch)))
            return charge

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def validate(values: dict[str, Any], period: BillingPeriod) -> list[str]:
        """Validate charge values against charge invariants.

        Returns list of violation messages (empty if valid).
        """
        violations: list[str] = []

        try:
            ChargeType(values["charge_type"])
        except ValueError:
            violations.append(f"unknown charge type '{values['charge_type']}'")

        amount = values.get("amount")
        if amount is None or amount <= 0:
            violations.append("amount must be positive")

        description = values.get("description") or ""
        if not description.strip():
            violations.append("description is required")
        elif len(description) > MAX_DESCRIPTION_LENGTH:
            violations.append(f"description exceeds {MAX_DESCRIPTION_LENGTH} characters")

        factor = values.get("proration_factor")
        if factor is None or factor < 0 or factor > 1:
            violations.append("proration_factor must be within [0, 1]")

        for name in ("tax_amount", "discount_amount", "total_amount"):
            if name in values and values[name] is None:
                violations.append(f"{name} must not be null")

        tax = values.get("tax_amount") or Decimal("0")
        discount = values.get("discount_amount") or Decimal("0")
        if tax < 0:
            violations.append("tax_amount must not be negative")
        if discount < 0:
            violations.append("discount_amount must not be negative")

        start, end = values.get("start_date"), values.get("end_date")
        if start is not None and end is not None:
            if start >= end:
                violations.append("charge start_date must be before end_date")
            if start < period.start_date or end > period.end_date:
                violations.append(
                    f"charge span [{start}, {end}] must fall within the billing period "
                    f"[{period.start_date}, {period.end_date}]"
                )

        if amount is not None and values.get("total_amount") is not None:
            total_check = check_total(amount, tax, discount, values["total_amount"])
            if not total_check.ok:
                violations.append(total_check.message or "total mismatch")

        return violations

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_charge(self, charge_id: UUID) -> Charge | None:
        """Load a single charge."""
        result = await self.session.execute(
            select(Charge).where(Charge.charge_id == charge_id)
        )
        return result.scalar_one_or_none()

    async def find_by_source(self, billing_period_id: UUID, source_id: UUID) -> Charge | None:
        """Find the charge already recorded for a source, if any."""
        result = await self.session.execute(
            select(Charge).where(
                Charge.billing_period_id == billing_period_id,
                Charge.source_id == source_id,
            )
        )
        return result.scalar_one_or_none()

    async def source_ids_for_period(self, billing_period_id: UUID) -> set[UUID]:
        """All source ids already charged in a period."""
        result = await self.session.execute(
            select(Charge.source_id).where(
                Charge.billing_period_id == billing_period_id,
                Charge.source_id.is_not(None),
            )
        )
        return {row for row in result.scalars().all()}

    async def all_for_period(self, billing_period_id: UUID) -> list[Charge]:
        """All charges of a period in creation order."""
        result = await self.session.execute(
            select(Charge)
            .where(Charge.billing_period_id == billing_period_id)
            .order_by(Charge.sequence)
        )
        return list(result.scalars().all())

    async def list_charges(
        self,
        billing_period_id: UUID,
        filters: ChargeFilters | None = None,
    ) -> list[Charge]:
        """Charges of a period matching the given filters, in creation order."""
        query = select(Charge).where(Charge.billing_period_id == billing_period_id)
        if filters is not None:
            if filters.staff_id is not None:
                query = query.where(Charge.staff_id == filters.staff_id)
            if filters.charge_type is not None:
                query = query.where(Charge.charge_type == ChargeType(filters.charge_type).value)
            if filters.source_id is not None:
                query = query.where(Charge.source_id == filters.source_id)
            if filters.min_amount is not None:
                query = query.where(Charge.amount >= filters.min_amount)
            if filters.max_amount is not None:
                query = query.where(Charge.amount <= filters.max_amount)
            if filters.search:
                pattern = f"%{filters.search.lower()}%"
                query = query.where(
                    func.lower(Charge.description).like(pattern)
                    | func.lower(func.coalesce(Charge.notes, "")).like(pattern)
                )
        result = await self.session.execute(query.order_by(Charge.sequence))
        return list(result.scalars().all())

    async def totals_by_type(self, billing_period_id: UUID) -> dict[ChargeType, Decimal]:
        """Summed amount per charge type (every type present, zero if unused)."""
        totals = {charge_type: Decimal("0.00") for charge_type in ChargeType}
        for charge in await self.all_for_period(billing_period_id):
            totals[ChargeType(charge.charge_type)] += charge.amount
        return totals

    async def staff_summaries(self, billing_period_id: UUID) -> list[StaffChargeSummary]:
        """Per-staff totals for a period, largest total first."""
        summaries: dict[UUID, StaffChargeSummary] = {}
        for charge in await self.all_for_period(billing_period_id):
            summary = summaries.setdefault(
                charge.staff_id, StaffChargeSummary(staff_id=charge.staff_id)
            )
            summary.charge_count += 1
            summary.total_amount += charge.amount
            summary.by_type[ChargeType(charge.charge_type)] += charge.amount
        return sorted(
            summaries.values(), key=lambda s: (-s.total_amount, str(s.staff_id))
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load_period(self, billing_period_id: UUID) -> BillingPeriod:
        result = await self.session.execute(
            select(BillingPeriod)
            .where(BillingPeriod.billing_period_id == billing_period_id)
            .execution_options(populate_existing=True)
        )
        period = result.scalar_one_or_none()
        if period is None:
            raise NotFoundError("Billing period", billing_period_id)
        return period

    async def _next_sequence(self, billing_period_id: UUID) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.max(Charge.sequence), 0)).where(
                Charge.billing_period_id == billing_period_id
            )
        )
        return int(result.scalar_one()) + 1
