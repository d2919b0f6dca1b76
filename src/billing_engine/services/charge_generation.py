"""Charge generation orchestrator.

Drives a billing period from draft through processing to completed:

1. Claim the period (draft → processing, active_job_id = run)
2. Fetch activity from every source, in order, under a timeout
3. Prorate each item against the period and append it to the ledger
4. Commit after each appended charge and record progress on the ProcessingRun
5. processing → completed once every source is consumed

A failing source halts the run. Every charge appended before the failure
stays committed, including those of the failing source, the period stays
processing, and a retry run appends only activity whose source_id is not yet
charged.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from typing import NoReturn, Sequence
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.calculators.proration import InvalidSpanError, ProrationCalculator
from billing_engine.calculators.types import ChargeCandidate
from billing_engine.errors import BillingEngineError, ConcurrentModificationError, NotFoundError
from billing_engine.models import ProcessingRun, utcnow
from billing_engine.services.audit import record_audit
from billing_engine.services.ledger_service import ChargeLedger, InvalidChargeError
from billing_engine.services.period_service import BillingPeriodService
from billing_engine.services.state_machine import BillingStatus
from billing_engine.sources.base import ActivityRecord, ActivitySource, MalformedActivityError

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 500


class SourceFailureError(BillingEngineError):
    """Raised when an activity source fails during charge generation."""

    def __init__(self, source: str, cause: Exception | str):
        self.source = source
        self.cause = cause
        super().__init__(f"Activity source '{source}' failed: {cause}")


@dataclass(frozen=True)
class SourceOutcome:
    """Counts for one consumed source."""

    source: str
    fetched: int
    created: int
    skipped: int


class ChargeGenerationOrchestrator:
    """Turns source activity into charges for one billing period at a time.

    The orchestrator owns its transaction boundaries: begin() commits the
    claim and the run record, execute() commits after every appended charge
    and again after every source.
    """

    def __init__(
        self,
        session: AsyncSession,
        sources: Sequence[ActivitySource],
        source_timeout_seconds: float = 30.0,
        fetch_concurrently: bool = False,
    ):
        self.session = session
        self.sources = list(sources)
        self.source_timeout_seconds = source_timeout_seconds
        self.fetch_concurrently = fetch_concurrently
        self.periods = BillingPeriodService(session)
        self.ledger = ChargeLedger(session)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def process_period(
        self, billing_period_id: UUID, actor: str | None = None
    ) -> ProcessingRun:
        """Run charge generation for a draft period to completion.

        Raises:
            InvalidTransitionError: If the period is not draft (no side effects)
            ConcurrentModificationError: If another run claimed the period first
            SourceFailureError: If a source fails (period stays processing)
        """
        run = await self.begin(billing_period_id, actor=actor)
        return await self.execute(run.run_id)

    async def retry_processing(
        self, billing_period_id: UUID, actor: str | None = None
    ) -> ProcessingRun:
        """Re-run every source for a processing period left by a failed run."""
        run = await self.begin(billing_period_id, retry=True, actor=actor)
        return await self.execute(run.run_id)

    async def begin(
        self,
        billing_period_id: UUID,
        *,
        retry: bool = False,
        actor: str | None = None,
    ) -> ProcessingRun:
        """Claim the period and create a running ProcessingRun (committed).

        A fresh run moves draft → processing. A retry run only claims a
        processing period that no other run is holding.
        """
        run_id = uuid4()
        try:
            if retry:
                await self.periods.claim_job(billing_period_id, BillingStatus.PROCESSING, run_id)
            else:
                await self.periods.transition_status(
                    billing_period_id,
                    BillingStatus.PROCESSING,
                    actor=actor,
                    reason="charge generation started",
                    expected_job_id=None,
                    active_job_id=run_id,
                )
        except BillingEngineError as exc:
            await self.session.rollback()
            logger.warning("Processing rejected for billing period %s: %s", billing_period_id, exc)
            raise

        run = ProcessingRun(
            run_id=run_id,
            billing_period_id=billing_period_id,
            status="running",
            is_retry=retry,
            sources_total=len(self.sources),
            sources_processed=0,
            charges_created=0,
            charges_skipped=0,
        )
        self.session.add(run)
        await record_audit(
            self.session,
            entity_type="processing_run",
            entity_id=run_id,
            action="retry_started" if retry else "started",
            actor=actor,
            details={"billing_period_id": str(billing_period_id)},
        )
        await self.session.commit()

        logger.info(
            "Processing run %s started for billing period %s (%d sources%s)",
            run_id,
            billing_period_id,
            len(self.sources),
            ", retry" if retry else "",
        )
        return run

    async def execute(self, run_id: UUID) -> ProcessingRun:
        """Consume every source for a started run and complete the period."""
        run = await self._load_run(run_id)
        billing_period_id = run.billing_period_id
        period = await self.periods.require_period(billing_period_id)
        period_start, period_end = period.start_date, period.end_date

        if period.status != BillingStatus.PROCESSING or period.active_job_id != run_id:
            return await self._fail(
                run_id,
                None,
                ConcurrentModificationError(
                    billing_period_id,
                    BillingStatus.PROCESSING.value,
                    f"run {run_id} no longer holds the period",
                ),
            )

        charged = await self.ledger.source_ids_for_period(billing_period_id)

        prefetched: list[list[ActivityRecord] | BaseException] | None = None
        if self.fetch_concurrently and self.sources:
            prefetched = await asyncio.gather(
                *(self._fetch(source, period_start, period_end) for source in self.sources),
                return_exceptions=True,
            )

        for index, source in enumerate(self.sources):
            try:
                if prefetched is not None:
                    fetched = prefetched[index]
                    if isinstance(fetched, BaseException):
                        raise fetched
                    records = fetched
                else:
                    records = await self._fetch(source, period_start, period_end)

                outcome = await self._apply(
                    run_id, source, records, billing_period_id, period_start, period_end, charged
                )
            except BillingEngineError as exc:
                return await self._fail(run_id, source.name, exc)

            run = await self._load_run(run_id)
            run.sources_processed += 1
            run.charges_skipped += outcome.skipped
            await self.session.commit()
            logger.info(
                "Run %s consumed source %s: %d fetched, %d created, %d skipped",
                run_id,
                outcome.source,
                outcome.fetched,
                outcome.created,
                outcome.skipped,
            )

        try:
            await self.periods.transition_status(
                billing_period_id,
                BillingStatus.COMPLETED,
                reason="all activity sources consumed",
                expected_job_id=run_id,
                active_job_id=None,
            )
        except BillingEngineError as exc:
            return await self._fail(run_id, None, exc)

        run = await self._load_run(run_id)
        run.status = "succeeded"
        run.finished_at = utcnow()
        await record_audit(
            self.session,
            entity_type="processing_run",
            entity_id=run_id,
            action="succeeded",
            details={
                "charges_created": run.charges_created,
                "charges_skipped": run.charges_skipped,
            },
        )
        await self.session.commit()

        logger.info(
            "Processing run %s completed billing period %s (%d charges created)",
            run_id,
            billing_period_id,
            run.charges_created,
        )
        return run

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    async def latest_run(self, billing_period_id: UUID) -> ProcessingRun | None:
        """Most recent processing run for a period."""
        result = await self.session.execute(
            select(ProcessingRun)
            .where(ProcessingRun.billing_period_id == billing_period_id)
            .order_by(ProcessingRun.started_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_runs(self, billing_period_id: UUID) -> list[ProcessingRun]:
        """All processing runs for a period, newest first."""
        result = await self.session.execute(
            select(ProcessingRun)
            .where(ProcessingRun.billing_period_id == billing_period_id)
            .order_by(ProcessingRun.started_at.desc())
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _fetch(
        self, source: ActivitySource, period_start: date, period_end: date
    ) -> list[ActivityRecord]:
        try:
            return await asyncio.wait_for(
                source.fetch_activity(period_start, period_end),
                timeout=self.source_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise SourceFailureError(
                source.name, f"timed out after {self.source_timeout_seconds}s"
            ) from exc
        except MalformedActivityError as exc:
            raise SourceFailureError(source.name, exc.detail) from exc
        except BillingEngineError:
            raise
        except Exception as exc:
            logger.exception("Activity source %s raised unexpectedly", source.name)
            raise SourceFailureError(source.name, exc) from exc

    async def _apply(
        self,
        run_id: UUID,
        source: ActivitySource,
        records: list[ActivityRecord],
        billing_period_id: UUID,
        period_start: date,
        period_end: date,
        charged: set[UUID],
    ) -> SourceOutcome:
        created = skipped = 0
        for record in records:
            if record.source_id in charged:
                skipped += 1
                continue

            candidate = self._build_candidate(source, record, period_start, period_end)
            if candidate is None:
                skipped += 1
                continue

            try:
                result = await self.ledger.append(billing_period_id, candidate)
            except InvalidChargeError as exc:
                raise SourceFailureError(
                    source.name, f"activity {record.source_id} rejected: {exc}"
                ) from exc

            charged.add(record.source_id)
            if result.is_new:
                created += 1
                run = await self._load_run(run_id)
                run.charges_created += 1
                await self.session.commit()
            else:
                skipped += 1

        return SourceOutcome(
            source=source.name, fetched=len(records), created=created, skipped=skipped
        )

    @staticmethod
    def _build_candidate(
        source: ActivitySource,
        record: ActivityRecord,
        period_start: date,
        period_end: date,
    ) -> ChargeCandidate | None:
        """Prorate one activity item. Returns None when nothing is owed."""
        try:
            proration = ProrationCalculator.calculate(
                record.activity_start,
                record.activity_end,
                period_start,
                period_end,
                record.basis,
            )
        except InvalidSpanError as exc:
            raise SourceFailureError(
                source.name, f"activity {record.source_id}: {exc}"
            ) from exc

        if proration.is_zero:
            return None
        amount = ProrationCalculator.prorate(record.base_rate, proration)
        if amount <= 0:
            return None

        description = record.description
        if not proration.is_full:
            description = f"{description} ({proration.overlap_days}/{proration.basis_days} days)"

        # Sub-span clipped to the period; omitted when it collapses to one day
        span_start = max(record.activity_start, period_start)
        span_end = period_end if record.activity_end is None else min(record.activity_end, period_end)
        if span_start >= span_end:
            span_start = span_end = None

        return ChargeCandidate(
            staff_id=record.staff_id,
            charge_type=record.charge_type,
            amount=amount,
            description=description[:MAX_DESCRIPTION_LENGTH],
            proration_factor=proration.stored_factor(),
            source_id=record.source_id,
            source_type=record.source_type or source.name,
            start_date=span_start,
            end_date=span_end,
            metadata={
                **record.metadata,
                "source": source.name,
                "base_rate": str(record.base_rate),
                "basis": record.basis.value,
                "overlap_days": proration.overlap_days,
                "basis_days": proration.basis_days,
            },
        )

    async def _fail(
        self, run_id: UUID, source_name: str | None, exc: BillingEngineError
    ) -> NoReturn:
        """Discard the uncommitted item, record the failure, release the claim, re-raise."""
        await self.session.rollback()

        run = await self._load_run(run_id)
        run.status = "failed"
        run.failed_source = source_name
        run.error_message = str(exc)
        run.finished_at = utcnow()
        await self.periods.release_job(run.billing_period_id, run_id)
        await record_audit(
            self.session,
            entity_type="processing_run",
            entity_id=run_id,
            action="failed",
            details={"source": source_name, "error": str(exc)},
        )
        await self.session.commit()

        logger.warning(
            "Processing run %s failed for billing period %s after %d/%d sources: %s",
            run_id,
            run.billing_period_id,
            run.sources_processed,
            run.sources_total,
            exc,
        )
        raise exc

    async def _load_run(self, run_id: UUID) -> ProcessingRun:
        result = await self.session.execute(
            select(ProcessingRun)
            .where(ProcessingRun.run_id == run_id)
            .execution_options(populate_existing=True)
        )
        run = result.scalar_one_or_none()
        if run is None:
            raise NotFoundError("Processing run", run_id)
        return run
