"""Billing period API endpoints."""

import logging
from datetime import date
from decimal import Decimal
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, HTTPException, Path, Query, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.api.dependencies import (
    ActivitySources,
    Actor,
    AppSettings,
    DbSession,
    SessionFactory,
    Sink,
)
from billing_engine.api.schemas import (
    AuditEventResponse,
    BillingPeriodCreate,
    BillingPeriodDatesUpdate,
    BillingPeriodListResponse,
    BillingPeriodResponse,
    ChargeListResponse,
    ChargeResponse,
    ChargeTotalsResponse,
    ErrorResponse,
    ExportRequest,
    PayrollExportResponse,
    ProcessingRunResponse,
    StaffSummaryResponse,
    TransitionRequest,
)
from billing_engine.calculators.types import ChargeType
from billing_engine.errors import BillingEngineError
from billing_engine.models import BillingPeriod
from billing_engine.services.audit import list_audit_events
from billing_engine.services.charge_generation import ChargeGenerationOrchestrator
from billing_engine.services.export_service import PayrollExportBuilder
from billing_engine.services.ledger_service import ChargeFilters, ChargeLedger
from billing_engine.services.period_service import BillingPeriodService
from billing_engine.services.state_machine import BillingPeriodStateMachine, BillingStatus
from billing_engine.sources import ActivitySource

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing-periods", tags=["billing-periods"])

CONFLICT = {409: {"model": ErrorResponse}, 404: {"model": ErrorResponse}}


def _period_response(period: BillingPeriod) -> BillingPeriodResponse:
    resp = BillingPeriodResponse.model_validate(period)
    resp.allowed_transitions = BillingPeriodStateMachine.get_next_statuses(period.status)
    return resp


async def run_processing_job(
    factory: async_sessionmaker[AsyncSession],
    sources: list[ActivitySource],
    run_id: UUID,
    timeout_seconds: float,
    fetch_concurrently: bool,
) -> None:
    """Background task: execute a started processing run in its own session."""
    async with factory() as session:
        orchestrator = ChargeGenerationOrchestrator(
            session,
            sources,
            source_timeout_seconds=timeout_seconds,
            fetch_concurrently=fetch_concurrently,
        )
        try:
            await orchestrator.execute(run_id)
        except BillingEngineError as exc:
            # Already recorded on the run; surfaced through the progress endpoint
            logger.warning("Background processing run %s ended with error: %s", run_id, exc)


# ============================================================================
# Billing Period CRUD
# ============================================================================


@router.post(
    "",
    response_model=BillingPeriodResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": ErrorResponse}},
)
async def create_billing_period(
    db: DbSession,
    actor: Actor,
    payload: BillingPeriodCreate,
) -> BillingPeriodResponse:
    """Create a new billing period in draft status."""
    service = BillingPeriodService(db)
    period = await service.create_period(
        payload.start_date, payload.end_date, name=payload.name, actor=actor
    )
    await db.commit()
    return _period_response(period)


@router.get("", response_model=BillingPeriodListResponse)
async def list_billing_periods(
    db: DbSession,
    page: Annotated[int, Query(ge=1)] = 1,
    page_size: Annotated[int, Query(ge=1, le=100)] = 20,
    status_filter: Annotated[BillingStatus | None, Query(alias="status")] = None,
    start_from: date | None = None,
    end_to: date | None = None,
) -> BillingPeriodListResponse:
    """List billing periods, newest first, with optional filters."""
    service = BillingPeriodService(db)
    periods = await service.list_periods(
        status=status_filter.value if status_filter else None,
        start_from=start_from,
        end_to=end_to,
    )
    window = periods[(page - 1) * page_size : page * page_size]
    return BillingPeriodListResponse(
        items=[_period_response(p) for p in window],
        total=len(periods),
        page=page,
        page_size=page_size,
    )


@router.get(
    "/{billing_period_id}",
    response_model=BillingPeriodResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_billing_period(
    db: DbSession,
    billing_period_id: Annotated[UUID, Path()],
) -> BillingPeriodResponse:
    """Get a specific billing period by ID."""
    period = await BillingPeriodService(db).require_period(billing_period_id)
    return _period_response(period)


@router.patch(
    "/{billing_period_id}",
    response_model=BillingPeriodResponse,
    responses={**CONFLICT, 422: {"model": ErrorResponse}},
)
async def update_billing_period_dates(
    db: DbSession,
    actor: Actor,
    billing_period_id: Annotated[UUID, Path()],
    payload: BillingPeriodDatesUpdate,
) -> BillingPeriodResponse:
    """Change the date range of a draft period."""
    period = await BillingPeriodService(db).update_period_dates(
        billing_period_id, payload.start_date, payload.end_date, actor=actor
    )
    await db.commit()
    return _period_response(period)


# ============================================================================
# Billing Period State Transitions
# ============================================================================


@router.post(
    "/{billing_period_id}/process",
    response_model=ProcessingRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=CONFLICT,
)
async def process_billing_period(
    db: DbSession,
    factory: SessionFactory,
    sources: ActivitySources,
    settings: AppSettings,
    actor: Actor,
    background_tasks: BackgroundTasks,
    billing_period_id: Annotated[UUID, Path()],
) -> ProcessingRunResponse:
    """Start charge generation for a draft period.

    The period moves to processing before this returns; sources are consumed
    in the background. Poll /progress for the outcome.
    """
    orchestrator = ChargeGenerationOrchestrator(db, sources)
    run = await orchestrator.begin(billing_period_id, actor=actor)
    background_tasks.add_task(
        run_processing_job,
        factory,
        sources,
        run.run_id,
        settings.source_timeout_seconds,
        settings.fetch_sources_concurrently,
    )
    return ProcessingRunResponse.model_validate(run)


@router.post(
    "/{billing_period_id}/process/retry",
    response_model=ProcessingRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses=CONFLICT,
)
async def retry_billing_period_processing(
    db: DbSession,
    factory: SessionFactory,
    sources: ActivitySources,
    settings: AppSettings,
    actor: Actor,
    background_tasks: BackgroundTasks,
    billing_period_id: Annotated[UUID, Path()],
) -> ProcessingRunResponse:
    """Re-run charge generation for a processing period whose last run failed."""
    orchestrator = ChargeGenerationOrchestrator(db, sources)
    run = await orchestrator.begin(billing_period_id, retry=True, actor=actor)
    background_tasks.add_task(
        run_processing_job,
        factory,
        sources,
        run.run_id,
        settings.source_timeout_seconds,
        settings.fetch_sources_concurrently,
    )
    return ProcessingRunResponse.model_validate(run)


@router.get(
    "/{billing_period_id}/progress",
    response_model=ProcessingRunResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_processing_progress(
    db: DbSession,
    billing_period_id: Annotated[UUID, Path()],
) -> ProcessingRunResponse:
    """Latest processing run for the period."""
    await BillingPeriodService(db).require_period(billing_period_id)
    run = await ChargeGenerationOrchestrator(db, []).latest_run(billing_period_id)
    if run is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No processing run for this billing period",
        )
    return ProcessingRunResponse.model_validate(run)


@router.get("/{billing_period_id}/runs", response_model=list[ProcessingRunResponse])
async def list_processing_runs(
    db: DbSession,
    billing_period_id: Annotated[UUID, Path()],
) -> list[ProcessingRunResponse]:
    """All processing runs for the period, newest first."""
    await BillingPeriodService(db).require_period(billing_period_id)
    runs = await ChargeGenerationOrchestrator(db, []).list_runs(billing_period_id)
    return [ProcessingRunResponse.model_validate(r) for r in runs]


@router.post(
    "/{billing_period_id}/export",
    response_model=PayrollExportResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**CONFLICT, 502: {"model": ErrorResponse}},
)
async def export_billing_period(
    db: DbSession,
    sink: Sink,
    settings: AppSettings,
    actor: Actor,
    billing_period_id: Annotated[UUID, Path()],
    payload: ExportRequest | None = None,
) -> PayrollExportResponse:
    """Generate the payroll export and mark the period exported."""
    payload = payload or ExportRequest()
    builder = PayrollExportBuilder(db, sink, timeout_seconds=settings.export_timeout_seconds)
    export = await builder.build_export(
        billing_period_id, payload.format, actor=actor, export_date=payload.export_date
    )
    return PayrollExportResponse.model_validate(export)


@router.get("/{billing_period_id}/exports", response_model=list[PayrollExportResponse])
async def list_billing_period_exports(
    db: DbSession,
    sink: Sink,
    billing_period_id: Annotated[UUID, Path()],
) -> list[PayrollExportResponse]:
    """Export history for the period, newest first."""
    await BillingPeriodService(db).require_period(billing_period_id)
    exports = await PayrollExportBuilder(db, sink).list_exports(billing_period_id)
    return [PayrollExportResponse.model_validate(e) for e in exports]


@router.post(
    "/{billing_period_id}/cancel",
    response_model=BillingPeriodResponse,
    responses=CONFLICT,
)
async def cancel_billing_period(
    db: DbSession,
    actor: Actor,
    billing_period_id: Annotated[UUID, Path()],
    payload: TransitionRequest | None = None,
) -> BillingPeriodResponse:
    """Cancel a draft or processing period. Charges are kept."""
    period = await BillingPeriodService(db).cancel_period(
        billing_period_id, actor=actor, reason=payload.reason if payload else None
    )
    await db.commit()
    return _period_response(period)


@router.post(
    "/{billing_period_id}/reactivate",
    response_model=BillingPeriodResponse,
    responses={**CONFLICT, 422: {"model": ErrorResponse}},
)
async def reactivate_billing_period(
    db: DbSession,
    actor: Actor,
    billing_period_id: Annotated[UUID, Path()],
    payload: TransitionRequest | None = None,
) -> BillingPeriodResponse:
    """Return a cancelled period to draft."""
    period = await BillingPeriodService(db).reactivate_period(
        billing_period_id, actor=actor, reason=payload.reason if payload else None
    )
    await db.commit()
    return _period_response(period)


# ============================================================================
# Charges and aggregates
# ============================================================================


@router.get(
    "/{billing_period_id}/charges",
    response_model=ChargeListResponse,
    responses={404: {"model": ErrorResponse}},
)
async def list_billing_period_charges(
    db: DbSession,
    billing_period_id: Annotated[UUID, Path()],
    staff_id: UUID | None = None,
    charge_type: ChargeType | None = None,
    source_id: UUID | None = None,
    min_amount: Annotated[Decimal | None, Query(ge=0)] = None,
    max_amount: Annotated[Decimal | None, Query(ge=0)] = None,
    search: Annotated[str | None, Query(max_length=100)] = None,
) -> ChargeListResponse:
    """Charges of the period in creation order, optionally filtered."""
    await BillingPeriodService(db).require_period(billing_period_id)
    charges = await ChargeLedger(db).list_charges(
        billing_period_id,
        ChargeFilters(
            staff_id=staff_id,
            charge_type=charge_type,
            source_id=source_id,
            min_amount=min_amount,
            max_amount=max_amount,
            search=search,
        ),
    )
    return ChargeListResponse(
        items=[ChargeResponse.model_validate(c) for c in charges],
        total=len(charges),
    )


@router.get(
    "/{billing_period_id}/totals",
    response_model=ChargeTotalsResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_billing_period_totals(
    db: DbSession,
    billing_period_id: Annotated[UUID, Path()],
) -> ChargeTotalsResponse:
    """Summed charge amounts per type."""
    await BillingPeriodService(db).require_period(billing_period_id)
    totals = await ChargeLedger(db).totals_by_type(billing_period_id)
    return ChargeTotalsResponse(
        billing_period_id=billing_period_id,
        totals=totals,
        total_amount=sum(totals.values(), Decimal("0.00")),
    )


@router.get(
    "/{billing_period_id}/staff-summary",
    response_model=list[StaffSummaryResponse],
    responses={404: {"model": ErrorResponse}},
)
async def get_staff_summary(
    db: DbSession,
    billing_period_id: Annotated[UUID, Path()],
) -> list[StaffSummaryResponse]:
    """Per-staff charge totals, largest first."""
    await BillingPeriodService(db).require_period(billing_period_id)
    summaries = await ChargeLedger(db).staff_summaries(billing_period_id)
    return [
        StaffSummaryResponse(
            staff_id=s.staff_id,
            charge_count=s.charge_count,
            total_amount=s.total_amount,
            by_type=s.by_type,
        )
        for s in summaries
    ]


@router.get(
    "/{billing_period_id}/audit",
    response_model=list[AuditEventResponse],
    responses={404: {"model": ErrorResponse}},
)
async def get_billing_period_audit(
    db: DbSession,
    billing_period_id: Annotated[UUID, Path()],
) -> list[AuditEventResponse]:
    """Lifecycle audit trail of the period, oldest first."""
    await BillingPeriodService(db).require_period(billing_period_id)
    events = await list_audit_events(db, "billing_period", billing_period_id)
    return [AuditEventResponse.model_validate(e) for e in events]
