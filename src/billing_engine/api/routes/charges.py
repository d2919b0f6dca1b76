"""Charge API endpoints."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path

from billing_engine.api.dependencies import Actor, DbSession
from billing_engine.api.schemas import ChargeAmend, ChargeResponse, ErrorResponse
from billing_engine.errors import NotFoundError
from billing_engine.services.ledger_service import ChargeLedger

router = APIRouter(prefix="/charges", tags=["charges"])


@router.get(
    "/{charge_id}",
    response_model=ChargeResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_charge(
    db: DbSession,
    charge_id: Annotated[UUID, Path()],
) -> ChargeResponse:
    """Get a specific charge by ID."""
    charge = await ChargeLedger(db).get_charge(charge_id)
    if charge is None:
        raise NotFoundError("Charge", charge_id)
    return ChargeResponse.model_validate(charge)


@router.patch(
    "/{charge_id}",
    response_model=ChargeResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def amend_charge(
    db: DbSession,
    actor: Actor,
    charge_id: Annotated[UUID, Path()],
    payload: ChargeAmend,
) -> ChargeResponse:
    """Amend a charge while its period is draft or processing."""
    charge = await ChargeLedger(db).amend(
        charge_id, payload.model_dump(exclude_unset=True), actor=actor
    )
    await db.commit()
    return ChargeResponse.model_validate(charge)
