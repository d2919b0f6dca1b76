"""Pytest fixtures for billing engine tests."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any, AsyncGenerator
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from billing_engine.calculators.types import ChargeType, RateBasis
from billing_engine.database import create_schema, make_session_factory
from billing_engine.models import BillingPeriod
from billing_engine.services.period_service import BillingPeriodService
from billing_engine.services.state_machine import BillingStatus
from billing_engine.sources import ActivityRecord

JAN_START = date(2024, 1, 1)
JAN_END = date(2024, 1, 31)
FEB_START = date(2024, 2, 1)
FEB_END = date(2024, 2, 29)

ALICE = UUID("e5a4c9d3-4567-89ab-cdef-012345678901")
BOB = UUID("f6b5dae4-5678-9abc-def0-123456789012")


def make_activity(
    staff_id: UUID = ALICE,
    *,
    start: date,
    end: date | None,
    rate: str = "850.00",
    charge_type: ChargeType = ChargeType.RENT,
    basis: RateBasis = RateBasis.PERIOD,
    description: str = "Room 12B rent",
    source_id: UUID | None = None,
    **metadata: Any,
) -> ActivityRecord:
    """Build an ActivityRecord with sensible defaults."""
    return ActivityRecord(
        source_id=source_id or uuid4(),
        staff_id=staff_id,
        charge_type=charge_type,
        base_rate=Decimal(rate),
        activity_start=start,
        activity_end=end,
        description=description,
        basis=basis,
        metadata=metadata,
    )


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine, one database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}", echo=False)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Session for service-level tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def make_period(db_session: AsyncSession):
    """Create a committed billing period, optionally advanced to a status."""

    async def _make(
        start: date = JAN_START,
        end: date = JAN_END,
        status: BillingStatus = BillingStatus.DRAFT,
    ) -> BillingPeriod:
        service = BillingPeriodService(db_session)
        period = await service.create_period(start, end, name=f"{start:%B %Y}")
        path = {
            BillingStatus.DRAFT: [],
            BillingStatus.PROCESSING: [BillingStatus.PROCESSING],
            BillingStatus.COMPLETED: [BillingStatus.PROCESSING, BillingStatus.COMPLETED],
            BillingStatus.CANCELLED: [BillingStatus.CANCELLED],
        }[status]
        for next_status in path:
            period = await service.transition_status(period.billing_period_id, next_status)
        await db_session.commit()
        return period

    return _make
