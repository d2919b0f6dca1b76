"""Integration test fixtures for the HTTP API."""

from collections.abc import AsyncGenerator
from datetime import date

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from billing_engine.api.app import create_app
from billing_engine.api.dependencies import (
    get_activity_sources,
    get_export_sink,
    get_session_factory,
)
from billing_engine.calculators.types import ChargeType, RateBasis
from billing_engine.exporters import InMemoryExportSink
from billing_engine.sources import StaticActivitySource
from tests.conftest import ALICE, BOB, make_activity


@pytest.fixture
def housing() -> StaticActivitySource:
    return StaticActivitySource(
        "housing",
        [
            make_activity(ALICE, start=date(2023, 12, 16), end=date(2024, 2, 1)),
            make_activity(
                BOB, start=date(2024, 1, 16), end=date(2024, 2, 15), description="Room 4A rent"
            ),
        ],
    )


@pytest.fixture
def transport() -> StaticActivitySource:
    return StaticActivitySource(
        "transport",
        [
            make_activity(
                ALICE,
                start=date(2024, 1, 10),
                end=date(2024, 1, 11),
                rate="45.00",
                charge_type=ChargeType.TRANSPORT,
                basis=RateBasis.OCCURRENCE,
                description="Airport shuttle",
            ),
        ],
    )


@pytest.fixture
def export_sink() -> InMemoryExportSink:
    return InMemoryExportSink()


@pytest_asyncio.fixture
async def client(
    session_factory, housing, transport, export_sink
) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for API testing.

    The ASGI transport runs background tasks before the response is handed
    back, so a processing run has finished by the time POST /process returns.
    """
    app = create_app()
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_activity_sources] = lambda: [housing, transport]
    app.dependency_overrides[get_export_sink] = lambda: export_sink
    asgi = ASGITransport(app=app)
    async with AsyncClient(transport=asgi, base_url="http://test") as http:
        yield http
