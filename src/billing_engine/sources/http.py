"""HTTP activity source.

Fetches activity as JSON from an external system of record:

    GET <url>?period_start=YYYY-MM-DD&period_end=YYYY-MM-DD

The response is either a JSON list of activity objects or an object with an
"items" list. Each object carries source_id, staff_id, base_rate, start_date,
and optionally end_date, charge_type, basis, description, metadata.
"""

from __future__ import annotations

import logging
from datetime import date

import httpx

from billing_engine.calculators.types import ChargeType, RateBasis
from billing_engine.sources.base import ActivityRecord, MalformedActivityError, parse_activity_record

logger = logging.getLogger(__name__)


class HttpActivitySource:
    """Activity source backed by a JSON HTTP endpoint."""

    def __init__(
        self,
        name: str,
        url: str,
        *,
        default_charge_type: ChargeType,
        default_basis: RateBasis = RateBasis.PERIOD,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._name = name
        self.url = url
        self.default_charge_type = default_charge_type
        self.default_basis = default_basis
        self.timeout_seconds = timeout_seconds
        self._client = client

    @property
    def name(self) -> str:
        return self._name

    async def fetch_activity(self, period_start: date, period_end: date) -> list[ActivityRecord]:
        """Fetch and parse activity for the period.

        Raises:
            httpx.HTTPError: On transport failure or non-2xx status
            MalformedActivityError: If the payload cannot be interpreted
        """
        params = {
            "period_start": period_start.isoformat(),
            "period_end": period_end.isoformat(),
        }
        if self._client is not None:
            response = await self._client.get(self.url, params=params)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.get(self.url, params=params)
        response.raise_for_status()

        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedActivityError(self.name, "response is not valid JSON") from exc

        items = payload.get("items") if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            raise MalformedActivityError(self.name, "expected a list of activity items")

        records = [
            parse_activity_record(
                item,
                source=self.name,
                default_charge_type=self.default_charge_type,
                default_basis=self.default_basis,
            )
            for item in items
        ]
        logger.debug("Source %s returned %d activity items", self.name, len(records))
        return records
