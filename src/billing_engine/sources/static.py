"""In-memory activity source for local development and testing."""

from __future__ import annotations

import asyncio
from datetime import date, timedelta

from billing_engine.sources.base import ActivityRecord


class StaticActivitySource:
    """Activity source backed by a fixed list of records.

    Only records overlapping the requested period are returned, the same
    contract a real adapter honours.
    """

    def __init__(
        self,
        name: str,
        records: list[ActivityRecord] | None = None,
        *,
        error: Exception | None = None,
        delay_seconds: float = 0.0,
    ):
        """Initialize static source.

        Args:
            name: Source name reported to the orchestrator
            records: Activity to serve
            error: If set, fetch_activity raises it (simulates an outage)
            delay_seconds: Artificial latency before answering
        """
        self._name = name
        self.records = list(records or [])
        self.error = error
        self.delay_seconds = delay_seconds
        self.calls = 0

    @property
    def name(self) -> str:
        return self._name

    async def fetch_activity(self, period_start: date, period_end: date) -> list[ActivityRecord]:
        self.calls += 1
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.error is not None:
            raise self.error

        period_stop = period_end + timedelta(days=1)
        return [
            record
            for record in self.records
            if record.activity_start < period_stop
            and (record.activity_end is None or record.activity_end > period_start)
        ]
