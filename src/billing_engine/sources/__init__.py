"""Activity sources feeding charge generation."""

from __future__ import annotations

from billing_engine.calculators.types import ChargeType, RateBasis
from billing_engine.config import Settings
from billing_engine.sources.base import (
    ActivityRecord,
    ActivitySource,
    MalformedActivityError,
    parse_activity_record,
)
from billing_engine.sources.http import HttpActivitySource
from billing_engine.sources.static import StaticActivitySource

__all__ = [
    "ActivityRecord",
    "ActivitySource",
    "HttpActivitySource",
    "MalformedActivityError",
    "StaticActivitySource",
    "build_activity_sources",
    "parse_activity_record",
]


def build_activity_sources(settings: Settings) -> list[ActivitySource]:
    """Wire the configured HTTP sources in processing order.

    Housing is billed per period, transport trips and manual entries per
    occurrence. Sources without a URL are skipped.
    """
    candidates = [
        ("housing", settings.housing_activity_url, ChargeType.RENT, RateBasis.PERIOD),
        ("transport", settings.transport_activity_url, ChargeType.TRANSPORT, RateBasis.OCCURRENCE),
        ("other", settings.other_activity_url, ChargeType.OTHER, RateBasis.OCCURRENCE),
    ]
    return [
        HttpActivitySource(
            name,
            url,
            default_charge_type=charge_type,
            default_basis=basis,
            timeout_seconds=settings.source_timeout_seconds,
        )
        for name, url, charge_type, basis in candidates
        if url
    ]
