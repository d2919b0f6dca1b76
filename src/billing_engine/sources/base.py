"""Base protocol and types for activity sources.

An activity source is the external system of record for one kind of billable
activity (housing assignments, transport trips, manual entries). All adapters
implement the ActivitySource protocol.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol
from uuid import UUID

from billing_engine.calculators.types import ChargeType, RateBasis
from billing_engine.errors import BillingEngineError


class MalformedActivityError(BillingEngineError):
    """Raised when a source returns activity that cannot be interpreted."""

    def __init__(self, source: str, detail: str):
        self.source = source
        self.detail = detail
        super().__init__(f"Malformed activity from source '{source}': {detail}")


@dataclass(frozen=True)
class ActivityRecord:
    """One billable activity item reported by a source.

    activity_end is exclusive; None means the activity is still open.
    """

    source_id: UUID
    staff_id: UUID
    charge_type: ChargeType
    base_rate: Decimal
    activity_start: date
    activity_end: date | None
    description: str
    basis: RateBasis = RateBasis.PERIOD
    source_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ActivitySource(Protocol):
    """Protocol for activity source adapters."""

    @property
    def name(self) -> str:
        """Stable source name (housing, transport, other)."""
        ...

    async def fetch_activity(self, period_start: date, period_end: date) -> list[ActivityRecord]:
        """Return activity overlapping [period_start, period_end] (inclusive dates)."""
        ...


def parse_activity_record(
    raw: Any,
    *,
    source: str,
    default_charge_type: ChargeType,
    default_basis: RateBasis = RateBasis.PERIOD,
) -> ActivityRecord:
    """Build an ActivityRecord from a decoded JSON object.

    Raises:
        MalformedActivityError: If a required field is missing or unparseable
    """
    if not isinstance(raw, dict):
        raise MalformedActivityError(source, f"expected object, got {type(raw).__name__}")

    try:
        source_id = UUID(str(raw["source_id"]))
        staff_id = UUID(str(raw["staff_id"]))
        base_rate = Decimal(str(raw["base_rate"]))
        activity_start = date.fromisoformat(raw["start_date"])
        end_raw = raw.get("end_date")
        activity_end = date.fromisoformat(end_raw) if end_raw else None
        charge_type = ChargeType(raw.get("charge_type") or default_charge_type)
        basis = RateBasis(raw.get("basis") or default_basis)
    except KeyError as exc:
        raise MalformedActivityError(source, f"missing field {exc.args[0]!r}") from exc
    except (TypeError, ValueError, InvalidOperation) as exc:
        raise MalformedActivityError(source, str(exc) or type(exc).__name__) from exc

    if not base_rate.is_finite() or base_rate < 0:
        raise MalformedActivityError(source, f"base_rate {base_rate} is not a valid rate")

    description = raw.get("description") or f"{charge_type.value.title()} charge"
    metadata = raw.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise MalformedActivityError(source, "metadata must be an object")

    return ActivityRecord(
        source_id=source_id,
        staff_id=staff_id,
        charge_type=charge_type,
        base_rate=base_rate,
        activity_start=activity_start,
        activity_end=activity_end,
        description=str(description),
        basis=basis,
        source_type=raw.get("source_type") or source,
        metadata=metadata,
    )
