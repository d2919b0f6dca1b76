"""Error taxonomy shared across the billing engine.

Component-specific errors (InvalidTransitionError, InvalidChargeError, ...)
live next to the component that raises them and subclass BillingEngineError,
so callers can catch the whole family in one place.
"""

from __future__ import annotations

from uuid import UUID


class BillingEngineError(Exception):
    """Base class for every typed failure raised by the engine."""


class NotFoundError(BillingEngineError):
    """Raised when a referenced record does not exist."""

    def __init__(self, entity_type: str, entity_id: UUID | str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class InvalidPeriodError(BillingEngineError):
    """Raised when billing period data violates a period invariant."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid billing period: {reason}")


class ConcurrentModificationError(BillingEngineError):
    """Raised when an optimistic status write loses to a concurrent writer.

    The caller should re-read the period and retry or abandon.
    """

    def __init__(self, billing_period_id: UUID, expected_status: str, reason: str | None = None):
        self.billing_period_id = billing_period_id
        self.expected_status = expected_status
        self.reason = reason
        msg = (
            f"Billing period {billing_period_id} was modified concurrently "
            f"(expected status '{expected_status}')"
        )
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
