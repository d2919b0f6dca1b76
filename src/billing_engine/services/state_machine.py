"""Billing period state machine with transition validation."""

from __future__ import annotations

from enum import Enum

from billing_engine.errors import BillingEngineError


class BillingStatus(str, Enum):
    """Billing period status values."""

    DRAFT = "draft"
    PROCESSING = "processing"
    COMPLETED = "completed"
    EXPORTED = "exported"
    CANCELLED = "cancelled"


class InvalidTransitionError(BillingEngineError):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = str(getattr(from_status, "value", from_status))
        self.to_status = str(getattr(to_status, "value", to_status))
        self.reason = reason
        msg = f"Invalid transition from '{self.from_status}' to '{self.to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class BillingPeriodStateMachine:
    """State machine for billing period status transitions.

    Allowed transitions:
    - draft → processing (charge generation starts)
    - processing → completed (every activity source consumed)
    - completed → exported (a completed payroll export exists)
    - draft → cancelled
    - processing → cancelled
    - cancelled → draft (reactivation)
    """

    # Define valid transitions: {from_status: [allowed_to_statuses]}
    VALID_TRANSITIONS: dict[str, list[str]] = {
        BillingStatus.DRAFT: [BillingStatus.PROCESSING, BillingStatus.CANCELLED],
        BillingStatus.PROCESSING: [BillingStatus.COMPLETED, BillingStatus.CANCELLED],
        BillingStatus.COMPLETED: [BillingStatus.EXPORTED],
        BillingStatus.EXPORTED: [],  # Terminal state
        BillingStatus.CANCELLED: [BillingStatus.DRAFT],
    }

    # Statuses where charges can be amended
    CHARGES_MUTABLE = {
        BillingStatus.DRAFT,
        BillingStatus.PROCESSING,
    }

    # Statuses where charges can be appended
    CHARGES_APPENDABLE = {
        BillingStatus.PROCESSING,
    }

    # Statuses where the date range can still change
    DATES_MUTABLE = {
        BillingStatus.DRAFT,
    }

    @staticmethod
    def _normalize(status: str) -> BillingStatus | None:
        try:
            return BillingStatus(status)
        except ValueError:
            return None

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        source = cls._normalize(from_status)
        target = cls._normalize(to_status)
        if source is None or target is None:
            return False
        return target in cls.VALID_TRANSITIONS.get(source, [])

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def can_amend_charges(cls, status: str) -> bool:
        """Check if charges may be amended in this status."""
        return cls._normalize(status) in cls.CHARGES_MUTABLE

    @classmethod
    def can_append_charges(cls, status: str) -> bool:
        """Check if charges may be appended in this status."""
        return cls._normalize(status) in cls.CHARGES_APPENDABLE

    @classmethod
    def can_edit_dates(cls, status: str) -> bool:
        """Check if the period's date range may change in this status."""
        return cls._normalize(status) in cls.DATES_MUTABLE

    @classmethod
    def is_reactivation(cls, from_status: str, to_status: str) -> bool:
        """Check if this transition is a reactivation (cancelled → draft)."""
        return (
            cls._normalize(from_status) == BillingStatus.CANCELLED
            and cls._normalize(to_status) == BillingStatus.DRAFT
        )

    @classmethod
    def get_next_statuses(cls, current_status: str) -> list[str]:
        """Get list of valid next statuses from current status."""
        source = cls._normalize(current_status)
        if source is None:
            return []
        return [s.value for s in cls.VALID_TRANSITIONS.get(source, [])]
