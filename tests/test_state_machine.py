"""Tests for billing period state machine."""

import itertools

import pytest

from billing_engine.services.state_machine import (
    BillingPeriodStateMachine,
    BillingStatus,
    InvalidTransitionError,
)

ALLOWED = {
    ("draft", "processing"),
    ("processing", "completed"),
    ("completed", "exported"),
    ("draft", "cancelled"),
    ("processing", "cancelled"),
    ("cancelled", "draft"),
}
STATUSES = [s.value for s in BillingStatus]


class TestBillingPeriodStateMachine:
    """Test state machine transitions."""

    @pytest.mark.parametrize("from_status,to_status", sorted(ALLOWED))
    def test_valid_transitions(self, from_status, to_status):
        assert BillingPeriodStateMachine.can_transition(from_status, to_status) is True
        BillingPeriodStateMachine.validate_transition(from_status, to_status)

    @pytest.mark.parametrize(
        "from_status,to_status",
        [pair for pair in itertools.product(STATUSES, STATUSES) if pair not in ALLOWED],
    )
    def test_every_other_pair_is_rejected(self, from_status, to_status):
        assert BillingPeriodStateMachine.can_transition(from_status, to_status) is False
        with pytest.raises(InvalidTransitionError) as exc_info:
            BillingPeriodStateMachine.validate_transition(from_status, to_status)

        assert exc_info.value.from_status == from_status
        assert exc_info.value.to_status == to_status

    def test_unknown_status_is_rejected(self):
        assert BillingPeriodStateMachine.can_transition("draft", "archived") is False
        assert BillingPeriodStateMachine.can_transition("bogus", "draft") is False

    def test_accepts_enum_members(self):
        assert BillingPeriodStateMachine.can_transition(
            BillingStatus.COMPLETED, BillingStatus.EXPORTED
        )

    def test_error_message_includes_reason(self):
        err = InvalidTransitionError(BillingStatus.EXPORTED, BillingStatus.DRAFT, "terminal")

        assert err.from_status == "exported"
        assert str(err) == "Invalid transition from 'exported' to 'draft': terminal"

    def test_is_reactivation(self):
        assert BillingPeriodStateMachine.is_reactivation("cancelled", "draft") is True
        assert BillingPeriodStateMachine.is_reactivation("draft", "cancelled") is False

    def test_charge_permissions(self):
        assert BillingPeriodStateMachine.can_append_charges("processing") is True
        assert BillingPeriodStateMachine.can_append_charges("draft") is False
        assert BillingPeriodStateMachine.can_amend_charges("draft") is True
        assert BillingPeriodStateMachine.can_amend_charges("processing") is True
        for status in ("completed", "exported", "cancelled"):
            assert BillingPeriodStateMachine.can_amend_charges(status) is False
            assert BillingPeriodStateMachine.can_append_charges(status) is False

    def test_date_edits_only_in_draft(self):
        assert BillingPeriodStateMachine.can_edit_dates("draft") is True
        assert BillingPeriodStateMachine.can_edit_dates("processing") is False

    def test_get_next_statuses(self):
        assert BillingPeriodStateMachine.get_next_statuses("draft") == ["processing", "cancelled"]
        assert BillingPeriodStateMachine.get_next_statuses("exported") == []
        assert BillingPeriodStateMachine.get_next_statuses("cancelled") == ["draft"]
