"""Integration tests for billing period lifecycle and status writes."""

from datetime import date, datetime, timezone
from uuid import uuid4

import pytest
from sqlalchemy import update

from billing_engine.errors import ConcurrentModificationError, InvalidPeriodError, NotFoundError
from billing_engine.models import BillingPeriod
from billing_engine.services.audit import list_audit_events
from billing_engine.services.period_service import BillingPeriodService
from billing_engine.services.state_machine import BillingStatus, InvalidTransitionError
from tests.conftest import FEB_END, FEB_START, JAN_END, JAN_START


class TestCreatePeriod:
    async def test_creates_draft(self, db_session):
        service = BillingPeriodService(db_session)

        period = await service.create_period(JAN_START, JAN_END, name="January 2024")
        await db_session.commit()

        assert period.status == "draft"
        assert period.version == 1
        assert period.active_job_id is None
        assert period.period_days == 31

    async def test_rejects_inverted_range(self, db_session):
        with pytest.raises(InvalidPeriodError):
            await BillingPeriodService(db_session).create_period(JAN_END, JAN_START)

    async def test_rejects_single_day_range(self, db_session):
        with pytest.raises(InvalidPeriodError):
            await BillingPeriodService(db_session).create_period(JAN_START, JAN_START)

    async def test_rejects_overlap(self, db_session, make_period):
        await make_period()

        with pytest.raises(InvalidPeriodError, match="overlaps"):
            await BillingPeriodService(db_session).create_period(date(2024, 1, 15), FEB_END)

    async def test_adjacent_periods_allowed(self, db_session, make_period):
        await make_period()
        period = await BillingPeriodService(db_session).create_period(FEB_START, FEB_END)
        assert period.start_date == FEB_START

    async def test_cancelled_period_does_not_block(self, db_session, make_period):
        await make_period(status=BillingStatus.CANCELLED)
        period = await BillingPeriodService(db_session).create_period(JAN_START, JAN_END)
        assert period.status == "draft"

    async def test_list_filters(self, db_session, make_period):
        await make_period()
        await make_period(FEB_START, FEB_END, status=BillingStatus.PROCESSING)
        service = BillingPeriodService(db_session)

        assert [p.start_date for p in await service.list_periods()] == [FEB_START, JAN_START]
        assert len(await service.list_periods(status="processing")) == 1
        assert len(await service.list_periods(start_from=FEB_START)) == 1
        assert len(await service.list_periods(end_to=JAN_END)) == 1


class TestUpdateDates:
    async def test_draft_dates_change(self, db_session, make_period):
        period = await make_period()

        updated = await BillingPeriodService(db_session).update_period_dates(
            period.billing_period_id, JAN_START, date(2024, 1, 15)
        )

        assert updated.end_date == date(2024, 1, 15)
        assert updated.version == 2

    async def test_dates_frozen_after_draft(self, db_session, make_period):
        period = await make_period(status=BillingStatus.PROCESSING)

        with pytest.raises(InvalidPeriodError, match="immutable"):
            await BillingPeriodService(db_session).update_period_dates(
                period.billing_period_id, JAN_START, date(2024, 1, 15)
            )


class TestTransitions:
    async def test_transition_bumps_version_and_audits(self, db_session, make_period):
        period = await make_period()
        service = BillingPeriodService(db_session)

        moved = await service.transition_status(
            period.billing_period_id, BillingStatus.PROCESSING, actor="ops@example.com"
        )
        await db_session.commit()

        assert moved.status == "processing"
        assert moved.version == 2
        events = await list_audit_events(db_session, "billing_period", period.billing_period_id)
        assert [e.action for e in events] == ["created", "status_change:draft:processing"]
        assert events[-1].actor == "ops@example.com"

    async def test_illegal_transition(self, db_session, make_period):
        period = await make_period(status=BillingStatus.COMPLETED)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await BillingPeriodService(db_session).transition_status(
                period.billing_period_id, BillingStatus.PROCESSING
            )

        assert exc_info.value.from_status == "completed"
        assert exc_info.value.to_status == "processing"

    async def test_missing_period(self, db_session):
        with pytest.raises(NotFoundError):
            await BillingPeriodService(db_session).transition_status(
                uuid4(), BillingStatus.PROCESSING
            )

    async def test_export_requires_completed_export(self, db_session, make_period):
        period = await make_period(status=BillingStatus.COMPLETED)

        with pytest.raises(InvalidTransitionError, match="no completed payroll export"):
            await BillingPeriodService(db_session).transition_status(
                period.billing_period_id,
                BillingStatus.EXPORTED,
                payroll_export_date=datetime(2024, 2, 2, tzinfo=timezone.utc),
            )

    async def test_export_date_before_period_end(self, db_session, make_period):
        period = await make_period(status=BillingStatus.COMPLETED)

        with pytest.raises(InvalidTransitionError, match="before the period end"):
            await BillingPeriodService(db_session).transition_status(
                period.billing_period_id,
                BillingStatus.EXPORTED,
                payroll_export_date=datetime(2024, 1, 15, tzinfo=timezone.utc),
            )

    async def test_lost_race_raises(self, db_session, session_factory, make_period, monkeypatch):
        """A version bump between read and write makes the write fail."""
        period = await make_period()
        original = BillingPeriodService.require_period

        async def stale_read(self, billing_period_id):
            snapshot = await original(self, billing_period_id)
            async with session_factory() as other:
                await other.execute(
                    update(BillingPeriod)
                    .where(BillingPeriod.billing_period_id == billing_period_id)
                    .values(version=BillingPeriod.version + 1)
                )
                await other.commit()
            return snapshot

        monkeypatch.setattr(BillingPeriodService, "require_period", stale_read)

        with pytest.raises(ConcurrentModificationError) as exc_info:
            await BillingPeriodService(db_session).transition_status(
                period.billing_period_id, BillingStatus.PROCESSING
            )

        assert exc_info.value.expected_status == "draft"

    async def test_expected_job_mismatch(self, db_session, make_period):
        period = await make_period()
        service = BillingPeriodService(db_session)
        await service.transition_status(
            period.billing_period_id, BillingStatus.PROCESSING, active_job_id=uuid4()
        )

        with pytest.raises(ConcurrentModificationError):
            await service.transition_status(
                period.billing_period_id, BillingStatus.COMPLETED, expected_job_id=uuid4()
            )


class TestCancelAndReactivate:
    async def test_cancel_clears_active_job(self, db_session, make_period):
        period = await make_period()
        service = BillingPeriodService(db_session)
        await service.transition_status(
            period.billing_period_id, BillingStatus.PROCESSING, active_job_id=uuid4()
        )

        cancelled = await service.cancel_period(period.billing_period_id, reason="duplicate")

        assert cancelled.status == "cancelled"
        assert cancelled.active_job_id is None

    async def test_reactivate_returns_to_draft(self, db_session, make_period):
        period = await make_period(status=BillingStatus.CANCELLED)

        reactivated = await BillingPeriodService(db_session).reactivate_period(
            period.billing_period_id
        )

        assert reactivated.status == "draft"

    async def test_reactivate_rechecks_overlap(self, db_session, make_period):
        cancelled = await make_period(status=BillingStatus.CANCELLED)
        await make_period()

        with pytest.raises(InvalidPeriodError, match="overlaps"):
            await BillingPeriodService(db_session).reactivate_period(
                cancelled.billing_period_id
            )

    async def test_completed_cannot_be_cancelled(self, db_session, make_period):
        period = await make_period(status=BillingStatus.COMPLETED)

        with pytest.raises(InvalidTransitionError):
            await BillingPeriodService(db_session).cancel_period(period.billing_period_id)


class TestJobClaims:
    async def test_claim_and_release(self, db_session, make_period):
        period = await make_period(status=BillingStatus.COMPLETED)
        service = BillingPeriodService(db_session)
        job_id = uuid4()

        claimed = await service.claim_job(period.billing_period_id, "completed", job_id)
        assert claimed.active_job_id == job_id
        assert claimed.status == "completed"

        with pytest.raises(ConcurrentModificationError, match="is active"):
            await service.claim_job(period.billing_period_id, "completed", uuid4())

        assert await service.release_job(period.billing_period_id, job_id) is True
        assert await service.release_job(period.billing_period_id, job_id) is False

    async def test_claim_wrong_status(self, db_session, make_period):
        period = await make_period()

        with pytest.raises(InvalidTransitionError):
            await BillingPeriodService(db_session).claim_job(
                period.billing_period_id, "processing", uuid4()
            )
