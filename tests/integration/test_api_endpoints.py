"""API endpoint integration tests.

Tests the FastAPI endpoints for billing period operations.
"""

from decimal import Decimal
from uuid import uuid4

import httpx
import pytest
from httpx import AsyncClient

from tests.conftest import ALICE, BOB

BASE = "/api/v1/billing-periods"
JANUARY = {"start_date": "2024-01-01", "end_date": "2024-01-31", "name": "January 2024"}


async def create_period(client: AsyncClient, payload: dict | None = None) -> dict:
    response = await client.post(BASE, json=payload or JANUARY)
    assert response.status_code == 201, response.text
    return response.json()


async def processed_period(client: AsyncClient) -> str:
    period_id = (await create_period(client))["billing_period_id"]
    response = await client.post(f"{BASE}/{period_id}/process")
    assert response.status_code == 202, response.text
    return period_id


class TestHealthEndpoints:
    """Test health check endpoints."""

    async def test_health_check(self, client: AsyncClient):
        """Health endpoint should return 200."""
        response = await client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"
        assert "timestamp" in data

    async def test_readiness_check(self, client: AsyncClient):
        response = await client.get("/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    async def test_liveness_check(self, client: AsyncClient):
        response = await client.get("/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"


class TestBillingPeriodCRUD:
    """Test billing period CRUD endpoints."""

    async def test_create_billing_period(self, client: AsyncClient):
        """POST /api/v1/billing-periods should create a draft period."""
        data = await create_period(client)

        assert data["status"] == "draft"
        assert data["version"] == 1
        assert data["period_days"] == 31
        assert data["allowed_transitions"] == ["processing", "cancelled"]

    async def test_overlapping_period_rejected(self, client: AsyncClient):
        await create_period(client)

        response = await client.post(
            BASE, json={"start_date": "2024-01-15", "end_date": "2024-02-15"}
        )

        assert response.status_code == 422
        assert response.json()["code"] == "INVALID_PERIOD"

    async def test_inverted_range_rejected(self, client: AsyncClient):
        response = await client.post(
            BASE, json={"start_date": "2024-01-31", "end_date": "2024-01-01"}
        )
        assert response.status_code == 422

    async def test_get_missing_period(self, client: AsyncClient):
        response = await client.get(f"{BASE}/{uuid4()}")

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    async def test_list_with_status_filter(self, client: AsyncClient):
        await create_period(client)
        await create_period(client, {"start_date": "2024-02-01", "end_date": "2024-02-29"})

        response = await client.get(BASE, params={"status": "draft", "page_size": 1})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert len(data["items"]) == 1
        assert data["items"][0]["start_date"] == "2024-02-01"

    async def test_update_draft_dates(self, client: AsyncClient):
        period_id = (await create_period(client))["billing_period_id"]

        response = await client.patch(
            f"{BASE}/{period_id}", json={"start_date": "2024-01-01", "end_date": "2024-01-15"}
        )

        assert response.status_code == 200
        assert response.json()["period_days"] == 15


class TestProcessing:
    """Charge generation through the API."""

    async def test_process_generates_charges(self, client: AsyncClient):
        period_id = await processed_period(client)

        progress = (await client.get(f"{BASE}/{period_id}/progress")).json()
        assert progress["status"] == "succeeded"
        assert progress["progress"] == 1.0
        assert progress["charges_created"] == 3

        period = (await client.get(f"{BASE}/{period_id}")).json()
        assert period["status"] == "completed"
        assert period["active_job_id"] is None

        charges = (await client.get(f"{BASE}/{period_id}/charges")).json()
        assert charges["total"] == 3
        amounts = sorted(Decimal(c["amount"]) for c in charges["items"])
        assert amounts == [Decimal("45.00"), Decimal("438.71"), Decimal("850.00")]

    async def test_charge_filters(self, client: AsyncClient):
        period_id = await processed_period(client)

        response = await client.get(
            f"{BASE}/{period_id}/charges", params={"staff_id": str(BOB)}
        )
        items = response.json()["items"]
        assert len(items) == 1
        assert items[0]["description"] == "Room 4A rent (16/31 days)"

        response = await client.get(
            f"{BASE}/{period_id}/charges", params={"charge_type": "transport"}
        )
        assert [c["description"] for c in response.json()["items"]] == ["Airport shuttle"]

    async def test_totals_and_staff_summary(self, client: AsyncClient):
        period_id = await processed_period(client)

        totals = (await client.get(f"{BASE}/{period_id}/totals")).json()
        assert Decimal(totals["totals"]["rent"]) == Decimal("1288.71")
        assert Decimal(totals["totals"]["utilities"]) == Decimal("0")
        assert Decimal(totals["total_amount"]) == Decimal("1333.71")

        summary = (await client.get(f"{BASE}/{period_id}/staff-summary")).json()
        assert [s["staff_id"] for s in summary] == [str(ALICE), str(BOB)]
        assert Decimal(summary[0]["total_amount"]) == Decimal("895.00")

    async def test_progress_before_any_run(self, client: AsyncClient):
        period_id = (await create_period(client))["billing_period_id"]

        response = await client.get(f"{BASE}/{period_id}/progress")

        assert response.status_code == 404

    async def test_second_process_conflicts(self, client: AsyncClient):
        period_id = await processed_period(client)

        response = await client.post(f"{BASE}/{period_id}/process")

        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_TRANSITION"
        runs = (await client.get(f"{BASE}/{period_id}/runs")).json()
        assert len(runs) == 1

    async def test_source_failure_then_retry(self, client: AsyncClient, transport):
        transport.error = httpx.ConnectTimeout("transport service unreachable")
        period_id = (await create_period(client))["billing_period_id"]

        response = await client.post(f"{BASE}/{period_id}/process")
        assert response.status_code == 202

        progress = (await client.get(f"{BASE}/{period_id}/progress")).json()
        assert progress["status"] == "failed"
        assert progress["failed_source"] == "transport"
        period = (await client.get(f"{BASE}/{period_id}")).json()
        assert period["status"] == "processing"
        charges = (await client.get(f"{BASE}/{period_id}/charges")).json()
        assert charges["total"] == 2

        transport.error = None
        response = await client.post(f"{BASE}/{period_id}/process/retry")
        assert response.status_code == 202
        assert response.json()["is_retry"] is True

        period = (await client.get(f"{BASE}/{period_id}")).json()
        assert period["status"] == "completed"
        charges = (await client.get(f"{BASE}/{period_id}/charges")).json()
        assert charges["total"] == 3

    async def test_retry_requires_processing(self, client: AsyncClient):
        period_id = (await create_period(client))["billing_period_id"]

        response = await client.post(f"{BASE}/{period_id}/process/retry")

        assert response.status_code == 409


class TestCharges:
    """Charge read and amendment endpoints."""

    async def test_get_charge(self, client: AsyncClient):
        period_id = await processed_period(client)
        charge = (await client.get(f"{BASE}/{period_id}/charges")).json()["items"][0]

        response = await client.get(f"/api/v1/charges/{charge['charge_id']}")

        assert response.status_code == 200
        assert response.json()["sequence"] == 1

    async def test_amend_after_completion_is_locked(self, client: AsyncClient):
        period_id = await processed_period(client)
        charge = (await client.get(f"{BASE}/{period_id}/charges")).json()["items"][0]

        response = await client.patch(
            f"/api/v1/charges/{charge['charge_id']}", json={"amount": "100.00"}
        )

        assert response.status_code == 409
        assert response.json()["code"] == "CHARGE_LOCKED"

    async def test_amend_while_processing(self, client: AsyncClient, transport):
        transport.error = httpx.ConnectError("refused")
        period_id = (await create_period(client))["billing_period_id"]
        await client.post(f"{BASE}/{period_id}/process")
        charge = (await client.get(f"{BASE}/{period_id}/charges")).json()["items"][0]

        response = await client.patch(
            f"/api/v1/charges/{charge['charge_id']}",
            json={"discount_amount": "50.00", "notes": "goodwill"},
            headers={"X-Actor": "ops@example.com"},
        )

        assert response.status_code == 200, response.text
        data = response.json()
        assert Decimal(data["total_amount"]) == Decimal(data["amount"]) - Decimal("50.00")
        assert data["notes"] == "goodwill"

    async def test_amend_rejects_null_tax(self, client: AsyncClient, transport):
        transport.error = httpx.ConnectError("refused")
        period_id = (await create_period(client))["billing_period_id"]
        await client.post(f"{BASE}/{period_id}/process")
        charge = (await client.get(f"{BASE}/{period_id}/charges")).json()["items"][0]

        response = await client.patch(
            f"/api/v1/charges/{charge['charge_id']}", json={"tax_amount": None}
        )

        assert response.status_code == 422
        assert response.json()["code"] == "INVALID_CHARGE"
        unchanged = (await client.get(f"/api/v1/charges/{charge['charge_id']}")).json()
        assert unchanged["tax_amount"] == charge["tax_amount"]

    async def test_missing_charge(self, client: AsyncClient):
        response = await client.get(f"/api/v1/charges/{uuid4()}")
        assert response.status_code == 404


class TestExport:
    """Payroll export endpoints."""

    async def test_export_marks_period_exported(self, client: AsyncClient, export_sink):
        period_id = await processed_period(client)

        response = await client.post(
            f"{BASE}/{period_id}/export",
            json={"format": "csv", "export_date": "2024-02-02T09:00:00Z"},
        )

        assert response.status_code == 201, response.text
        export = response.json()
        assert export["status"] == "completed"
        assert export["record_count"] == 3
        assert Decimal(export["total_amount"]) == Decimal("1333.71")
        assert export["file_name"] in export_sink.files

        period = (await client.get(f"{BASE}/{period_id}")).json()
        assert period["status"] == "exported"
        assert period["payroll_export_date"] is not None
        assert period["allowed_transitions"] == []

        history = (await client.get(f"{BASE}/{period_id}/exports")).json()
        assert len(history) == 1

    async def test_export_requires_completed(self, client: AsyncClient):
        period_id = (await create_period(client))["billing_period_id"]

        response = await client.post(f"{BASE}/{period_id}/export")

        assert response.status_code == 409

    async def test_sink_failure_is_bad_gateway(self, client: AsyncClient, export_sink):
        period_id = await processed_period(client)
        export_sink.error = OSError("share unavailable")

        response = await client.post(f"{BASE}/{period_id}/export")

        assert response.status_code == 502
        assert response.json()["code"] == "EXPORT_FAILURE"
        period = (await client.get(f"{BASE}/{period_id}")).json()
        assert period["status"] == "completed"

        export_sink.error = None
        response = await client.post(f"{BASE}/{period_id}/export")
        assert response.status_code == 201
        history = (await client.get(f"{BASE}/{period_id}/exports")).json()
        assert sorted(e["status"] for e in history) == ["completed", "failed"]

    async def test_exported_period_cannot_be_cancelled(self, client: AsyncClient):
        period_id = await processed_period(client)
        await client.post(f"{BASE}/{period_id}/export")

        response = await client.post(f"{BASE}/{period_id}/cancel")

        assert response.status_code == 409


class TestCancelAndReactivate:
    async def test_cancel_and_reactivate(self, client: AsyncClient):
        period_id = (await create_period(client))["billing_period_id"]

        response = await client.post(
            f"{BASE}/{period_id}/cancel",
            json={"reason": "created twice"},
            headers={"X-Actor": "ops@example.com"},
        )
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        response = await client.post(f"{BASE}/{period_id}/reactivate")
        assert response.status_code == 200
        assert response.json()["status"] == "draft"

        audit = (await client.get(f"{BASE}/{period_id}/audit")).json()
        assert [e["action"] for e in audit] == [
            "created",
            "status_change:draft:cancelled",
            "status_change:cancelled:draft",
        ]
        assert audit[1]["actor"] == "ops@example.com"
        assert audit[1]["details_json"] == {"reason": "created twice"}

    async def test_reactivate_blocked_by_overlap(self, client: AsyncClient):
        period_id = (await create_period(client))["billing_period_id"]
        await client.post(f"{BASE}/{period_id}/cancel")
        await create_period(client)

        response = await client.post(f"{BASE}/{period_id}/reactivate")

        assert response.status_code == 422
