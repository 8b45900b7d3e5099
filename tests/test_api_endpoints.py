"""
WMS Billing Core - API Endpoint Tests

HTTP-level tests for routing, tenant headers, serialization and error
responses. Services are patched; the session dependency is overridden.
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from app.models.invoice import InvoiceLine, InvoiceStatus
from app.services.billing_event_service import ChargeResult
from app.services.cost_allocator import build_labor_report
from app.services.invoice_assembler import LineSortOrder
from app.services.rate_resolver import RateSource, ResolvedRate
from app.utils.error_handling import (
    InvalidGroupingException,
    InvalidInvoiceTransitionException,
    RateNotFoundException,
)
from conftest import ACCOUNT_ID


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_api_root_lists_endpoints(self, client):
        response = await client.get("/api/v1")

        assert response.json()["endpoints"]["invoices"] == "/api/v1/invoices"


class TestTenantHeader:

    @pytest.mark.asyncio
    async def test_missing_tenant_rejected(self, client):
        response = await client.get(f"/api/v1/pricing/accounts/{ACCOUNT_ID}/adjustments")

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_INPUT"

    @pytest.mark.asyncio
    async def test_malformed_tenant_rejected(self, client):
        response = await client.get(
            f"/api/v1/pricing/accounts/{ACCOUNT_ID}/adjustments",
            headers={"X-Tenant-ID": "not-a-uuid"},
        )

        assert response.status_code == 400


class TestPricingEndpoints:

    @pytest.mark.asyncio
    async def test_resolve_rate(self, client, tenant_headers):
        resolved = ResolvedRate(
            rate=Decimal("12.00"),
            source=RateSource.ACCOUNT,
            base_rate=Decimal("10.00"),
            service_code="RCV",
        )

        with patch(
            "app.routers.pricing.AccountPricingService.resolve_rate",
            AsyncMock(return_value=resolved),
        ):
            response = await client.get(
                f"/api/v1/pricing/accounts/{ACCOUNT_ID}/resolve",
                params={"service_code": "RCV"},
                headers=tenant_headers,
            )

        assert response.status_code == 200
        body = response.json()
        assert Decimal(body["rate"]) == Decimal("12.00")
        assert body["source"] == "account"

    @pytest.mark.asyncio
    async def test_resolve_rate_not_found(self, client, tenant_headers):
        with patch(
            "app.routers.pricing.AccountPricingService.resolve_rate",
            AsyncMock(side_effect=RateNotFoundException("RCV")),
        ):
            response = await client.get(
                f"/api/v1/pricing/accounts/{ACCOUNT_ID}/resolve",
                params={"service_code": "RCV"},
                headers=tenant_headers,
            )

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "RATE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_create_adjustments_validates_type(self, client, tenant_headers):
        response = await client.post(
            f"/api/v1/pricing/accounts/{ACCOUNT_ID}/adjustments",
            json={"adjustments": [{"service_code": "RCV", "adjustment_type": "bogus", "adjustment_value": "1"}]},
            headers=tenant_headers,
        )

        assert response.status_code == 422


class TestInvoiceEndpoints:

    @pytest.mark.asyncio
    async def test_create_drafts_invalid_grouping(self, client, tenant_headers):
        with patch(
            "app.routers.invoices.InvoiceService.create_draft",
            AsyncMock(side_effect=InvalidGroupingException("single", 2)),
        ):
            response = await client.post(
                "/api/v1/invoices/drafts",
                json={"period_start": "2026-10-01", "period_end": "2026-10-15", "grouping": "single"},
                headers=tenant_headers,
            )

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "INVALID_GROUPING_FOR_SELECTION"

    @pytest.mark.asyncio
    async def test_create_drafts_returns_invoices(self, client, tenant_headers, make_invoice):
        invoice = make_invoice()

        with patch(
            "app.routers.invoices.InvoiceService.create_draft",
            AsyncMock(return_value=[invoice]),
        ) as create_draft:
            response = await client.post(
                "/api/v1/invoices/drafts",
                json={
                    "account_id": str(ACCOUNT_ID),
                    "period_start": "2026-10-01",
                    "period_end": "2026-10-15",
                },
                headers=tenant_headers,
            )

        assert response.status_code == 201
        assert response.json()[0]["invoice_number"] == invoice.invoice_number
        assert create_draft.await_args.args[1] == ACCOUNT_ID

    @pytest.mark.asyncio
    async def test_list_invoices(self, client, tenant_headers, make_invoice):
        invoices = [make_invoice(), make_invoice(InvoiceStatus.SENT)]

        with patch(
            "app.routers.invoices.InvoiceService.list_invoices",
            AsyncMock(return_value=(invoices, 2)),
        ):
            response = await client.get("/api/v1/invoices", headers=tenant_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 2
        assert [inv["status"] for inv in body["invoices"]] == ["draft", "sent"]

    @pytest.mark.asyncio
    async def test_get_invoice_line_sort(self, client, tenant_headers, make_invoice):
        invoice = make_invoice(total="75.00")
        invoice.lines = [
            InvoiceLine(
                id=uuid.uuid4(),
                billing_event_id=uuid.uuid4(),
                service_code=code,
                description=None,
                sidemark_id=None,
                item_id=None,
                occurred_at=datetime(2026, 10, day, tzinfo=timezone.utc),
                quantity=Decimal("1"),
                unit_rate=Decimal(amount),
                total_amount=Decimal(amount),
                discount_amount=Decimal("0.00"),
                promo_code_id=None,
                has_rate_error=False,
                sort_order=index,
            )
            for index, (code, amount, day) in enumerate(
                [("PICK", "5.00", 2), ("ADDON", "20.00", 3), ("RCV", "50.00", 4)]
            )
        ]

        with patch(
            "app.routers.invoices.InvoiceService.get_invoice",
            AsyncMock(return_value=invoice),
        ):
            stored = await client.get(f"/api/v1/invoices/{invoice.id}", headers=tenant_headers)
            by_amount = await client.get(
                f"/api/v1/invoices/{invoice.id}",
                params={"line_sort": "amount_desc"},
                headers=tenant_headers,
            )

        assert [line["service_code"] for line in stored.json()["lines"]] == ["PICK", "ADDON", "RCV"]
        assert [line["service_code"] for line in by_amount.json()["lines"]] == ["RCV", "ADDON", "PICK"]
        assert Decimal(by_amount.json()["total"]) == Decimal("75.00")

    @pytest.mark.asyncio
    async def test_create_drafts_passes_line_sort(self, client, tenant_headers):
        with patch(
            "app.routers.invoices.InvoiceService.create_draft",
            AsyncMock(return_value=[]),
        ) as create_draft:
            response = await client.post(
                "/api/v1/invoices/drafts",
                json={"period_start": "2026-10-01", "period_end": "2026-10-15", "line_sort": "service"},
                headers=tenant_headers,
            )

        assert response.status_code == 201
        assert create_draft.await_args.kwargs["line_sort"] == LineSortOrder.SERVICE

    @pytest.mark.asyncio
    async def test_pay_draft_conflict(self, client, tenant_headers):
        with patch(
            "app.routers.invoices.InvoiceService.mark_paid",
            AsyncMock(side_effect=InvalidInvoiceTransitionException("draft", "paid")),
        ):
            response = await client.post(f"/api/v1/invoices/{uuid.uuid4()}/pay", headers=tenant_headers)

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "INVALID_STATUS_TRANSITION"

    @pytest.mark.asyncio
    async def test_void_requires_reason(self, client, tenant_headers):
        response = await client.post(
            f"/api/v1/invoices/{uuid.uuid4()}/void", json={}, headers=tenant_headers
        )

        assert response.status_code == 422


class TestBillingEventEndpoints:

    @pytest.mark.asyncio
    async def test_batch_results_in_order(self, client, tenant_headers, make_event):
        event = make_event("10.00")
        results = [ChargeResult(index=0, event=event), ChargeResult(index=1, error="boom")]

        with patch(
            "app.routers.billing_events.BillingEventService.create_charges",
            AsyncMock(return_value=results),
        ):
            response = await client.post(
                "/api/v1/billing-events/charges/batch",
                json={"charges": [
                    {"account_id": str(ACCOUNT_ID), "charge_type": "RCV"},
                    {"account_id": str(ACCOUNT_ID), "charge_type": "PICK"},
                ]},
                headers=tenant_headers,
            )

        assert response.status_code == 201
        body = response.json()
        assert [r["success"] for r in body] == [True, False]
        assert body[0]["event"]["id"] == str(event.id)
        assert body[1]["error"] == "boom"

    @pytest.mark.asyncio
    async def test_quantity_must_be_positive(self, client, tenant_headers):
        response = await client.post(
            "/api/v1/billing-events/charges",
            json={"account_id": str(ACCOUNT_ID), "charge_type": "RCV", "quantity": "0"},
            headers=tenant_headers,
        )

        assert response.status_code == 422


class TestPromoEndpoints:

    @pytest.mark.asyncio
    async def test_best_discount_none(self, client, tenant_headers):
        event_id = uuid.uuid4()

        with patch(
            "app.routers.promo_codes.PromoCodeService.best_discount_for_event",
            AsyncMock(return_value=None),
        ):
            response = await client.get(
                f"/api/v1/promo-codes/billing-events/{event_id}/best-discount",
                headers=tenant_headers,
            )

        assert response.status_code == 200
        body = response.json()
        assert body["promo_code_id"] is None
        assert Decimal(body["discount_amount"]) == Decimal("0")


class TestLaborEndpoints:

    @pytest.mark.asyncio
    async def test_labor_costs(self, client, tenant_headers, make_profile, make_task):
        profile = make_profile(pay_rate="20.00")
        records = [make_task(profile.employee_id, 120, datetime(2026, 10, 6, tzinfo=timezone.utc))]
        report = build_labor_report(
            records, {profile.employee_id: profile}, date(2026, 10, 1), date(2026, 10, 31)
        )

        with patch(
            "app.routers.labor.LaborCostService.build_report",
            AsyncMock(return_value=report),
        ) as build_report:
            response = await client.get(
                "/api/v1/labor/costs",
                params={"start_date": "2026-10-01", "end_date": "2026-10-31", "task_types": ["pick"]},
                headers=tenant_headers,
            )

        assert response.status_code == 200
        body = response.json()
        assert Decimal(body["total_cost"]) == Decimal("40.00")
        assert body["by_employee"][0]["key"] == [str(profile.employee_id)]
        assert body["allocation"]["standard_weekly_minutes"] == 2400
        assert build_report.await_args.kwargs["task_types"] == ["pick"]
