"""
WMS Billing Core - Test Configuration

Pytest fixtures and configuration.

Services are exercised against a mocked AsyncSession; the pure engines
take ORM instances built in memory by the factories below.
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from app.database import get_async_session
from app.models.billing import BillingEvent, BillingEventStatus, BillingEventType
from app.models.invoice import Invoice, InvoiceStatus, InvoiceType
from app.models.labor import EmployeePay, PayType, TaskTimeEntry
from app.models.pricing import AccountServiceAdjustment, AdjustmentType, ServiceRate
from app.models.promo import (
    AccountPromoCode,
    ExpirationType,
    PromoCode,
    PromoDiscountType,
    ServiceScope,
    UsageLimitType,
)
from main import app


TENANT_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")
ACCOUNT_ID = uuid.UUID("22222222-2222-2222-2222-222222222222")
OTHER_ACCOUNT_ID = uuid.UUID("33333333-3333-3333-3333-333333333333")

CREATED_AT = datetime(2026, 1, 1, tzinfo=timezone.utc)


# ===========================================
# SESSION FIXTURES
# ===========================================

def make_result(items=(), scalar=None):
    """Stand-in for a SQLAlchemy Result."""
    result = MagicMock()
    result.scalars.return_value.all.return_value = list(items)
    result.scalar_one_or_none.return_value = scalar
    result.scalar.return_value = scalar
    return result


@pytest.fixture
def mock_db():
    """AsyncSession mock; add() is sync and begin_nested() is an async context manager."""
    db = AsyncMock()
    db.add = MagicMock()
    db.add_all = MagicMock()
    db.begin_nested = MagicMock()
    db.execute.return_value = make_result()
    return db


@pytest.fixture
def result_factory():
    return make_result


@pytest_asyncio.fixture(scope="function")
async def client(mock_db) -> AsyncGenerator[AsyncClient, None]:
    """Test client with the database session overridden."""

    async def override_get_session():
        yield mock_db

    app.dependency_overrides[get_async_session] = override_get_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def tenant_headers():
    return {"X-Tenant-ID": str(TENANT_ID)}


# ===========================================
# DATA FACTORIES
# ===========================================

@pytest.fixture
def make_rate():
    def factory(service_code="RCV", rate="10.00", class_code=None, is_active=True):
        return ServiceRate(
            id=uuid.uuid4(),
            tenant_id=TENANT_ID,
            service_code=service_code,
            class_code=class_code,
            service_name=service_code.title(),
            rate=Decimal(rate),
            billing_unit="Item",
            is_active=is_active,
            created_at=CREATED_AT,
            updated_at=CREATED_AT,
        )
    return factory


@pytest.fixture
def make_adjustment():
    def factory(
        service_code="RCV",
        adjustment_type=AdjustmentType.FIXED,
        adjustment_value="0",
        class_code=None,
        account_id=ACCOUNT_ID,
        is_active=True,
    ):
        return AccountServiceAdjustment(
            id=uuid.uuid4(),
            tenant_id=TENANT_ID,
            account_id=account_id,
            service_code=service_code,
            class_code=class_code,
            adjustment_type=adjustment_type,
            adjustment_value=Decimal(adjustment_value),
            notes=None,
            is_active=is_active,
            created_by_id=None,
            updated_by_id=None,
            created_at=CREATED_AT,
            updated_at=CREATED_AT,
        )
    return factory


@pytest.fixture
def make_promo():
    def factory(
        code="SAVE10",
        discount_type=PromoDiscountType.PERCENTAGE,
        discount_value="10",
        service_scope=ServiceScope.ALL,
        selected_services=None,
        expiration_date=None,
        usage_limit=None,
        usage_count=0,
        is_active=True,
        created_at=CREATED_AT,
    ):
        return PromoCode(
            id=uuid.uuid4(),
            tenant_id=TENANT_ID,
            code=code,
            discount_type=discount_type,
            discount_value=Decimal(discount_value),
            service_scope=service_scope,
            selected_services=selected_services,
            expiration_type=ExpirationType.DATE if expiration_date else ExpirationType.NONE,
            expiration_date=expiration_date,
            usage_limit_type=UsageLimitType.LIMITED if usage_limit is not None else UsageLimitType.UNLIMITED,
            usage_limit=usage_limit,
            usage_count=usage_count,
            is_active=is_active,
            created_at=created_at,
            updated_at=created_at,
        )
    return factory


@pytest.fixture
def assign_promo():
    def factory(promo, account_id=ACCOUNT_ID):
        return AccountPromoCode(
            id=uuid.uuid4(),
            tenant_id=TENANT_ID,
            account_id=account_id,
            promo_code_id=promo.id,
            created_at=CREATED_AT,
            updated_at=CREATED_AT,
        )
    return factory


@pytest.fixture
def make_event():
    def factory(
        total="10.00",
        charge_type="RCV",
        account_id=ACCOUNT_ID,
        sidemark_id=None,
        occurred_at=None,
        status=BillingEventStatus.UNBILLED,
        quantity="1",
        has_rate_error=False,
        item_id=None,
        class_code=None,
    ):
        total = Decimal(total)
        quantity = Decimal(quantity)
        return BillingEvent(
            id=uuid.uuid4(),
            tenant_id=TENANT_ID,
            account_id=account_id,
            sidemark_id=sidemark_id,
            item_id=item_id,
            class_code=class_code,
            event_type=BillingEventType.SERVICE_COMPLETION,
            charge_type=charge_type,
            description=f"{charge_type} charge",
            quantity=quantity,
            unit_rate=total / quantity if quantity else Decimal("0"),
            total_amount=total,
            status=status,
            occurred_at=occurred_at or datetime(2026, 10, 5, 12, 0, tzinfo=timezone.utc),
            has_rate_error=has_rate_error,
            rate_error_message="No rate configured" if has_rate_error else None,
            invoice_id=None,
            invoiced_at=None,
            event_metadata=None,
            created_at=CREATED_AT,
            updated_at=CREATED_AT,
        )
    return factory


@pytest.fixture
def make_invoice():
    def factory(status=InvoiceStatus.DRAFT, account_id=ACCOUNT_ID, total="100.00"):
        return Invoice(
            id=uuid.uuid4(),
            tenant_id=TENANT_ID,
            invoice_number="INV-202610-0001",
            account_id=account_id,
            sidemark_id=None,
            invoice_type=InvoiceType.MANUAL,
            invoice_date=date(2026, 10, 19),
            due_date=date(2026, 11, 18),
            period_start=date(2026, 10, 1),
            period_end=date(2026, 10, 15),
            subtotal=Decimal(total),
            discount_total=Decimal("0.00"),
            total=Decimal(total),
            rate_error_count=0,
            status=status,
            sent_at=None,
            paid_at=None,
            voided_at=None,
            void_reason=None,
            batch_id=None,
            notes=None,
            lines=[],
            created_at=CREATED_AT,
            updated_at=CREATED_AT,
        )
    return factory


@pytest.fixture
def make_profile():
    def factory(
        employee_id=None,
        pay_type=PayType.HOURLY,
        pay_rate="20.00",
        overtime_eligible=True,
        role="picker",
        salary_hourly_equivalent=None,
    ):
        return EmployeePay(
            id=uuid.uuid4(),
            tenant_id=TENANT_ID,
            employee_id=employee_id or uuid.uuid4(),
            employee_name="Test Employee",
            pay_type=pay_type,
            pay_rate=Decimal(pay_rate),
            salary_hourly_equivalent=(
                Decimal(salary_hourly_equivalent) if salary_hourly_equivalent is not None else None
            ),
            overtime_eligible=overtime_eligible,
            role=role,
            primary_warehouse_id=None,
            created_at=CREATED_AT,
            updated_at=CREATED_AT,
        )
    return factory


@pytest.fixture
def make_task():
    def factory(employee_id, minutes, completed_at=None, warehouse_id=None, task_type="pick"):
        return TaskTimeEntry(
            id=uuid.uuid4(),
            tenant_id=TENANT_ID,
            employee_id=employee_id,
            warehouse_id=warehouse_id,
            task_type=task_type,
            duration_minutes=minutes,
            completed_at=completed_at or datetime(2026, 10, 6, 15, 0, tzinfo=timezone.utc),
            created_at=CREATED_AT,
            updated_at=CREATED_AT,
        )
    return factory
