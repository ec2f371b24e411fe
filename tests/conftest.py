"""
Pytest configuration and fixtures.

Service and API tests run against InMemoryAppointmentStore with a fixed
clock. SQL store tests run against an in-memory SQLite database through
aiosqlite; nothing here ever touches a real Postgres instance.
"""
import os

# Must be set before agenda.core.config is imported anywhere
os.environ.setdefault("APPOINTMENT_TOKEN_SECRET", "test-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("NOTIFICATION_WEBHOOK_URL", "")

import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timezone

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from agenda.booking import BookingService
from agenda.core.db import Base
from agenda.models import Appointment, Business, Employee, Service
from agenda.notifications import NotificationDispatcher
from agenda.slots import WindowRequest, build_service_windows
from agenda.state_machine import AppointmentStatus
from agenda.tokens import AppointmentTokenService
from tests.fakes import InMemoryAppointmentStore

TEST_SECRET = "test-secret"

# 10:00 in Guayaquil (UTC-5, no DST) on Tuesday 2026-03-10
FIXED_NOW = datetime(2026, 3, 10, 15, 0, tzinfo=timezone.utc)
BOOKING_DATE = date(2026, 3, 12)


def make_business(**overrides) -> Business:
    values = dict(
        id=uuid.uuid4(),
        name="Studio Norte",
        phone="+593 99 123 4567",
        timezone="America/Guayaquil",
        is_active=True,
        allow_overlapping_appointments=True,
        max_monthly_cancellations=3,
        enable_cancellation_blocking=True,
        opens_at=time(9, 0),
        closes_at=time(18, 0),
    )
    values.update(overrides)
    return Business(**values)


def make_service(business: Business, name: str, duration: int, price_cents: int, **overrides) -> Service:
    values = dict(
        id=uuid.uuid4(),
        business_id=business.id,
        name=name,
        duration_minutes=duration,
        price_cents=price_cents,
        is_active=True,
    )
    values.update(overrides)
    return Service(**values)


def make_employee(business: Business, first_name: str, **overrides) -> Employee:
    values = dict(
        id=uuid.uuid4(),
        business_id=business.id,
        first_name=first_name,
        last_name="",
        is_active=True,
    )
    values.update(overrides)
    return Employee(**values)


def make_appointment(business: Business, employee: Employee, on_date: date, start: time, end: time, **overrides):
    values = dict(
        id=uuid.uuid4(),
        business_id=business.id,
        employee_id=employee.id,
        client_id="client-1",
        client_email="client@example.com",
        appointment_date=on_date,
        start_time=start,
        end_time=end,
        status=AppointmentStatus.CONFIRMED,
        total_price_cents=2500,
        reschedule_required=False,
    )
    values.update(overrides)
    return Appointment(**values)


@dataclass
class Salon:
    """A seeded business: Ana does haircut + beard, Luis haircut only, Marta is inactive."""
    store: InMemoryAppointmentStore
    business: Business
    haircut: Service
    beard: Service
    coloring: Service
    ana: Employee
    luis: Employee
    marta: Employee

    def seed(self, employee: Employee, service: Service, start: time, on_date: date = BOOKING_DATE, **overrides):
        """Seed an existing appointment for one service."""
        windows = build_service_windows(
            start,
            [WindowRequest(service.id, employee.id, service.duration_minutes, service.price_cents)],
        )
        appointment = make_appointment(
            self.business,
            employee,
            on_date,
            windows[0].start_time,
            windows[-1].end_time,
            total_price_cents=service.price_cents,
            **overrides,
        )
        return self.store.seed_appointment(appointment, windows)


# ============================================================================
# IN-MEMORY FIXTURES
# ============================================================================

@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def store():
    return InMemoryAppointmentStore(timeout_seconds=2.0)


@pytest.fixture
def salon(store) -> Salon:
    business = store.add_business(make_business())
    haircut = store.add_service(make_service(business, "Haircut", 30, 2500))
    beard = store.add_service(make_service(business, "Beard trim", 20, 1500))
    coloring = store.add_service(make_service(business, "Coloring", 60, 6000))
    ana = store.add_employee(make_employee(business, "Ana"), [haircut.id, beard.id])
    luis = store.add_employee(make_employee(business, "Luis"), [haircut.id])
    marta = store.add_employee(make_employee(business, "Marta", is_active=False), [haircut.id, coloring.id])
    return Salon(store, business, haircut, beard, coloring, ana, luis, marta)


@pytest.fixture
def booking(store, clock) -> BookingService:
    return BookingService(store=store, clock=clock)


@pytest.fixture
def token_service() -> AppointmentTokenService:
    return AppointmentTokenService(TEST_SECRET)


@pytest.fixture
def dispatcher() -> NotificationDispatcher:
    """Dispatcher with no webhook: every notification is logged and skipped."""
    return NotificationDispatcher(webhook_url="", api_key="")


# ============================================================================
# SQL FIXTURES
# ============================================================================

@pytest.fixture(scope="function")
async def async_engine():
    """
    In-memory SQLite engine with the schema created.

    Engine is created per test to ensure clean state.
    """
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
async def async_session(async_engine):
    session_maker = async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        yield session


# ============================================================================
# API CLIENT
# ============================================================================

@pytest.fixture(scope="function")
async def client(store, clock, token_service, dispatcher):
    """
    FastAPI AsyncClient wired to the in-memory store.

    Overrides the store, clock, token service and dispatcher dependencies.
    """
    # Import here so the env vars above are in place first
    from agenda.main import app
    from agenda.notifications import get_dispatcher
    from agenda.routes import get_clock, get_store
    from agenda.tokens import get_token_service

    async def override_get_store():
        return store

    app.dependency_overrides[get_store] = override_get_store
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_token_service] = lambda: token_service
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
