from datetime import date, datetime, timedelta, timezone

import httpx
import pytest

from dispatch_service import models  # noqa: F401
from dispatch_service.container import build_services
from dispatch_service.dispatch import WEEKDAYS
from dispatch_service.main import app
from dispatch_service.models import Booking, Technician
from shared.database import Base, get_engine, get_session

# Monday
START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
SERVICE_DAY = date(2026, 3, 2)

FULL_WEEK = {day: {"available": True, "start": "08:00", "end": "18:00"} for day in WEEKDAYS}

ADMIN_HEADERS = {"X-User-Sub": "admin-1", "X-User-Roles": '["admin"]'}


def technician_headers(technician_id: str) -> dict:
    return {"X-User-Sub": technician_id, "X-User-Roles": '["technician"]'}


class FrozenClock:
    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float):
        self.current = self.current + timedelta(seconds=seconds)


class RecordingPublisher:
    enabled = True

    def __init__(self):
        self.events = []
        self.notifications = []

    async def publish_event(self, event_type: str, data: dict) -> bool:
        self.events.append((event_type, data))
        return True

    async def notify(self, channel: str, payload: dict) -> bool:
        self.notifications.append((channel, payload))
        return True

    def types(self) -> list:
        return [t for t, _ in self.events]


class Seeder:
    def __init__(self, services, clock):
        self.services = services
        self.clock = clock

    async def booking(
        self,
        booking_id: str = "B1",
        service_type: str = "washing_machine",
        price: int = 1000,
        status: str = "pending",
        technician_id: str | None = None,
        scheduled_date: date | None = SERVICE_DAY,
        scheduled_time: str | None = "10:00",
    ) -> Booking:
        now = self.clock.now()
        booking = Booking(
            booking_id=booking_id,
            service_type=service_type,
            customer_email="customer@example.com",
            scheduled_date=scheduled_date,
            scheduled_time=scheduled_time,
            status=status,
            payment_status="pending",
            price=price,
            technician_id=technician_id,
            dispatch_round=0,
            version=1,
            created_at=now,
            updated_at=now,
        )
        assert await self.services.gateway.insert(booking)
        return booking

    async def technician(
        self,
        technician_id: str,
        rating: float = 4.0,
        specializations=("washing_machine",),
        status: str = "active",
        availability: dict | None = None,
        completed_bookings: int = 0,
    ) -> Technician:
        technician = Technician(
            technician_id=technician_id,
            name=f"Tech {technician_id}",
            email=f"{technician_id.lower()}@example.com",
            specializations=list(specializations),
            status=status,
            availability=FULL_WEEK if availability is None else availability,
            rating=rating,
            completed_bookings=completed_bookings,
        )
        assert await self.services.gateway.insert(technician)
        return technician

    async def reload(self, model, key):
        return await self.services.gateway.get(model, key)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
async def engine(tmp_path):
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def services(engine, clock, publisher):
    return build_services(
        get_session(engine),
        publisher=publisher,
        now=clock.now,
        offer_ttl_seconds=30,
        fanout=1,
        redispatch_fanout=1,
        max_dispatch_rounds=3,
        default_commission_rate=30.0,
    )


@pytest.fixture
def seed(services, clock):
    return Seeder(services, clock)


@pytest.fixture
async def client(services):
    app.state.services = services
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.state.services = None
