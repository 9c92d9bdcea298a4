import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from dispatch_service.errors import StoreUnavailable
from dispatch_service.gateway import PersistenceGateway
from dispatch_service.models import Booking, Technician
from shared.database import get_session


class FlakySessions:
    """Session factory that fails the first few checkouts like a dropped connection."""

    def __init__(self, factory, failures: int, error=None):
        self.factory = factory
        self.failures = failures
        self.error = error or OperationalError("SELECT 1", {}, Exception("database is locked"))
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        return self.factory()


def _gateway(sessions, attempts=3) -> PersistenceGateway:
    return PersistenceGateway(sessions, retry_attempts=attempts, backoff_seconds=0, backoff_max_seconds=0)


@pytest.mark.anyio
async def test_transient_errors_are_retried(engine, seed):
    await seed.technician("T1")
    sessions = FlakySessions(get_session(engine), failures=2)

    technician = await _gateway(sessions).get(Technician, "T1")
    assert technician.technician_id == "T1"
    assert sessions.calls == 3


@pytest.mark.anyio
async def test_exhausted_retries_surface_as_store_unavailable(engine):
    sessions = FlakySessions(get_session(engine), failures=5)
    with pytest.raises(StoreUnavailable):
        await _gateway(sessions).count(Technician)
    assert sessions.calls == 3


@pytest.mark.anyio
async def test_integrity_errors_are_not_retried(engine):
    error = IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
    sessions = FlakySessions(get_session(engine), failures=1, error=error)
    with pytest.raises(IntegrityError):
        await _gateway(sessions).count(Technician)
    assert sessions.calls == 1


@pytest.mark.anyio
async def test_insert_reports_unique_violations(services, seed):
    await seed.technician("T1")
    assert await services.gateway.insert(Technician(technician_id="T1", specializations=[], availability={})) is False


@pytest.mark.anyio
async def test_conditional_update_on_version_bumps_it(services, seed):
    await seed.booking()
    assert await services.gateway.conditional_update(Booking, "B1", 1, {"status": "confirmed"}) is True
    assert await services.gateway.conditional_update(Booking, "B1", 1, {"status": "cancelled"}) is False

    booking = await seed.reload(Booking, "B1")
    assert booking.status == "confirmed"
    assert booking.version == 2


@pytest.mark.anyio
async def test_conditional_update_on_predicate(services, seed):
    await seed.booking()
    open_only = [Booking.technician_id.is_(None)]
    assert await services.gateway.conditional_update(Booking, "B1", open_only, {"technician_id": "T1"}) is True
    assert await services.gateway.conditional_update(Booking, "B1", open_only, {"technician_id": "T2"}) is False
    assert await services.gateway.conditional_update(Booking, "missing", None, {"price": 1}) is False
    assert (await seed.reload(Booking, "B1")).technician_id == "T1"
