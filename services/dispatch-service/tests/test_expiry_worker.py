import asyncio

import pytest

from dispatch_service import expiry_worker, main
from dispatch_service.arbitrator import SweepReport
from dispatch_service.models import JobOffer
from dispatch_service.rabbitmq import RabbitPublisher
from shared import redis as shared_redis


class LeaseRedis:
    def __init__(self, held: bool = False):
        self.held = held
        self.calls = []

    async def set(self, key, value, nx=False, px=None, ex=None):
        self.calls.append((key, px))
        if nx and self.held:
            return None
        self.held = True
        return True


async def _expiring_offer(services, seed, clock):
    await seed.booking()
    await seed.technician("T1")
    await services.dispatcher.dispatch("B1")
    clock.advance(31)


@pytest.mark.anyio
async def test_sweep_once_without_redis_runs_a_pass(services, seed, clock, monkeypatch):
    monkeypatch.setattr(shared_redis, "redis_client", None)
    await _expiring_offer(services, seed, clock)

    report = await expiry_worker.sweep_once(services.arbitrator, interval=5)
    assert report.expired == 1
    assert (await services.gateway.query(JobOffer))[0].state == "expired"


@pytest.mark.anyio
async def test_sweep_skipped_while_another_instance_holds_the_lease(services, seed, clock, monkeypatch):
    redis = LeaseRedis(held=True)
    monkeypatch.setattr(shared_redis, "redis_client", redis)
    await _expiring_offer(services, seed, clock)

    assert await expiry_worker.sweep_once(services.arbitrator, interval=5) is None
    assert redis.calls == [(expiry_worker.LEASE_KEY, 4900)]
    assert (await services.gateway.query(JobOffer))[0].state == "pending"


@pytest.mark.anyio
async def test_sweep_loop_stops_on_event(services, monkeypatch):
    monkeypatch.setattr(shared_redis, "redis_client", LeaseRedis())
    stop = asyncio.Event()
    task = asyncio.create_task(expiry_worker.sweep_loop(stop, services.arbitrator, interval=0.01))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(task, timeout=2)
    assert task.done()


class CrashingOnceArbitrator:
    def __init__(self, error):
        self.error = error
        self.passes = 0

    async def sweep_expired(self):
        self.passes += 1
        if self.passes == 1:
            raise self.error
        return SweepReport()


@pytest.mark.anyio
async def test_sweep_loop_survives_a_crashing_pass(monkeypatch, caplog):
    monkeypatch.setattr(shared_redis, "redis_client", None)
    arbitrator = CrashingOnceArbitrator(OSError("connection refused"))
    stop = asyncio.Event()
    task = asyncio.create_task(expiry_worker.sweep_loop(stop, arbitrator, interval=0.01))
    for _ in range(200):
        if arbitrator.passes >= 2:
            break
        await asyncio.sleep(0.01)
    stop.set()
    await asyncio.wait_for(task, timeout=2)

    assert arbitrator.passes >= 2
    assert task.exception() is None
    assert "sweep pass crashed" in caplog.text


@pytest.mark.anyio
async def test_sweep_loop_restarts_with_the_service(services, monkeypatch):
    monkeypatch.setattr(shared_redis, "redis_client", None)
    monkeypatch.setattr(main, "RABBIT_URL", None)
    monkeypatch.setattr(main, "publisher", RabbitPublisher(url=None))
    monkeypatch.setattr(main, "configure_logging", lambda name: None)
    main.app.state.services = services
    try:
        for _ in range(2):
            await main.startup()
            await asyncio.sleep(0.05)
            assert not main._sweep_task.done()
            await main.shutdown()
            assert main._sweep_task.done()
    finally:
        main.app.state.services = None
