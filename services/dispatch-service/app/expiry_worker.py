import asyncio
import logging
import uuid

from redis.exceptions import RedisError

from shared import redis as shared_redis

from .config import SWEEP_INTERVAL_SECONDS
from .errors import DispatchError

logger = logging.getLogger(__name__)

LEASE_KEY = "dispatch:sweep:lease"
INSTANCE_ID = str(uuid.uuid4())


async def acquire_lease(ttl_ms: int) -> bool:
    """
    One instance sweeps per tick. Without Redis, or when Redis is down,
    every instance sweeps; the offer writes are conditional either way.
    """
    client = shared_redis.redis_client
    if client is None:
        return True
    try:
        return bool(await client.set(LEASE_KEY, INSTANCE_ID, nx=True, px=ttl_ms))
    except RedisError as e:
        logger.warning("sweep lease unavailable, sweeping anyway: %s", e)
        return True


async def sweep_once(arbitrator, interval: float = SWEEP_INTERVAL_SECONDS):
    if not await acquire_lease(max(100, int(interval * 1000) - 100)):
        return None
    try:
        report = await arbitrator.sweep_expired()
    except DispatchError as e:
        logger.error("sweep pass failed: %s", e.message)
        return None
    except Exception:
        logger.exception("sweep pass crashed; retrying next tick")
        return None
    if report.expired or report.voided or report.redispatched or report.escalated:
        logger.info(
            "sweep: expired=%d voided=%d redispatched=%d escalated=%d",
            report.expired,
            report.voided,
            len(report.redispatched),
            len(report.escalated),
        )
    return report


async def sweep_loop(stop_event: asyncio.Event, arbitrator, interval: float = SWEEP_INTERVAL_SECONDS):
    while not stop_event.is_set():
        await sweep_once(arbitrator, interval)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
