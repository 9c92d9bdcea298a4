from . import redis as shared_redis

IDEMPOTENCY_TTL_SECONDS = 86400


async def claim_event(event_id: str) -> bool:
    """
    Returns True the first time an event id is seen.
    Without Redis every delivery is claimed; consumers must upsert by key.
    """
    client = shared_redis.redis_client
    if client is None:
        return True
    return bool(await client.set(f"event:{event_id}", "1", nx=True, ex=IDEMPOTENCY_TTL_SECONDS))
