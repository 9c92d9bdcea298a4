import os
import redis.asyncio as redis

REDIS_URL = os.getenv("REDIS_URL")  # optional; lease + idempotency keys are skipped without it

redis_client = redis.from_url(REDIS_URL, decode_responses=True) if REDIS_URL else None
