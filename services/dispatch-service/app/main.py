import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from shared import redis as shared_redis

from .clock import utcnow
from .config import RABBIT_URL, SERVICE_NAME, SWEEP_INTERVAL_SECONDS
from .consumer import start_consumer_with_retry
from .container import build_services
from .db import SessionLocal
from .errors import DispatchError
from .expiry_worker import sweep_loop
from .logging_setup import configure_logging
from .middleware import RequestLoggingMiddleware
from .rabbitmq import publisher
from .routes import router

logger = logging.getLogger(__name__)

app = FastAPI(title="Dispatch Service")
app.add_middleware(RequestLoggingMiddleware)
app.include_router(router)

_consumer_conn = None
_consumer_task = None
_stop_event = asyncio.Event()
_sweep_task = None


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    return JSONResponse(status_code=exc.status_code, content={"code": exc.code, "detail": exc.message})


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "events_enabled": publisher.enabled,
        "redis_enabled": shared_redis.redis_client is not None,
    }


async def _start_consumer(services):
    global _consumer_conn
    _consumer_conn = await start_consumer_with_retry(_stop_event, services, utcnow)


@app.on_event("startup")
async def startup():
    global _consumer_task, _sweep_task
    configure_logging(SERVICE_NAME)
    _stop_event.clear()

    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(SessionLocal, publisher=publisher)
    services = app.state.services

    try:
        await publisher.connect()
    except Exception as e:
        logger.warning("RabbitMQ connect failed at startup; continuing: %s", e)

    if RABBIT_URL:
        _consumer_task = asyncio.create_task(_start_consumer(services))

    _sweep_task = asyncio.create_task(sweep_loop(_stop_event, services.arbitrator, SWEEP_INTERVAL_SECONDS))
    logger.info("%s started", SERVICE_NAME)


@app.on_event("shutdown")
async def shutdown():
    _stop_event.set()
    for task in (_sweep_task, _consumer_task):
        if task:
            try:
                await task
            except Exception as e:
                logger.warning("background task ended with error: %s", e)
    try:
        if _consumer_conn and not _consumer_conn.is_closed:
            await _consumer_conn.close()
    except Exception as e:
        logger.warning("consumer close failed: %s", e)
    await publisher.close()
