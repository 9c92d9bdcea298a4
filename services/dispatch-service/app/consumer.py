import asyncio
import json
import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

import aio_pika
from aio_pika import ExchangeType
from dateutil.parser import isoparse

from shared.idempotency import claim_event

from .dispatch import norm, parse_hhmm
from .errors import NoEligibleTechnicians, NotEligible
from .models import Booking, BookingStatus, PaymentStatus, Technician, TechnicianStatus
from .rabbitmq import EXCHANGE_NAME, connect

logger = logging.getLogger(__name__)

QUEUE_NAME = "dispatch_service_domain_events"
ROUTING_KEYS = ["booking.created", "technician.updated"]
RETRY_SECONDS = 5

BOOKING_ID_KEYS = ("booking_id", "bookingId", "id")
DATE_KEYS = ("date", "scheduledDate", "scheduled_date", "bookingDate")
TIME_KEYS = ("time", "scheduledTime", "scheduled_time", "timeSlot")
PRICE_KEYS = ("amount", "price", "totalAmount")
SERVICE_KEYS = ("service", "serviceType", "service_type", "serviceName")
EMAIL_KEYS = ("customer_email", "customerEmail", "email")
TECHNICIAN_ID_KEYS = ("technician_id", "technicianId", "id")


def first(data: dict, keys):
    """First non-empty value among aliased source fields."""
    for key in keys:
        value = data.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def parse_date(value):
    if value is None:
        return None
    try:
        return isoparse(str(value).strip()).date()
    except (ValueError, OverflowError):
        return None


def parse_time(value) -> str | None:
    parsed = parse_hhmm(value)
    return parsed.strftime("%H:%M") if parsed else None


def parse_price(value) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def booking_from_event(data: dict, now) -> Booking | None:
    booking_id = first(data, BOOKING_ID_KEYS)
    service_type = first(data, SERVICE_KEYS)
    price = parse_price(first(data, PRICE_KEYS))
    if not booking_id or not service_type or price is None:
        return None

    return Booking(
        booking_id=str(booking_id),
        service_type=norm(str(service_type)),
        customer_email=first(data, EMAIL_KEYS),
        scheduled_date=parse_date(first(data, DATE_KEYS)),
        scheduled_time=parse_time(first(data, TIME_KEYS)),
        status=BookingStatus.PENDING.value,
        payment_status=PaymentStatus.PENDING.value,
        price=price,
        dispatch_round=0,
        version=1,
        created_at=now,
        updated_at=now,
    )


def technician_patch(data: dict) -> dict:
    patch = {}
    for field in ("name", "email"):
        if data.get(field) is not None:
            patch[field] = data[field]

    skills = first(data, ("specializations", "skills"))
    if isinstance(skills, list):
        patch["specializations"] = [norm(s) for s in skills if s]

    status = norm(data.get("status"))
    if status in {s.value for s in TechnicianStatus}:
        patch["status"] = status

    if isinstance(data.get("availability"), dict):
        patch["availability"] = data["availability"]

    rating = first(data, ("rating",))
    if rating is not None:
        try:
            patch["rating"] = float(rating)
        except (TypeError, ValueError):
            pass

    completed = first(data, ("completed_bookings", "completedBookings"))
    if completed is not None:
        try:
            patch["completed_bookings"] = int(completed)
        except (TypeError, ValueError):
            pass
    return patch


async def ingest_booking(services, data: dict, now) -> bool:
    booking = booking_from_event(data, now)
    if booking is None:
        logger.warning("booking.created without usable id/service/price ignored: %s", data)
        return False

    # key-based upsert: a redelivered booking.created never resets a live booking
    created = await services.gateway.insert(booking)
    if not created:
        logger.info("booking %s already known, skipped", booking.booking_id)
        return False

    logger.info("booking %s ingested (%s, price=%d)", booking.booking_id, booking.service_type, booking.price)
    if data.get("auto_dispatch"):
        try:
            await services.dispatcher.dispatch(booking.booking_id)
        except NoEligibleTechnicians:
            logger.info("booking %s left pending for manual assignment", booking.booking_id)
        except NotEligible as e:
            logger.info("booking %s not dispatched: %s", booking.booking_id, e.message)
    return True


async def sync_technician(services, data: dict) -> bool:
    technician_id = first(data, TECHNICIAN_ID_KEYS)
    if not technician_id:
        return False
    technician_id = str(technician_id)
    patch = technician_patch(data)

    if patch and await services.gateway.update_where(
        Technician, Technician.technician_id == technician_id, patch=patch
    ):
        return True

    if await services.gateway.get(Technician, technician_id) is not None:
        return True

    if not await services.gateway.insert(Technician(technician_id=technician_id, **patch)):
        # lost an insert race with a concurrent delivery
        await services.gateway.update_where(Technician, Technician.technician_id == technician_id, patch=patch)
    logger.info("technician %s registered", technician_id)
    return True


async def handle_payload(services, payload: dict, now) -> bool:
    event_id = payload.get("event_id")
    event_type = payload.get("event_type")
    data = payload.get("data") or {}

    if event_type not in set(ROUTING_KEYS):
        return False
    if event_id and not await claim_event(str(event_id)):
        return False

    if event_type == "booking.created":
        return await ingest_booking(services, data, now())
    if event_type == "technician.updated":
        return await sync_technician(services, data)
    return False


def make_handler(services, now):
    async def handle_message(message: aio_pika.IncomingMessage):
        async with message.process(requeue=False):
            try:
                payload = json.loads(message.body.decode("utf-8"))
            except (UnicodeDecodeError, ValueError):
                logger.warning("dropping undecodable message %s", message.message_id)
                return
            await handle_payload(services, payload, now)

    return handle_message


async def _connect_and_consume(services, now):
    connection = await connect()
    if connection is None:
        raise RuntimeError("RABBIT_URL not set; cannot start consumer")

    channel = await connection.channel()
    await channel.set_qos(prefetch_count=50)

    exchange = await channel.declare_exchange(EXCHANGE_NAME, ExchangeType.TOPIC, durable=True)
    queue = await channel.declare_queue(QUEUE_NAME, durable=True)
    for rk in ROUTING_KEYS:
        await queue.bind(exchange, routing_key=rk)

    await queue.consume(make_handler(services, now))
    logger.info("event consumer started on %s (%s)", QUEUE_NAME, ", ".join(ROUTING_KEYS))
    return connection


async def start_consumer_with_retry(stop_event: asyncio.Event, services, now):
    while not stop_event.is_set():
        try:
            return await _connect_and_consume(services, now)
        except Exception as e:
            logger.warning("consumer connect failed, retrying in %ss: %s", RETRY_SECONDS, e)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=RETRY_SECONDS)
            except asyncio.TimeoutError:
                continue
    return None
