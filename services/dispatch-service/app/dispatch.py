import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta

from .clock import utcnow
from .config import DISPATCH_FANOUT, OFFER_TTL_SECONDS, REDISPATCH_FANOUT
from .errors import NoEligibleTechnicians, NotEligible, NotFound
from .models import (
    OPEN_STATUSES,
    Booking,
    JobOffer,
    NotificationType,
    OfferState,
    Technician,
    TechnicianStatus,
)
from .notifications import Scope

logger = logging.getLogger(__name__)

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def norm(s: str) -> str:
    return (s or "").strip().lower()


def parse_hhmm(value) -> time | None:
    if not value:
        return None
    try:
        return datetime.strptime(str(value).strip()[:5], "%H:%M").time()
    except ValueError:
        return None


def covers(availability: dict | None, day: date | None, at: str | None) -> bool:
    """
    True when a weekly availability map admits the requested slot.
    Without a requested day any day marked available is enough.
    """
    availability = availability or {}
    if day is None:
        return any(bool((entry or {}).get("available")) for entry in availability.values())

    entry = availability.get(WEEKDAYS[day.weekday()]) or {}
    if not entry.get("available"):
        return False

    requested = parse_hhmm(at)
    if requested is None:
        return True

    start = parse_hhmm(entry.get("start"))
    end = parse_hhmm(entry.get("end"))
    if start and requested < start:
        return False
    if end and requested >= end:
        return False
    return True


def rank_key(technician: Technician):
    return (-(technician.rating or 0.0), -(technician.completed_bookings or 0), technician.technician_id)


def select_candidates(booking: Booking, technicians, excluded=()) -> list:
    wanted = norm(booking.service_type)
    excluded = set(excluded)
    eligible = []
    for t in technicians:
        if t.technician_id in excluded:
            continue
        if t.status != TechnicianStatus.ACTIVE.value:
            continue
        skills = {norm(s) for s in (t.specializations or []) if s}
        if wanted not in skills:
            continue
        if not covers(t.availability, booking.scheduled_date, booking.scheduled_time):
            continue
        eligible.append(t)
    eligible.sort(key=rank_key)
    return eligible


@dataclass
class DispatchResult:
    booking_id: str
    round: int
    offer_ids: list = field(default_factory=list)


class DispatchEngine:
    def __init__(
        self,
        gateway,
        state_machine,
        notifications,
        publisher=None,
        now=utcnow,
        offer_ttl_seconds: int = OFFER_TTL_SECONDS,
        fanout: int = DISPATCH_FANOUT,
        redispatch_fanout: int = REDISPATCH_FANOUT,
    ):
        self.gateway = gateway
        self.state_machine = state_machine
        self.notifications = notifications
        self.publisher = publisher
        self.now = now
        self.offer_ttl_seconds = offer_ttl_seconds
        self.fanout = fanout
        self.redispatch_fanout = redispatch_fanout

    async def dispatch(self, booking_id: str, fanout: int | None = None) -> DispatchResult:
        return await self._dispatch(booking_id, fanout or self.fanout)

    async def redispatch(self, booking_id: str) -> DispatchResult:
        return await self._dispatch(booking_id, self.redispatch_fanout)

    async def _dispatch(self, booking_id: str, k: int) -> DispatchResult:
        booking = await self.gateway.get(Booking, booking_id)
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found")
        if booking.status not in OPEN_STATUSES or booking.technician_id:
            raise NotEligible(f"Booking {booking_id} is {booking.status} and cannot be dispatched")

        technicians = await self.gateway.query(
            Technician, Technician.status == TechnicianStatus.ACTIVE.value
        )
        # anyone who ever held an offer for this booking is out, whatever its state
        previous = await self.gateway.query(JobOffer, JobOffer.booking_id == booking_id)
        excluded = {o.technician_id for o in previous}

        candidates = select_candidates(booking, technicians, excluded)
        if not candidates:
            logger.info("booking %s: no eligible technicians (excluded %d)", booking_id, len(excluded))
            await self.notifications.emit(
                Scope.admin(),
                NotificationType.BOOKING,
                booking_id,
                f"No eligible technician for booking {booking_id} ({booking.service_type}). Manual assignment needed.",
                is_important=True,
                title="Manual assignment needed",
            )
            raise NoEligibleTechnicians(f"No eligible technicians for booking {booking_id}")

        if not await self.state_machine.open_dispatch_round(booking_id):
            raise NotEligible(f"Booking {booking_id} is no longer open for dispatch")
        round_no = (booking.dispatch_round or 0) + 1

        now = self.now()
        expires_at = now + timedelta(seconds=self.offer_ttl_seconds)
        result = DispatchResult(booking_id=booking_id, round=round_no)

        for technician in candidates[: max(1, k)]:
            offer = JobOffer(
                offer_id=str(uuid.uuid4()),
                booking_id=booking_id,
                technician_id=technician.technician_id,
                state=OfferState.PENDING.value,
                round=round_no,
                issued_at=now,
                expires_at=expires_at,
            )
            if not await self.gateway.insert(offer):
                logger.info("booking %s: %s already holds an offer, skipped", booking_id, technician.technician_id)
                continue
            result.offer_ids.append(offer.offer_id)
            await self._announce_offer(booking, offer)

        logger.info("booking %s: round %d issued %d offer(s)", booking_id, round_no, len(result.offer_ids))
        return result

    async def _announce_offer(self, booking: Booking, offer: JobOffer):
        await self.notifications.emit(
            Scope.technician(offer.technician_id),
            NotificationType.JOB_OFFER,
            offer.offer_id,
            f"New {booking.service_type} job for {booking.price}. Respond within {self.offer_ttl_seconds}s.",
            is_important=True,
            title="New job offer",
        )
        if self.publisher:
            payload = {
                "offer_id": offer.offer_id,
                "booking_id": offer.booking_id,
                "technician_id": offer.technician_id,
                "expires_at": offer.expires_at,
                "round": offer.round,
            }
            await self.publisher.publish_event("offer.created", payload)
            await self.publisher.notify("push", {**payload, "recipient": offer.technician_id})
