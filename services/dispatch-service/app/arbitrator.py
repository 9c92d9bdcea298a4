import logging
from dataclasses import dataclass, field

from .clock import as_utc, utcnow
from .config import MAX_DISPATCH_ROUNDS, SWEEP_BATCH_SIZE
from .errors import (
    AlreadyAssigned,
    Forbidden,
    InvalidTransition,
    NoEligibleTechnicians,
    NotEligible,
    NotFound,
    OfferExpired,
)
from .models import (
    OPEN_STATUSES,
    Booking,
    BookingStatus,
    JobOffer,
    NotificationType,
    OfferState,
    Technician,
    TechnicianStatus,
)
from .notifications import Scope
from .state_machine import can_transition

logger = logging.getLogger(__name__)


@dataclass
class AcceptResult:
    offer_id: str | None
    booking_id: str
    technician_id: str
    status: BookingStatus
    duplicate: bool = False


@dataclass
class RejectResult:
    offer_id: str
    booking_id: str
    redispatched: bool = False
    offer_ids: list = field(default_factory=list)


@dataclass
class SweepReport:
    expired: int = 0
    voided: int = 0
    redispatched: list = field(default_factory=list)
    escalated: list = field(default_factory=list)


def is_open(booking: Booking) -> bool:
    return booking.status in OPEN_STATUSES and not booking.technician_id


class OfferArbitrator:
    """
    Resolves accept / reject / expiry on job offers.

    The winner of a booking is whoever wins the conditional write on the
    Booking row (technician unset, status open). Offer rows are only
    bookkeeping around that write, so arrival order, delays and duplicate
    deliveries cannot produce a second assignment.
    """

    def __init__(
        self,
        gateway,
        state_machine,
        dispatcher,
        notifications,
        publisher=None,
        now=utcnow,
        max_dispatch_rounds: int = MAX_DISPATCH_ROUNDS,
        sweep_batch_size: int = SWEEP_BATCH_SIZE,
    ):
        self.gateway = gateway
        self.state_machine = state_machine
        self.dispatcher = dispatcher
        self.notifications = notifications
        self.publisher = publisher
        self.now = now
        self.max_dispatch_rounds = max_dispatch_rounds
        self.sweep_batch_size = sweep_batch_size

    # ---- helpers ----

    async def _load_offer(self, offer_id: str, technician_id: str) -> JobOffer:
        offer = await self.gateway.get(JobOffer, offer_id)
        if offer is None:
            raise NotFound("Job offer not found")
        if offer.technician_id != technician_id:
            raise Forbidden("Job offer belongs to another technician")
        return offer

    async def _load_booking(self, booking_id: str) -> Booking:
        booking = await self.gateway.get(Booking, booking_id)
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found")
        return booking

    def _lapsed(self, offer: JobOffer, now) -> bool:
        return now > as_utc(offer.expires_at)

    async def _void(self, offer_id: str) -> bool:
        return await self.gateway.conditional_update(
            JobOffer,
            offer_id,
            [JobOffer.state == OfferState.PENDING.value],
            {"state": OfferState.SUPERSEDED.value, "responded_at": self.now()},
        )

    async def _void_pending(self, booking_id: str, keep_offer_id: str | None = None) -> list:
        criteria = [JobOffer.booking_id == booking_id, JobOffer.state == OfferState.PENDING.value]
        if keep_offer_id:
            criteria.append(JobOffer.offer_id != keep_offer_id)
        losers = await self.gateway.query(JobOffer, *criteria)
        if losers:
            await self.gateway.update_where(
                JobOffer,
                *criteria,
                patch={"state": OfferState.SUPERSEDED.value, "responded_at": self.now()},
            )
        return losers

    async def _raise_for_closed_offer(self, offer: JobOffer):
        state = OfferState(offer.state)
        if state == OfferState.SUPERSEDED:
            booking = await self.gateway.get(Booking, offer.booking_id)
            if booking is not None and booking.status == BookingStatus.CANCELLED.value:
                raise OfferExpired("Job offer is void: booking was cancelled")
            raise AlreadyAssigned("Job was taken by another technician")
        raise OfferExpired(f"Job offer is already {state.value}")

    # ---- accept ----

    async def accept(self, offer_id: str, technician_id: str) -> AcceptResult:
        offer = await self._load_offer(offer_id, technician_id)
        booking_id = offer.booking_id

        if offer.state == OfferState.ACCEPTED.value:
            booking = await self._load_booking(booking_id)
            if booking.technician_id == technician_id:
                return AcceptResult(offer_id, booking_id, technician_id, BookingStatus(booking.status), duplicate=True)
            raise OfferExpired("Job offer is no longer valid")
        if offer.state != OfferState.PENDING.value:
            await self._raise_for_closed_offer(offer)

        now = self.now()
        if self._lapsed(offer, now):
            # left pending on purpose: the sweep expires it and re-dispatches
            raise OfferExpired("Job offer has expired")

        won = await self.state_machine.claim_assignment(booking_id, technician_id, accepted=True)
        if not won:
            booking = await self._load_booking(booking_id)
            if booking.technician_id == technician_id and booking.status == BookingStatus.ASSIGNED.value:
                # an earlier delivery of this same accept already won
                await self._mark_accepted(offer_id)
                return AcceptResult(offer_id, booking_id, technician_id, BookingStatus.ASSIGNED, duplicate=True)

            await self._void(offer_id)
            logger.info("offer %s lost booking %s (status=%s)", offer_id, booking_id, booking.status)
            if booking.status == BookingStatus.CANCELLED.value:
                raise OfferExpired("Job offer is void: booking was cancelled")
            if booking.technician_id:
                raise AlreadyAssigned("Job was taken by another technician")
            raise OfferExpired(f"Booking is {booking.status} and no longer takes offers")

        await self._mark_accepted(offer_id)
        losers = await self._void_pending(booking_id, keep_offer_id=offer_id)
        logger.info("offer %s won booking %s for %s; %d superseded", offer_id, booking_id, technician_id, len(losers))

        await self._announce_assignment(booking_id, technician_id, losers, via_offer=offer_id)
        return AcceptResult(offer_id, booking_id, technician_id, BookingStatus.ASSIGNED)

    async def _mark_accepted(self, offer_id: str):
        # the sweep may have expired it after the booking write committed
        await self.gateway.conditional_update(
            JobOffer,
            offer_id,
            [JobOffer.state.in_([OfferState.PENDING.value, OfferState.EXPIRED.value])],
            {"state": OfferState.ACCEPTED.value, "responded_at": self.now()},
        )

    async def _announce_assignment(self, booking_id: str, technician_id: str, losers, via_offer: str | None):
        how = "accepted" if via_offer else "was assigned"
        await self.notifications.emit(
            Scope.admin(),
            NotificationType.JOB_OFFER if via_offer else NotificationType.BOOKING,
            booking_id,
            f"Technician {technician_id} {how} booking {booking_id}.",
            title="Job accepted" if via_offer else "Technician assigned",
        )
        if not via_offer:
            await self.notifications.emit(
                Scope.technician(technician_id),
                NotificationType.JOB_OFFER,
                booking_id,
                f"You have been assigned booking {booking_id}.",
                is_important=True,
                title="New assignment",
            )
        for loser in losers:
            await self.notifications.emit(
                Scope.technician(loser.technician_id),
                NotificationType.JOB_OFFER,
                loser.offer_id,
                f"Booking {booking_id} has been taken by another technician.",
                title="Job no longer available",
            )

        if self.publisher:
            payload = {"booking_id": booking_id, "technician_id": technician_id, "offer_id": via_offer}
            if via_offer:
                await self.publisher.publish_event("offer.accepted", payload)
            await self.publisher.publish_event("booking.assigned", payload)

    # ---- direct assignment ----

    async def assign(self, booking_id: str, technician_id: str, actor: str) -> AcceptResult:
        technician = await self.gateway.get(Technician, technician_id)
        if technician is None:
            raise NotFound(f"Technician {technician_id} not found")
        if technician.status != TechnicianStatus.ACTIVE.value:
            raise NotEligible(f"Technician {technician_id} is {technician.status}")

        booking = await self._load_booking(booking_id)
        if booking.technician_id == technician_id and booking.status == BookingStatus.ASSIGNED.value:
            return AcceptResult(None, booking_id, technician_id, BookingStatus.ASSIGNED, duplicate=True)
        if booking.technician_id:
            raise AlreadyAssigned(f"Booking {booking_id} is already assigned")
        if not can_transition(booking.status, BookingStatus.ASSIGNED):
            raise InvalidTransition(f"Cannot move booking from {booking.status} to assigned")

        if not await self.state_machine.claim_assignment(booking_id, technician_id, accepted=False):
            booking = await self._load_booking(booking_id)
            if booking.technician_id:
                raise AlreadyAssigned(f"Booking {booking_id} is already assigned")
            raise InvalidTransition(f"Cannot move booking from {booking.status} to assigned")

        losers = await self._void_pending(booking_id)
        logger.info("booking %s assigned to %s by %s; %d offers superseded", booking_id, technician_id, actor, len(losers))
        await self._announce_assignment(booking_id, technician_id, losers, via_offer=None)
        return AcceptResult(None, booking_id, technician_id, BookingStatus.ASSIGNED)

    # ---- reject ----

    async def reject(self, offer_id: str, technician_id: str, reason: str | None = None) -> RejectResult:
        offer = await self._load_offer(offer_id, technician_id)
        if offer.state != OfferState.PENDING.value:
            await self._raise_for_closed_offer(offer)
        if self._lapsed(offer, self.now()):
            raise OfferExpired("Job offer has expired")

        booking = await self._load_booking(offer.booking_id)
        if not is_open(booking):
            await self._void(offer_id)
            if booking.technician_id:
                raise AlreadyAssigned("Job was taken by another technician")
            raise OfferExpired(f"Booking is {booking.status} and no longer takes offers")

        reason = (reason or "").strip() or "No reason provided"
        ok = await self.gateway.conditional_update(
            JobOffer,
            offer_id,
            [JobOffer.state == OfferState.PENDING.value],
            {"state": OfferState.REJECTED.value, "responded_at": self.now(), "rejection_reason": reason},
        )
        if not ok:
            offer = await self.gateway.get(JobOffer, offer_id)
            await self._raise_for_closed_offer(offer)

        booking_id = offer.booking_id
        await self.state_machine.record_rejection(booking_id, reason)
        logger.info("offer %s rejected by %s: %s", offer_id, technician_id, reason)

        await self.notifications.emit(
            Scope.admin(),
            NotificationType.JOB_OFFER,
            booking_id,
            f"Technician {technician_id} rejected booking {booking_id}: {reason}",
            title="Job rejected",
        )
        if self.publisher:
            await self.publisher.publish_event(
                "offer.rejected",
                {"offer_id": offer_id, "booking_id": booking_id, "technician_id": technician_id, "reason": reason},
            )

        result = RejectResult(offer_id=offer_id, booking_id=booking_id)
        if await self._live_offers(booking_id):
            return result

        booking = await self.gateway.get(Booking, booking_id)
        if booking is not None and is_open(booking):
            result.offer_ids = await self._redispatch_or_escalate(booking)
            result.redispatched = bool(result.offer_ids)
        return result

    # ---- expiry ----

    async def sweep_expired(self) -> SweepReport:
        """
        One pass of the periodic sweep: expire lapsed pending offers, void
        offers of bookings that closed meanwhile, and re-dispatch bookings
        left without any live offer.
        """
        now = self.now()
        report = SweepReport()
        stale = await self.gateway.query(
            JobOffer,
            JobOffer.state == OfferState.PENDING.value,
            JobOffer.expires_at < now,
            order_by=JobOffer.expires_at,
            limit=self.sweep_batch_size,
        )

        by_booking: dict[str, list] = {}
        for offer in stale:
            by_booking.setdefault(offer.booking_id, []).append(offer)

        for booking_id in sorted(by_booking):
            booking = await self.gateway.get(Booking, booking_id)
            if booking is None or not is_open(booking):
                report.voided += len(await self._void_pending(booking_id))
                continue

            for offer in by_booking[booking_id]:
                expired = await self.gateway.conditional_update(
                    JobOffer,
                    offer.offer_id,
                    [JobOffer.state == OfferState.PENDING.value],
                    {"state": OfferState.EXPIRED.value},
                )
                if expired:
                    report.expired += 1
                    logger.info("offer %s for booking %s expired", offer.offer_id, booking_id)
                    if self.publisher:
                        await self.publisher.publish_event(
                            "offer.expired",
                            {"offer_id": offer.offer_id, "booking_id": booking_id, "technician_id": offer.technician_id},
                        )

            if await self._live_offers(booking_id, now):
                continue

            offer_ids = await self._redispatch_or_escalate(booking, report)
            if offer_ids:
                report.redispatched.append(booking_id)

        return report

    async def _live_offers(self, booking_id: str, now=None) -> int:
        now = now or self.now()
        return await self.gateway.count(
            JobOffer,
            JobOffer.booking_id == booking_id,
            JobOffer.state == OfferState.PENDING.value,
            JobOffer.expires_at >= now,
        )

    async def _redispatch_or_escalate(self, booking: Booking, report: SweepReport | None = None) -> list:
        booking_id = booking.booking_id
        if (booking.dispatch_round or 0) >= self.max_dispatch_rounds:
            logger.warning("booking %s: giving up after %d dispatch rounds", booking_id, booking.dispatch_round)
            await self.notifications.emit(
                Scope.admin(),
                NotificationType.BOOKING,
                booking_id,
                f"Booking {booking_id} is still unassigned after {booking.dispatch_round} dispatch rounds. Manual assignment needed.",
                is_important=True,
                title="Manual assignment needed",
            )
            if report is not None:
                report.escalated.append(booking_id)
            return []

        try:
            result = await self.dispatcher.redispatch(booking_id)
        except NoEligibleTechnicians:
            # the dispatcher already raised the admin alert
            if report is not None:
                report.escalated.append(booking_id)
            return []
        except NotEligible:
            return []
        return result.offer_ids

    # ---- technician inbox ----

    async def inbox(self, technician_id: str) -> list:
        now = self.now()
        offers = await self.gateway.query(
            JobOffer,
            JobOffer.technician_id == technician_id,
            JobOffer.state == OfferState.PENDING.value,
            JobOffer.expires_at > now,
            order_by=JobOffer.expires_at,
        )
        return [(o, max(0, int((as_utc(o.expires_at) - now).total_seconds()))) for o in offers]
