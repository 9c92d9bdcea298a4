import logging
from dataclasses import dataclass

from .clock import utcnow
from .commission import CommissionSplit
from .errors import ConcurrencyConflict, InvalidTransition, NotFound
from .models import (
    OPEN_STATUSES,
    Booking,
    BookingStatus,
    NotificationType,
    PaymentStatus,
    Technician,
)
from .notifications import Scope

logger = logging.getLogger(__name__)

TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.ASSIGNED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.ASSIGNED, BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.ASSIGNED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}


def can_transition(current, target) -> bool:
    return BookingStatus(target) in TRANSITIONS[BookingStatus(current)]


@dataclass
class TransitionResult:
    booking_id: str
    status: BookingStatus
    version: int
    no_change: bool = False
    settlement: CommissionSplit | None = None


class BookingStateMachine:
    """
    Sole writer of Booking records.

    Status changes are version-conditional: a concurrent writer turns the
    second request into ConcurrencyConflict and the caller re-reads.
    Assignment uses a predicate write instead (technician unset and
    status still open) so racing claimants resolve to one winner.
    """

    def __init__(self, gateway, notifications, commission, publisher=None, now=utcnow):
        self.gateway = gateway
        self.notifications = notifications
        self.commission = commission
        self.publisher = publisher
        self.now = now

    async def _load(self, booking_id: str) -> Booking:
        booking = await self.gateway.get(Booking, booking_id)
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found")
        return booking

    async def request_transition(self, booking_id: str, target, actor: str) -> TransitionResult:
        target = BookingStatus(target)
        booking = await self._load(booking_id)
        current = BookingStatus(booking.status)

        if current == target:
            return TransitionResult(booking_id, current, booking.version, no_change=True)

        if not can_transition(current, target):
            raise InvalidTransition(f"Cannot move booking from {current.value} to {target.value}")

        if target == BookingStatus.ASSIGNED:
            # assignment needs a technician and goes through the single-winner claim
            raise InvalidTransition("Moving a booking to assigned requires a technician")

        now = self.now()
        patch = {"status": target.value, "updated_at": now}
        settlement = None

        if target == BookingStatus.COMPLETED:
            settlement = await self.commission.split_price(booking.price)
            patch.update(
                completed_at=now,
                technician_earnings=settlement.technician_earnings,
                platform_commission=settlement.platform_commission,
                commission_rate=settlement.commission_rate,
                commission_fallback=settlement.used_fallback,
            )
        elif target == BookingStatus.CANCELLED:
            patch.update(cancelled_at=now, technician_id=None)

        ok = await self.gateway.conditional_update(Booking, booking_id, booking.version, patch)
        if not ok:
            await self._load(booking_id)
            raise ConcurrencyConflict(f"Booking {booking_id} changed concurrently; re-read and retry")

        new_version = booking.version + 1
        logger.info("booking %s: %s -> %s by %s", booking_id, current.value, target.value, actor)

        if target == BookingStatus.COMPLETED and booking.technician_id:
            await self.gateway.update_where(
                Technician,
                Technician.technician_id == booking.technician_id,
                patch={"completed_bookings": Technician.completed_bookings + 1},
            )

        await self._announce(booking, current, target, actor, settlement)
        return TransitionResult(booking_id, target, new_version, settlement=settlement)

    async def complete_for_technician(self, booking_id: str, technician_id: str) -> TransitionResult:
        booking = await self._load(booking_id)
        if booking.technician_id != technician_id:
            raise NotFound(f"Booking {booking_id} is not assigned to technician {technician_id}")
        return await self.request_transition(booking_id, BookingStatus.COMPLETED, technician_id)

    async def _announce(self, booking: Booking, current, target, actor, settlement):
        booking_id = booking.booking_id
        if target == BookingStatus.CANCELLED:
            await self.notifications.emit(
                Scope.admin(),
                NotificationType.CANCELLATION,
                booking_id,
                f"Booking {booking_id} was cancelled by {actor}.",
            )
            if booking.technician_id:
                await self.notifications.emit(
                    Scope.technician(booking.technician_id),
                    NotificationType.CANCELLATION,
                    booking_id,
                    f"Booking {booking_id} assigned to you was cancelled.",
                )
        else:
            await self.notifications.emit(
                Scope.admin(),
                NotificationType.BOOKING,
                booking_id,
                f"Booking {booking_id} moved from {current.value} to {target.value} by {actor}.",
            )
            if target == BookingStatus.COMPLETED and booking.technician_id:
                await self.notifications.emit(
                    Scope.technician(booking.technician_id),
                    NotificationType.BOOKING,
                    booking_id,
                    f"Booking {booking_id} completed. Your earnings: {settlement.technician_earnings}.",
                )

        if self.publisher:
            await self.publisher.publish_event(
                "booking.status_changed",
                {
                    "booking_id": booking_id,
                    "from": current.value,
                    "to": target.value,
                    "actor": actor,
                    "technician_id": booking.technician_id,
                },
            )

    async def claim_assignment(self, booking_id: str, technician_id: str, accepted: bool = True) -> bool:
        """
        Atomically give the booking to technician_id if nobody holds it and
        it is still pending/confirmed. Returns whether this caller won.
        """
        now = self.now()
        patch = {
            "status": BookingStatus.ASSIGNED.value,
            "technician_id": technician_id,
            "assigned_at": now,
            "updated_at": now,
        }
        if accepted:
            patch["technician_accepted_at"] = now
        return await self.gateway.conditional_update(
            Booking,
            booking_id,
            [Booking.technician_id.is_(None), Booking.status.in_(OPEN_STATUSES)],
            patch,
        )

    async def record_rejection(self, booking_id: str, reason: str | None) -> bool:
        now = self.now()
        return await self.gateway.conditional_update(
            Booking,
            booking_id,
            [Booking.technician_id.is_(None), Booking.status.in_(OPEN_STATUSES)],
            {"technician_rejected_at": now, "rejection_reason": reason, "updated_at": now},
        )

    async def open_dispatch_round(self, booking_id: str) -> bool:
        return await self.gateway.conditional_update(
            Booking,
            booking_id,
            [Booking.technician_id.is_(None), Booking.status.in_(OPEN_STATUSES)],
            {"dispatch_round": Booking.dispatch_round + 1, "updated_at": self.now()},
        )

    async def set_payment_status(self, booking_id: str, payment_status, actor: str) -> TransitionResult:
        payment_status = PaymentStatus(payment_status)
        booking = await self._load(booking_id)
        if booking.payment_status == payment_status.value:
            return TransitionResult(booking_id, BookingStatus(booking.status), booking.version, no_change=True)

        ok = await self.gateway.conditional_update(
            Booking,
            booking_id,
            booking.version,
            {"payment_status": payment_status.value, "updated_at": self.now()},
        )
        if not ok:
            raise ConcurrencyConflict(f"Booking {booking_id} changed concurrently; re-read and retry")

        logger.info("booking %s payment %s -> %s by %s", booking_id, booking.payment_status, payment_status.value, actor)
        await self.notifications.emit(
            Scope.admin(),
            NotificationType.PAYMENT,
            booking_id,
            f"Payment for booking {booking_id} is now {payment_status.value}.",
            is_important=payment_status == PaymentStatus.FAILED,
        )
        return TransitionResult(booking_id, BookingStatus(booking.status), booking.version + 1)
