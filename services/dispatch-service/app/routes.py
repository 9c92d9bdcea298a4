from fastapi import APIRouter, Depends, Query

from .commission import summarize_earnings
from .container import Services, get_services
from .errors import InvalidTransition, NotFound
from .identity import Caller, caller_scope, get_caller, require_admin
from .models import Booking, BookingStatus, JobOffer, NotificationType
from .notifications import Scope
from .schemas import (
    AcceptOfferRequest,
    AcceptOfferResponse,
    AssignRequest,
    BookingResponse,
    CommissionRateRequest,
    CommissionRateResponse,
    CommissionSplitResponse,
    DispatchRequest,
    DispatchResponse,
    EarningsJobResponse,
    EarningsResponse,
    InboxOfferResponse,
    NotificationImportantResponse,
    NotificationPageResponse,
    NotificationReadAllResponse,
    NotificationResponse,
    OfferResponse,
    PaymentStatusRequest,
    RejectOfferRequest,
    RejectOfferResponse,
    StatusRequest,
    SweepResponse,
    TransitionResponse,
)

router = APIRouter()


def _transition_response(result) -> TransitionResponse:
    settlement = None
    if result.settlement is not None:
        settlement = CommissionSplitResponse(**vars(result.settlement))
    return TransitionResponse(
        booking_id=result.booking_id,
        status=result.status,
        version=result.version,
        no_change=result.no_change,
        settlement=settlement,
    )


# ---- dispatch / offers ----

@router.post("/dispatch", response_model=DispatchResponse)
async def dispatch_booking(
    data: DispatchRequest,
    services: Services = Depends(get_services),
    caller: Caller = Depends(require_admin),
):
    result = await services.dispatcher.dispatch(data.booking_id, fanout=data.fanout)
    return DispatchResponse(booking_id=result.booking_id, round=result.round, offer_ids=result.offer_ids)


@router.post("/offers/sweep", response_model=SweepResponse)
async def sweep_offers(services: Services = Depends(get_services), caller: Caller = Depends(require_admin)):
    report = await services.arbitrator.sweep_expired()
    return SweepResponse(**vars(report))


@router.post("/offers/{offer_id}/accept", response_model=AcceptOfferResponse)
async def accept_offer(
    offer_id: str,
    data: AcceptOfferRequest,
    services: Services = Depends(get_services),
    caller: Caller = Depends(get_caller),
):
    caller.ensure_acts_for(data.technician_id)
    result = await services.arbitrator.accept(offer_id, data.technician_id)
    return AcceptOfferResponse(**vars(result))


@router.post("/offers/{offer_id}/reject", response_model=RejectOfferResponse)
async def reject_offer(
    offer_id: str,
    data: RejectOfferRequest,
    services: Services = Depends(get_services),
    caller: Caller = Depends(get_caller),
):
    caller.ensure_acts_for(data.technician_id)
    result = await services.arbitrator.reject(offer_id, data.technician_id, data.reason)
    return RejectOfferResponse(**vars(result))


@router.get("/technicians/{technician_id}/offers", response_model=list[InboxOfferResponse])
async def technician_offers(
    technician_id: str,
    services: Services = Depends(get_services),
    caller: Caller = Depends(get_caller),
):
    caller.ensure_acts_for(technician_id)
    inbox = await services.arbitrator.inbox(technician_id)
    return [
        InboxOfferResponse(**OfferResponse.model_validate(offer).model_dump(), time_left_seconds=left)
        for offer, left in inbox
    ]


@router.get("/technicians/{technician_id}/earnings", response_model=EarningsResponse)
async def technician_earnings(
    technician_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    services: Services = Depends(get_services),
    caller: Caller = Depends(get_caller),
):
    caller.ensure_acts_for(technician_id)
    completed = await services.gateway.query(
        Booking,
        Booking.technician_id == technician_id,
        Booking.status == BookingStatus.COMPLETED.value,
        order_by=[Booking.completed_at.desc(), Booking.booking_id],
    )
    summary = summarize_earnings(completed)
    start = (page - 1) * limit
    return EarningsResponse(
        technician_id=technician_id,
        total_earnings=summary.total_earnings,
        pending_earnings=summary.pending_earnings,
        paid_earnings=summary.paid_earnings,
        completed_jobs=len(completed),
        jobs=[EarningsJobResponse.model_validate(b) for b in completed[start : start + limit]],
        page=page,
        limit=limit,
    )


@router.post("/technicians/{technician_id}/jobs/{booking_id}/complete", response_model=TransitionResponse)
async def complete_job(
    technician_id: str,
    booking_id: str,
    services: Services = Depends(get_services),
    caller: Caller = Depends(get_caller),
):
    caller.ensure_acts_for(technician_id)
    result = await services.state_machine.complete_for_technician(booking_id, technician_id)
    return _transition_response(result)

# ---- bookings ----

@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(booking_id: str, services: Services = Depends(get_services)):
    booking = await services.gateway.get(Booking, booking_id)
    if booking is None:
        raise NotFound(f"Booking {booking_id} not found")
    return BookingResponse.model_validate(booking)


@router.get("/bookings/{booking_id}/offers", response_model=list[OfferResponse])
async def booking_offers(booking_id: str, services: Services = Depends(get_services)):
    if await services.gateway.get(Booking, booking_id) is None:
        raise NotFound(f"Booking {booking_id} not found")
    offers = await services.gateway.query(
        JobOffer, JobOffer.booking_id == booking_id, order_by=[JobOffer.round, JobOffer.issued_at]
    )
    return [OfferResponse.model_validate(o) for o in offers]


@router.post("/bookings/{booking_id}/status", response_model=TransitionResponse)
async def change_status(
    booking_id: str,
    data: StatusRequest,
    services: Services = Depends(get_services),
    caller: Caller = Depends(require_admin),
):
    if data.target_status == BookingStatus.ASSIGNED:
        booking = await services.gateway.get(Booking, booking_id)
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found")
        # an already assigned booking falls through to the no-change answer
        if booking.status != BookingStatus.ASSIGNED.value:
            if not data.technician_id:
                raise InvalidTransition("Moving a booking to assigned requires a technician")
            await services.arbitrator.assign(booking_id, data.technician_id, data.actor)
            booking = await services.gateway.get(Booking, booking_id)
            return TransitionResponse(booking_id=booking_id, status=BookingStatus(booking.status), version=booking.version)

    result = await services.state_machine.request_transition(booking_id, data.target_status, data.actor)
    return _transition_response(result)


@router.post("/bookings/{booking_id}/assign", response_model=AcceptOfferResponse)
async def assign_booking(
    booking_id: str,
    data: AssignRequest,
    services: Services = Depends(get_services),
    caller: Caller = Depends(require_admin),
):
    result = await services.arbitrator.assign(booking_id, data.technician_id, data.actor)
    return AcceptOfferResponse(**vars(result))


@router.post("/bookings/{booking_id}/payment-status", response_model=TransitionResponse)
async def change_payment_status(
    booking_id: str,
    data: PaymentStatusRequest,
    services: Services = Depends(get_services),
    caller: Caller = Depends(require_admin),
):
    result = await services.state_machine.set_payment_status(booking_id, data.payment_status, data.actor)
    return _transition_response(result)


# ---- commission ----

@router.get("/commission/split", response_model=CommissionSplitResponse)
async def commission_split(price: int, services: Services = Depends(get_services)):
    result = await services.commission.split_price(price)
    return CommissionSplitResponse(**vars(result))


@router.get("/settings/commission", response_model=CommissionRateResponse)
async def get_commission_rate(services: Services = Depends(get_services)):
    rate, used_fallback = await services.commission.current_rate()
    return CommissionRateResponse(commission_rate=rate, used_fallback=used_fallback)


@router.put("/settings/commission", response_model=CommissionRateResponse)
async def set_commission_rate(
    data: CommissionRateRequest,
    services: Services = Depends(get_services),
    caller: Caller = Depends(require_admin),
):
    rate = await services.commission_rates.set_commission_rate(data.commission_rate)
    return CommissionRateResponse(commission_rate=rate)


# ---- notifications ----

@router.get("/notifications", response_model=NotificationPageResponse)
async def list_notifications(
    unread_only: bool = False,
    type: NotificationType | None = None,
    important_only: bool = False,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    scope: Scope = Depends(caller_scope),
    services: Services = Depends(get_services),
):
    result = await services.notifications.list(
        scope,
        unread_only=unread_only,
        type=type,
        important_only=important_only,
        page=page,
        limit=limit,
    )
    return NotificationPageResponse(
        items=[NotificationResponse.model_validate(n) for n in result.items],
        unread_count=result.unread_count,
        important_unread_count=result.important_unread_count,
        total=result.total,
        page=result.page,
        limit=result.limit,
        poll_interval_seconds=result.poll_interval_seconds,
    )


@router.post("/notifications/read-all", response_model=NotificationReadAllResponse)
async def read_all_notifications(scope: Scope = Depends(caller_scope), services: Services = Depends(get_services)):
    marked = await services.notifications.mark_all_read(scope)
    return NotificationReadAllResponse(marked_count=marked)


@router.post("/notifications/{notification_id}/read", status_code=204)
async def read_notification(
    notification_id: str,
    scope: Scope = Depends(caller_scope),
    services: Services = Depends(get_services),
):
    await services.notifications.mark_read(notification_id, scope)


@router.post("/notifications/{notification_id}/important", response_model=NotificationImportantResponse)
async def toggle_notification_important(
    notification_id: str,
    scope: Scope = Depends(caller_scope),
    services: Services = Depends(get_services),
):
    flag = await services.notifications.toggle_important(notification_id, scope)
    return NotificationImportantResponse(notification_id=notification_id, is_important=flag)
