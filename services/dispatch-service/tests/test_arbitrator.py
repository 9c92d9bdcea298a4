import asyncio

import pytest

from dispatch_service.errors import AlreadyAssigned, Forbidden, NotEligible, NotFound, OfferExpired
from dispatch_service.models import Booking, JobOffer, Notification


async def _offers_by_tech(services, booking_id="B1") -> dict:
    offers = await services.gateway.query(JobOffer, JobOffer.booking_id == booking_id)
    return {o.technician_id: o for o in offers}


async def _three_way_dispatch(services, seed):
    await seed.booking(price=1000)
    await seed.technician("T1", rating=4.8)
    await seed.technician("T2", rating=4.5)
    await seed.technician("T3", rating=4.2)
    await services.dispatcher.dispatch("B1", fanout=3)
    return await _offers_by_tech(services)


@pytest.mark.anyio
async def test_first_accept_wins_and_supersedes_the_rest(services, seed, publisher):
    offers = await _three_way_dispatch(services, seed)

    result = await services.arbitrator.accept(offers["T2"].offer_id, "T2")
    assert result.status == "assigned"
    assert result.duplicate is False

    booking = await seed.reload(Booking, "B1")
    assert booking.status == "assigned"
    assert booking.technician_id == "T2"
    assert booking.technician_accepted_at is not None
    assert booking.assigned_at is not None

    offers = await _offers_by_tech(services)
    assert offers["T2"].state == "accepted"
    assert offers["T1"].state == "superseded"
    assert offers["T3"].state == "superseded"

    taken = await services.gateway.query(
        Notification, Notification.scope == "technician", Notification.title == "Job no longer available"
    )
    assert {n.technician_id for n in taken} == {"T1", "T3"}
    assert "offer.accepted" in publisher.types()
    assert "booking.assigned" in publisher.types()

    with pytest.raises(AlreadyAssigned):
        await services.arbitrator.accept(offers["T1"].offer_id, "T1")


@pytest.mark.anyio
async def test_concurrent_accepts_have_a_single_winner(services, seed):
    await seed.booking()
    for i in range(5):
        await seed.technician(f"T{i}", rating=4.0 + i / 10)
    await services.dispatcher.dispatch("B1", fanout=5)
    offers = await _offers_by_tech(services)

    outcomes = await asyncio.gather(
        *(services.arbitrator.accept(o.offer_id, tech) for tech, o in offers.items()),
        return_exceptions=True,
    )

    winners = [o for o in outcomes if not isinstance(o, Exception)]
    losers = [o for o in outcomes if isinstance(o, Exception)]
    assert len(winners) == 1
    assert len(losers) == 4
    assert all(isinstance(e, AlreadyAssigned) for e in losers)

    booking = await seed.reload(Booking, "B1")
    assert booking.technician_id == winners[0].technician_id

    states = sorted(o.state for o in (await _offers_by_tech(services)).values())
    assert states == ["accepted", "superseded", "superseded", "superseded", "superseded"]


@pytest.mark.anyio
async def test_duplicate_accept_delivery_is_idempotent(services, seed, publisher):
    await seed.booking()
    await seed.technician("T1")
    result = await services.dispatcher.dispatch("B1")
    offer_id = result.offer_ids[0]

    first = await services.arbitrator.accept(offer_id, "T1")
    second = await services.arbitrator.accept(offer_id, "T1")
    assert first.duplicate is False
    assert second.duplicate is True
    assert second.status == "assigned"
    assert publisher.types().count("booking.assigned") == 1


@pytest.mark.anyio
async def test_accept_checks_ownership(services, seed):
    await seed.booking()
    await seed.technician("T1")
    result = await services.dispatcher.dispatch("B1")

    with pytest.raises(Forbidden):
        await services.arbitrator.accept(result.offer_ids[0], "T2")
    with pytest.raises(NotFound):
        await services.arbitrator.accept("missing", "T1")


@pytest.mark.anyio
async def test_lapsed_offer_cannot_be_accepted_before_any_sweep(services, seed, clock):
    await seed.booking()
    await seed.technician("T1")
    result = await services.dispatcher.dispatch("B1")

    clock.advance(31)
    with pytest.raises(OfferExpired):
        await services.arbitrator.accept(result.offer_ids[0], "T1")

    offer = await seed.reload(JobOffer, result.offer_ids[0])
    assert offer.state == "pending"
    booking = await seed.reload(Booking, "B1")
    assert booking.technician_id is None
    assert booking.status == "pending"


@pytest.mark.anyio
async def test_offer_is_still_valid_at_its_expiry_instant(services, seed, clock):
    await seed.booking()
    await seed.technician("T1")
    result = await services.dispatcher.dispatch("B1")

    clock.advance(30)
    accepted = await services.arbitrator.accept(result.offer_ids[0], "T1")
    assert accepted.technician_id == "T1"


@pytest.mark.anyio
async def test_accept_after_cancellation_voids_the_offer(services, seed):
    await seed.booking()
    await seed.technician("T1", rating=4.8)
    await seed.technician("T2", rating=4.5)
    await services.dispatcher.dispatch("B1", fanout=2)
    offers = await _offers_by_tech(services)

    await services.state_machine.request_transition("B1", "cancelled", "customer")

    with pytest.raises(OfferExpired):
        await services.arbitrator.accept(offers["T1"].offer_id, "T1")
    with pytest.raises(OfferExpired):
        await services.arbitrator.reject(offers["T2"].offer_id, "T2", "busy")

    offers = await _offers_by_tech(services)
    assert offers["T1"].state == "superseded"
    assert offers["T2"].state == "superseded"
    booking = await seed.reload(Booking, "B1")
    assert booking.status == "cancelled"
    assert booking.technician_id is None


@pytest.mark.anyio
async def test_reject_records_reason_and_redispatches_elsewhere(services, seed, publisher):
    await seed.booking()
    await seed.technician("T1", rating=4.8)
    await seed.technician("T2", rating=4.5)
    first = await services.dispatcher.dispatch("B1")

    result = await services.arbitrator.reject(first.offer_ids[0], "T1", "Too far")
    assert result.redispatched is True

    offers = await _offers_by_tech(services)
    assert offers["T1"].state == "rejected"
    assert offers["T1"].rejection_reason == "Too far"
    assert offers["T2"].state == "pending"
    assert offers["T2"].offer_id == result.offer_ids[0]

    booking = await seed.reload(Booking, "B1")
    assert booking.rejection_reason == "Too far"
    assert booking.technician_rejected_at is not None
    assert booking.dispatch_round == 2
    assert "offer.rejected" in publisher.types()


@pytest.mark.anyio
async def test_reject_without_reason_and_nobody_left(services, seed):
    await seed.booking()
    await seed.technician("T1")
    first = await services.dispatcher.dispatch("B1")

    result = await services.arbitrator.reject(first.offer_ids[0], "T1", "  ")
    assert result.redispatched is False
    assert (await seed.reload(JobOffer, first.offer_ids[0])).rejection_reason == "No reason provided"

    alerts = await services.gateway.query(
        Notification, Notification.scope == "admin", Notification.is_important.is_(True)
    )
    assert len(alerts) == 1
    assert alerts[0].title == "Manual assignment needed"

    with pytest.raises(OfferExpired):
        await services.arbitrator.reject(first.offer_ids[0], "T1", "again")


@pytest.mark.anyio
async def test_technician_is_never_offered_the_same_booking_twice(services, seed, clock):
    await seed.booking()
    await seed.technician("T1", rating=4.8)
    await seed.technician("T2", rating=4.5)
    first = await services.dispatcher.dispatch("B1")

    await services.arbitrator.reject(first.offer_ids[0], "T1", "no")
    clock.advance(31)
    report = await services.arbitrator.sweep_expired()
    assert report.expired == 1
    assert report.escalated == ["B1"]

    offers = await services.gateway.query(JobOffer, JobOffer.booking_id == "B1")
    assert sorted(o.technician_id for o in offers) == ["T1", "T2"]


@pytest.mark.anyio
async def test_sweep_expires_and_redispatches(services, seed, clock, publisher):
    await seed.booking()
    await seed.technician("T1", rating=4.8)
    await seed.technician("T2", rating=4.5)
    await services.dispatcher.dispatch("B1")

    clock.advance(10)
    report = await services.arbitrator.sweep_expired()
    assert report.expired == 0
    assert report.redispatched == []

    clock.advance(21)
    report = await services.arbitrator.sweep_expired()
    assert report.expired == 1
    assert report.redispatched == ["B1"]

    offers = await _offers_by_tech(services)
    assert offers["T1"].state == "expired"
    assert offers["T2"].state == "pending"
    assert offers["T2"].round == 2
    assert "offer.expired" in publisher.types()


@pytest.mark.anyio
async def test_sweep_gives_up_after_bounded_rounds(services, seed, clock):
    await seed.booking()
    for i, rating in enumerate([4.9, 4.8, 4.7, 4.6], start=1):
        await seed.technician(f"T{i}", rating=rating)
    await services.dispatcher.dispatch("B1")

    for _ in range(2):
        clock.advance(31)
        report = await services.arbitrator.sweep_expired()
        assert report.redispatched == ["B1"]

    clock.advance(31)
    report = await services.arbitrator.sweep_expired()
    assert report.redispatched == []
    assert report.escalated == ["B1"]

    booking = await seed.reload(Booking, "B1")
    assert booking.dispatch_round == 3
    assert booking.technician_id is None
    offered = {o.technician_id for o in await services.gateway.query(JobOffer)}
    assert offered == {"T1", "T2", "T3"}

    alerts = await services.gateway.query(Notification, Notification.title == "Manual assignment needed")
    assert len(alerts) == 1


@pytest.mark.anyio
async def test_sweep_voids_offers_of_closed_bookings(services, seed, clock):
    await seed.booking()
    await seed.technician("T1", rating=4.8)
    await seed.technician("T2", rating=4.5)
    await services.dispatcher.dispatch("B1", fanout=2)
    await services.state_machine.request_transition("B1", "cancelled", "customer")

    clock.advance(31)
    report = await services.arbitrator.sweep_expired()
    assert report.voided == 2
    assert report.expired == 0
    assert report.redispatched == []

    states = {o.state for o in await services.gateway.query(JobOffer)}
    assert states == {"superseded"}


@pytest.mark.anyio
async def test_admin_assignment_uses_the_same_single_winner_write(services, seed):
    await seed.booking()
    await seed.technician("T1", rating=4.8)
    await seed.technician("T2", rating=4.5)
    await seed.technician("T3", status="inactive")
    await services.dispatcher.dispatch("B1")

    with pytest.raises(NotEligible):
        await services.arbitrator.assign("B1", "T3", "admin")

    result = await services.arbitrator.assign("B1", "T2", "admin")
    assert result.technician_id == "T2"

    booking = await seed.reload(Booking, "B1")
    assert booking.technician_id == "T2"
    assert booking.technician_accepted_at is None

    offers = await _offers_by_tech(services)
    assert offers["T1"].state == "superseded"

    again = await services.arbitrator.assign("B1", "T2", "admin")
    assert again.duplicate is True
    with pytest.raises(AlreadyAssigned):
        await services.arbitrator.assign("B1", "T1", "admin")
    with pytest.raises(AlreadyAssigned):
        await services.arbitrator.accept(offers["T1"].offer_id, "T1")


@pytest.mark.anyio
async def test_inbox_lists_live_offers_with_time_left(services, seed, clock):
    await seed.booking()
    await seed.technician("T1")
    await services.dispatcher.dispatch("B1")

    clock.advance(12)
    inbox = await services.arbitrator.inbox("T1")
    assert len(inbox) == 1
    assert inbox[0][1] == 18

    clock.advance(20)
    assert await services.arbitrator.inbox("T1") == []


@pytest.mark.anyio
async def test_reject_waits_for_live_sibling_offers(services, seed):
    offers = await _three_way_dispatch(services, seed)
    await seed.technician("T4", rating=3.9)

    for tech in ("T1", "T2"):
        result = await services.arbitrator.reject(offers[tech].offer_id, tech, "busy")
        assert result.redispatched is False
        assert result.offer_ids == []
    assert (await seed.reload(Booking, "B1")).dispatch_round == 1

    result = await services.arbitrator.reject(offers["T3"].offer_id, "T3", "busy")
    assert result.redispatched is True
    assert (await _offers_by_tech(services))["T4"].offer_id == result.offer_ids[0]
    assert (await seed.reload(Booking, "B1")).dispatch_round == 2
