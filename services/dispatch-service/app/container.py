from dataclasses import dataclass

from fastapi import Request

from .arbitrator import OfferArbitrator
from .clock import utcnow
from .commission import CommissionCalculator, CommissionRateProvider
from .config import (
    DEFAULT_COMMISSION_RATE,
    DISPATCH_FANOUT,
    MAX_DISPATCH_ROUNDS,
    OFFER_TTL_SECONDS,
    REDISPATCH_FANOUT,
    SWEEP_BATCH_SIZE,
)
from .dispatch import DispatchEngine
from .gateway import PersistenceGateway
from .notifications import NotificationCenter
from .state_machine import BookingStateMachine


@dataclass
class Services:
    gateway: PersistenceGateway
    notifications: NotificationCenter
    commission_rates: CommissionRateProvider
    commission: CommissionCalculator
    state_machine: BookingStateMachine
    dispatcher: DispatchEngine
    arbitrator: OfferArbitrator
    publisher: object = None


def build_services(
    session_factory,
    publisher=None,
    now=utcnow,
    *,
    offer_ttl_seconds: int = OFFER_TTL_SECONDS,
    fanout: int = DISPATCH_FANOUT,
    redispatch_fanout: int = REDISPATCH_FANOUT,
    max_dispatch_rounds: int = MAX_DISPATCH_ROUNDS,
    default_commission_rate: float = DEFAULT_COMMISSION_RATE,
    sweep_batch_size: int = SWEEP_BATCH_SIZE,
    gateway: PersistenceGateway | None = None,
) -> Services:
    gateway = gateway or PersistenceGateway(session_factory)
    notifications = NotificationCenter(gateway, now=now)
    rates = CommissionRateProvider(gateway)
    commission = CommissionCalculator(rates, default_rate=default_commission_rate)
    state_machine = BookingStateMachine(gateway, notifications, commission, publisher=publisher, now=now)
    dispatcher = DispatchEngine(
        gateway,
        state_machine,
        notifications,
        publisher=publisher,
        now=now,
        offer_ttl_seconds=offer_ttl_seconds,
        fanout=fanout,
        redispatch_fanout=redispatch_fanout,
    )
    arbitrator = OfferArbitrator(
        gateway,
        state_machine,
        dispatcher,
        notifications,
        publisher=publisher,
        now=now,
        max_dispatch_rounds=max_dispatch_rounds,
        sweep_batch_size=sweep_batch_size,
    )
    return Services(
        gateway=gateway,
        notifications=notifications,
        commission_rates=rates,
        commission=commission,
        state_machine=state_machine,
        dispatcher=dispatcher,
        arbitrator=arbitrator,
        publisher=publisher,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
