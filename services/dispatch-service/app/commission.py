import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from .clock import utcnow
from .config import DEFAULT_COMMISSION_RATE
from .errors import ConfigMissing, InvalidRate
from .models import PaymentStatus, PlatformSetting

logger = logging.getLogger(__name__)

COMMISSION_SETTING_KEY = "commission_rate"


@dataclass(frozen=True)
class CommissionSplit:
    price: int
    commission_rate: float
    technician_earnings: int
    platform_commission: int
    used_fallback: bool = False


@dataclass
class EarningsSummary:
    total_earnings: int = 0
    pending_earnings: int = 0
    paid_earnings: int = 0


def summarize_earnings(bookings) -> EarningsSummary:
    """Technician share of settled bookings, split by whether the payment cleared."""
    summary = EarningsSummary()
    for booking in bookings:
        earned = booking.technician_earnings or 0
        summary.total_earnings += earned
        if booking.payment_status == PaymentStatus.PAID.value:
            summary.paid_earnings += earned
        else:
            summary.pending_earnings += earned
    return summary

def _validate_rate(rate) -> Decimal:
    try:
        value = Decimal(str(rate))
    except (InvalidOperation, ValueError):
        raise InvalidRate(f"Commission rate must be a number, got {rate!r}")
    if not value.is_finite() or value < 0 or value > 100:
        raise InvalidRate(f"Commission rate must be within [0, 100], got {rate}")
    return value


def split(price: int, commission_rate_percent, used_fallback: bool = False) -> CommissionSplit:
    """
    Pure earnings split. The platform share is rounded half-up to the
    smallest currency unit and the technician gets the exact remainder,
    so technician_earnings + platform_commission == price always holds.
    """
    if isinstance(price, bool) or not isinstance(price, int):
        raise InvalidRate(f"Price must be an integer amount, got {price!r}")
    if price < 0:
        raise InvalidRate(f"Price must not be negative, got {price}")
    rate = _validate_rate(commission_rate_percent)

    platform_commission = int((Decimal(price) * rate / Decimal(100)).quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return CommissionSplit(
        price=price,
        commission_rate=float(rate),
        technician_earnings=price - platform_commission,
        platform_commission=platform_commission,
        used_fallback=used_fallback,
    )


class CommissionRateProvider:
    """Configuration collaborator backed by the platform_settings table."""

    def __init__(self, gateway):
        self.gateway = gateway

    async def get_commission_rate(self) -> float:
        row = await self.gateway.get(PlatformSetting, COMMISSION_SETTING_KEY)
        if row is None or row.value in (None, ""):
            raise ConfigMissing("Commission rate is not configured")
        try:
            return float(_validate_rate(row.value))
        except InvalidRate as e:
            raise ConfigMissing(f"Configured commission rate is unusable: {e.message}")

    async def set_commission_rate(self, rate) -> float:
        value = float(_validate_rate(rate))
        patch = {"value": str(value), "updated_at": utcnow()}
        updated = await self.gateway.update_where(
            PlatformSetting, PlatformSetting.key == COMMISSION_SETTING_KEY, patch=patch
        )
        if not updated:
            inserted = await self.gateway.insert(PlatformSetting(key=COMMISSION_SETTING_KEY, **patch))
            if not inserted:
                # lost an insert race with another writer; last write wins
                await self.gateway.update_where(
                    PlatformSetting, PlatformSetting.key == COMMISSION_SETTING_KEY, patch=patch
                )
        logger.info("commission rate set to %s%%", value)
        return value


class CommissionCalculator:
    def __init__(self, rate_provider: CommissionRateProvider, default_rate: float = DEFAULT_COMMISSION_RATE):
        self.rate_provider = rate_provider
        self.default_rate = default_rate

    async def current_rate(self) -> tuple[float, bool]:
        try:
            return await self.rate_provider.get_commission_rate(), False
        except ConfigMissing as e:
            logger.warning("%s; falling back to %s%%", e.message, self.default_rate)
            return self.default_rate, True

    async def split_price(self, price: int) -> CommissionSplit:
        rate, used_fallback = await self.current_rate()
        return split(price, rate, used_fallback=used_fallback)
