from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from .models import BookingStatus, NotificationScope, NotificationType, OfferState, PaymentStatus


class DispatchRequest(BaseModel):
    booking_id: str
    fanout: int | None = Field(default=None, ge=1)


class DispatchResponse(BaseModel):
    booking_id: str
    round: int
    offer_ids: list[str] = Field(default_factory=list)


class AcceptOfferRequest(BaseModel):
    technician_id: str


class AcceptOfferResponse(BaseModel):
    offer_id: str | None = None
    booking_id: str
    technician_id: str
    status: BookingStatus
    duplicate: bool = False


class RejectOfferRequest(BaseModel):
    technician_id: str
    reason: str | None = None


class RejectOfferResponse(BaseModel):
    offer_id: str
    booking_id: str
    redispatched: bool = False
    offer_ids: list[str] = Field(default_factory=list)


class SweepResponse(BaseModel):
    expired: int = 0
    voided: int = 0
    redispatched: list[str] = Field(default_factory=list)
    escalated: list[str] = Field(default_factory=list)


class StatusRequest(BaseModel):
    target_status: BookingStatus
    actor: str = "admin"
    technician_id: str | None = None


class AssignRequest(BaseModel):
    technician_id: str
    actor: str = "admin"


class PaymentStatusRequest(BaseModel):
    payment_status: PaymentStatus
    actor: str = "admin"


class CommissionSplitResponse(BaseModel):
    price: int
    commission_rate: float
    technician_earnings: int
    platform_commission: int
    used_fallback: bool = False


class TransitionResponse(BaseModel):
    booking_id: str
    status: BookingStatus
    version: int
    no_change: bool = False
    settlement: CommissionSplitResponse | None = None


class CommissionRateRequest(BaseModel):
    commission_rate: float


class CommissionRateResponse(BaseModel):
    commission_rate: float
    used_fallback: bool = False


class BookingResponse(BaseModel):
    booking_id: str
    service_type: str
    customer_email: str | None = None
    scheduled_date: date | None = None
    scheduled_time: str | None = None
    status: BookingStatus
    payment_status: PaymentStatus
    price: int
    technician_id: str | None = None
    assigned_at: datetime | None = None
    technician_accepted_at: datetime | None = None
    technician_rejected_at: datetime | None = None
    rejection_reason: str | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    technician_earnings: int | None = None
    platform_commission: int | None = None
    commission_rate: float | None = None
    commission_fallback: bool | None = None
    dispatch_round: int = 0
    version: int
    model_config = ConfigDict(from_attributes=True)


class OfferResponse(BaseModel):
    offer_id: str
    booking_id: str
    technician_id: str
    state: OfferState
    round: int
    issued_at: datetime
    expires_at: datetime
    responded_at: datetime | None = None
    rejection_reason: str | None = None
    model_config = ConfigDict(from_attributes=True)


class InboxOfferResponse(OfferResponse):
    time_left_seconds: int = 0


class EarningsJobResponse(BaseModel):
    booking_id: str
    service_type: str
    price: int
    technician_earnings: int | None = None
    platform_commission: int | None = None
    commission_rate: float | None = None
    commission_fallback: bool | None = None
    payment_status: PaymentStatus
    completed_at: datetime | None = None
    model_config = ConfigDict(from_attributes=True)


class EarningsResponse(BaseModel):
    technician_id: str
    total_earnings: int = 0
    pending_earnings: int = 0
    paid_earnings: int = 0
    completed_jobs: int = 0
    jobs: list[EarningsJobResponse] = Field(default_factory=list)
    page: int = 1
    limit: int = 10


class NotificationResponse(BaseModel):
    notification_id: str
    scope: NotificationScope
    technician_id: str | None = None
    type: NotificationType
    reference_id: str | None = None
    title: str
    message: str
    is_read: bool = False
    is_important: bool = False
    created_at: datetime
    read_at: datetime | None = None
    model_config = ConfigDict(from_attributes=True)


class NotificationPageResponse(BaseModel):
    items: list[NotificationResponse] = Field(default_factory=list)
    unread_count: int = 0
    important_unread_count: int = 0
    total: int = 0
    page: int = 1
    limit: int = 10
    poll_interval_seconds: int


class NotificationReadAllResponse(BaseModel):
    marked_count: int


class NotificationImportantResponse(BaseModel):
    notification_id: str
    is_important: bool
