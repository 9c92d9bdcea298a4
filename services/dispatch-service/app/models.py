from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Integer,
    String,
    UniqueConstraint,
)

from .db import Base


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class TechnicianStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class OfferState(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"


class NotificationScope(str, Enum):
    ADMIN = "admin"
    TECHNICIAN = "technician"


class NotificationType(str, Enum):
    BOOKING = "booking"
    PAYMENT = "payment"
    CANCELLATION = "cancellation"
    JOB_OFFER = "job_offer"


# statuses from which a booking may still receive a technician
OPEN_STATUSES = (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)


class Booking(Base):
    __tablename__ = "bookings"
    lookup_key = "booking_id"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, unique=True, nullable=False, index=True)

    service_type = Column(String, nullable=False, index=True)
    customer_email = Column(String, nullable=True)
    scheduled_date = Column(Date, nullable=True)
    scheduled_time = Column(String, nullable=True)  # "HH:MM"

    status = Column(String, nullable=False, index=True, default=BookingStatus.PENDING.value)
    payment_status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    price = Column(Integer, nullable=False)  # smallest currency unit

    technician_id = Column(String, nullable=True, index=True)
    assigned_at = Column(DateTime(timezone=True), nullable=True)
    technician_accepted_at = Column(DateTime(timezone=True), nullable=True)
    technician_rejected_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(String, nullable=True)

    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    technician_earnings = Column(Integer, nullable=True)
    platform_commission = Column(Integer, nullable=True)
    commission_rate = Column(Float, nullable=True)
    commission_fallback = Column(Boolean, nullable=True)

    dispatch_round = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)


class Technician(Base):
    __tablename__ = "technicians"
    lookup_key = "technician_id"

    id = Column(Integer, primary_key=True)
    technician_id = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)

    specializations = Column(JSON, nullable=False, default=list)
    status = Column(String, nullable=False, index=True, default=TechnicianStatus.ACTIVE.value)
    # {"monday": {"available": true, "start": "09:00", "end": "17:00"}, ...}
    availability = Column(JSON, nullable=False, default=dict)
    rating = Column(Float, nullable=False, default=0.0)
    completed_bookings = Column(Integer, nullable=False, default=0)


class JobOffer(Base):
    __tablename__ = "job_offers"
    __table_args__ = (
        UniqueConstraint("booking_id", "technician_id", name="uq_job_offers_booking_technician"),
    )
    lookup_key = "offer_id"

    id = Column(Integer, primary_key=True)
    offer_id = Column(String, unique=True, nullable=False, index=True)
    booking_id = Column(String, nullable=False, index=True)
    technician_id = Column(String, nullable=False, index=True)

    state = Column(String, nullable=False, index=True, default=OfferState.PENDING.value)
    round = Column(Integer, nullable=False, default=1)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(String, nullable=True)


class Notification(Base):
    __tablename__ = "notifications"
    lookup_key = "notification_id"

    id = Column(Integer, primary_key=True)
    notification_id = Column(String, unique=True, nullable=False, index=True)

    scope = Column(String, nullable=False, index=True)
    technician_id = Column(String, nullable=True, index=True)
    type = Column(String, nullable=False)
    reference_id = Column(String, nullable=True)

    title = Column(String, nullable=False)
    message = Column(String, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    is_important = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), nullable=False)
    read_at = Column(DateTime(timezone=True), nullable=True)


class PlatformSetting(Base):
    __tablename__ = "platform_settings"
    lookup_key = "key"

    id = Column(Integer, primary_key=True)
    key = Column(String, unique=True, nullable=False)
    value = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)
