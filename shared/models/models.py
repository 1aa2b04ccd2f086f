"""
shared/models/models.py
All SQLAlchemy ORM models for the attribution & notification engine.

customers / bookings / professionals / internal_staff are owned upstream
and only read here. The remaining tables are written by the engine and
carry the uniqueness constraints that make every entrypoint replay-safe.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enumerations ──────────────────────────────────────────────

class BookingStatus(str, PyEnum):
    DRAFT = "DRAFT"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    ARCHIVED = "ARCHIVED"


class TriggerType(str, PyEnum):
    """Booking lifecycle events that start notification orchestration."""
    BOOKING_CONFIRMED = "BOOKING_CONFIRMED"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    SERVICE_STARTED = "SERVICE_STARTED"


class AttributionStatus(str, PyEnum):
    PENDING = "PENDING"
    BROADCASTING = "BROADCASTING"
    ACCEPTED = "ACCEPTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class Channel(str, PyEnum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    WHATSAPP = "WHATSAPP"


class NotificationStatus(str, PyEnum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class RecipientClass(str, PyEnum):
    CUSTOMER = "CUSTOMER"
    STAFF = "STAFF"
    PROFESSIONAL = "PROFESSIONAL"


class DocumentType(str, PyEnum):
    QUOTE = "QUOTE"
    CONTRACT = "CONTRACT"
    INVOICE = "INVOICE"
    PAYMENT_RECEIPT = "PAYMENT_RECEIPT"
    BOOKING_CONFIRMATION = "BOOKING_CONFIRMATION"
    CANCELLATION_NOTICE = "CANCELLATION_NOTICE"
    MISSION_PROPOSAL = "MISSION_PROPOSAL"


class ReminderStatus(str, PyEnum):
    PENDING = "PENDING"
    SENT = "SENT"
    CANCELLED = "CANCELLED"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


# ── Upstream (read-only) ──────────────────────────────────────

class Customer(TimestampMixin, Base):
    __tablename__ = "customers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    bookings: Mapped[List["Booking"]] = relationship(back_populates="customer")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Booking(TimestampMixin, Base):
    """
    Paid service booking. Created by the checkout flow; the engine only
    writes professional_id once an attribution is accepted.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    reference: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("customers.id"), nullable=False
    )
    professional_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("professionals.id"), nullable=True
    )
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus), nullable=False, default=BookingStatus.DRAFT
    )
    service_type: Mapped[str] = mapped_column(String(100), nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Location
    address: Mapped[str] = mapped_column(String(255), nullable=False)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    postal_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="EUR", nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    customer: Mapped["Customer"] = relationship(back_populates="bookings", lazy="joined")

    __table_args__ = (
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_scheduled_at", "scheduled_at"),
    )


class Professional(TimestampMixin, Base):
    """External service professional. Email is mandatory, phone optional."""
    __tablename__ = "professionals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    company_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    service_types: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    max_distance_km: Mapped[Optional[float]] = mapped_column(Float, nullable=True)  # own service radius

    __table_args__ = (
        Index("ix_professionals_verified_available", "is_verified", "is_available"),
    )

    @property
    def display_name(self) -> str:
        return self.company_name or f"{self.first_name} {self.last_name}".strip()


class InternalStaff(TimestampMixin, Base):
    """Back-office member; receives only the triggers listed in subscribed_triggers."""
    __tablename__ = "internal_staff"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    department: Mapped[str] = mapped_column(String(50), nullable=False)  # "accounting", "operations"
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    subscribed_triggers: Mapped[List[str]] = mapped_column(JSONType, default=list, nullable=False)


# ── Engine-owned ──────────────────────────────────────────────

class Attribution(TimestampMixin, Base):
    """
    One matching/broadcast round for a booking.
    PENDING → BROADCASTING → ACCEPTED | EXPIRED | CANCELLED
    """
    __tablename__ = "attributions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("bookings.id"), nullable=False
    )
    status: Mapped[AttributionStatus] = mapped_column(
        Enum(AttributionStatus), nullable=False, default=AttributionStatus.PENDING
    )
    service_type: Mapped[str] = mapped_column(String(100), nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    max_distance_km: Mapped[float] = mapped_column(Float, nullable=False)
    booking_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    accepted_professional_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("professionals.id"), nullable=True
    )
    broadcast_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    eligibilities: Mapped[List["Eligibility"]] = relationship(back_populates="attribution")

    __table_args__ = (
        # At most one non-terminal attribution per booking
        Index(
            "uq_attributions_active_booking",
            "booking_id",
            unique=True,
            postgresql_where=text("status IN ('PENDING', 'BROADCASTING')"),
            sqlite_where=text("status IN ('PENDING', 'BROADCASTING')"),
        ),
        Index("ix_attributions_booking_id", "booking_id"),
        Index("ix_attributions_status", "status"),
    )


TERMINAL_ATTRIBUTION_STATUSES = frozenset({
    AttributionStatus.ACCEPTED,
    AttributionStatus.EXPIRED,
    AttributionStatus.CANCELLED,
})


class Eligibility(Base):
    """A professional's candidacy for one attribution. Only the flags ever change."""
    __tablename__ = "attribution_eligibilities"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    attribution_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("attributions.id", ondelete="CASCADE"), nullable=False
    )
    professional_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("professionals.id"), nullable=False
    )
    is_eligible: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    distance_km: Mapped[float] = mapped_column(Float, nullable=False)
    notified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    responded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    responded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    attribution: Mapped["Attribution"] = relationship(back_populates="eligibilities")

    __table_args__ = (
        UniqueConstraint("attribution_id", "professional_id", name="uq_eligibility_pair"),
    )


class AttributionResponse(Base):
    """Accept/decline decision. One row per pair; a later decision overwrites the earlier one."""
    __tablename__ = "attribution_responses"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    attribution_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("attributions.id", ondelete="CASCADE"), nullable=False
    )
    professional_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("professionals.id"), nullable=False
    )
    accepted: Mapped[bool] = mapped_column(Boolean, nullable=False)
    responded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("attribution_id", "professional_id", name="uq_attribution_response_pair"),
    )


class Notification(TimestampMixin, Base):
    """
    One outbound message on one channel. Exactly one row per dedup key
    (scope_id, recipient_key, channel, purpose); status is the only
    field mutated after creation.
    """
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Dedup key
    scope_id: Mapped[str] = mapped_column(String(64), nullable=False)         # booking or attribution id
    recipient_key: Mapped[str] = mapped_column(String(255), nullable=False)
    channel: Mapped[Channel] = mapped_column(Enum(Channel), nullable=False)
    purpose: Mapped[str] = mapped_column(String(100), nullable=False)

    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("bookings.id"), nullable=True
    )
    recipient_class: Mapped[RecipientClass] = mapped_column(Enum(RecipientClass), nullable=False)
    recipient_address: Mapped[str] = mapped_column(String(255), nullable=False)  # email or phone
    template_id: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[NotificationStatus] = mapped_column(
        Enum(NotificationStatus), nullable=False, default=NotificationStatus.PENDING
    )
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    meta: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    provider_ref: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "scope_id", "recipient_key", "channel", "purpose", name="uq_notification_dedup_key"
        ),
        Index("ix_notifications_booking_id", "booking_id"),
        Index("ix_notifications_status_created", "status", "created_at"),
    )


class ScheduledReminder(TimestampMixin, Base):
    """
    Future-dated reminder consumed by an external time-driven dispatcher.
    recipient_key is "customer" or "professional:<id>".
    """
    __tablename__ = "scheduled_reminders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("bookings.id"), nullable=False
    )
    attribution_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("attributions.id"), nullable=True
    )
    professional_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("professionals.id"), nullable=True
    )
    recipient_key: Mapped[str] = mapped_column(String(64), nullable=False)
    reminder_type: Mapped[str] = mapped_column(String(10), nullable=False)  # "7D", "24H", "1H"
    scheduled_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[ReminderStatus] = mapped_column(
        Enum(ReminderStatus), nullable=False, default=ReminderStatus.PENDING
    )
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("booking_id", "recipient_key", "reminder_type", name="uq_reminder_slot"),
        CheckConstraint(
            "professional_id IS NULL OR attribution_id IS NOT NULL",
            name="ck_reminder_professional_has_attribution",
        ),
        Index("ix_reminders_status_scheduled", "status", "scheduled_date"),
    )


class ProfessionalBlacklist(TimestampMixin, Base):
    """
    Refusal streak per (professional, service type). Crossing the refusal
    threshold blacklists the professional for that service type until
    blacklist_expires_at; an accept clears the streak.
    """
    __tablename__ = "professional_blacklist"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    professional_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("professionals.id"), nullable=False
    )
    service_type: Mapped[str] = mapped_column(String(100), nullable=False)
    consecutive_refusals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_refusals: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_refusal_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    # A refusal counts once per attribution
    last_attribution_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)
    is_blacklisted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    blacklisted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    blacklist_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("professional_id", "service_type", name="uq_blacklist_professional_service"),
        Index("ix_blacklist_service_active", "service_type", "is_blacklisted"),
    )
