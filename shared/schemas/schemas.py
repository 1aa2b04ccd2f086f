"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the engine.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from shared.models.models import (
    AttributionStatus,
    Channel,
    NotificationStatus,
    RecipientClass,
    ReminderStatus,
    TriggerType,
)


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


# ── Attribution ───────────────────────────────────────────────

class AttributionOutcome(str, Enum):
    BROADCAST = "BROADCAST"
    NO_CANDIDATES = "NO_CANDIDATES"          # matching ran, nobody in range; attribution stays PENDING
    ALREADY_FINALIZED = "ALREADY_FINALIZED"  # booking already has an accepted/cancelled attribution


class ResponseOutcome(str, Enum):
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    SUPERSEDED = "SUPERSEDED"    # accept arrived after another professional won
    IGNORED = "IGNORED"          # attribution expired or cancelled before the response


class AttributionBookingData(BaseSchema):
    """Optional overrides for the redacted booking view sent to professionals."""
    client_first_name: Optional[str] = Field(None, max_length=100)
    client_last_name: Optional[str] = Field(None, max_length=100)
    address: Optional[str] = Field(None, max_length=255)
    city: Optional[str] = Field(None, max_length=100)
    service_date: Optional[datetime] = None
    total_amount: Optional[Decimal] = Field(None, ge=0)
    description: Optional[str] = None


class AttributionStartRequest(BaseSchema):
    booking_id: uuid.UUID
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    service_type: str = Field(..., min_length=1, max_length=100)
    max_distance_km: Optional[float] = Field(None, gt=0, le=1000)
    limit: Optional[int] = Field(None, ge=1, le=500)
    booking_data: Optional[AttributionBookingData] = None


class StartAttributionResult(BaseSchema):
    attribution_id: uuid.UUID
    status: AttributionStatus
    eligible_count: int
    notified_count: int = 0
    outcome: AttributionOutcome


class ProfessionalResponseRequest(BaseSchema):
    token: str = Field(..., min_length=10)
    accepted: bool


class ProfessionalResponseResult(BaseSchema):
    attribution_id: uuid.UUID
    professional_id: uuid.UUID
    accepted: bool
    outcome: ResponseOutcome
    status: AttributionStatus


class EligibilityResponse(BaseSchema):
    professional_id: uuid.UUID
    is_eligible: bool
    distance_km: float
    notified: bool
    responded: bool
    responded_at: Optional[datetime] = None


class AttributionStatusResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    status: AttributionStatus
    service_type: str
    max_distance_km: float
    accepted_professional_id: Optional[uuid.UUID] = None
    broadcast_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    eligibilities: List[EligibilityResponse] = []


# ── Booking Triggers ──────────────────────────────────────────

class TriggerOptions(BaseSchema):
    notify_staff: bool = True
    schedule_reminders: bool = True
    start_attribution: bool = False       # chain a broadcast from the booking's own location
    max_distance_km: Optional[float] = Field(None, gt=0, le=1000)


class DispatchSummary(BaseSchema):
    notification_id: uuid.UUID
    recipient_class: RecipientClass
    channel: Channel
    recipient: str                        # masked
    outcome: str                          # SENT | FAILED | ALREADY_EXISTS


class TriggerResult(BaseSchema):
    booking_id: uuid.UUID
    trigger: TriggerType
    dispatches: List[DispatchSummary]
    reminders_created: int = 0
    attribution: Optional[StartAttributionResult] = None


# ── Notifications ─────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    booking_id: Optional[uuid.UUID]
    scope_id: str
    channel: Channel
    purpose: str
    recipient_class: RecipientClass
    recipient_address: str
    template_id: str
    status: NotificationStatus
    provider_ref: Optional[str]
    error: Optional[str]
    meta: Dict[str, Any]
    created_at: datetime
    sent_at: Optional[datetime]


class ReminderResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    attribution_id: Optional[uuid.UUID]
    professional_id: Optional[uuid.UUID]
    reminder_type: str
    scheduled_date: datetime
    status: ReminderStatus
