"""
services/booking/router.py
Booking lifecycle triggers raised by the upstream booking system.

POST /bookings/{id}/triggers/{trigger}
    BOOKING_CONFIRMED | PAYMENT_COMPLETED | BOOKING_CANCELLED | SERVICE_STARTED

Safe to call repeatedly: recipients already notified for this trigger come
back as ALREADY_EXISTS instead of being contacted again.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.orchestration.orchestrator import Orchestrator, get_orchestrator
from services.reminders.scheduler import ReminderScheduler
from shared.models.models import ReminderStatus, TriggerType
from shared.schemas.schemas import ReminderResponse, TriggerOptions, TriggerResult

router = APIRouter(prefix="/bookings", tags=["Bookings"])


@router.post("/{booking_id}/triggers/{trigger}", response_model=TriggerResult)
async def booking_trigger(
    booking_id: UUID,
    trigger: TriggerType,
    options: Optional[TriggerOptions] = Body(None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """
    Notify the customer and subscribed staff with the documents for this
    trigger, then schedule customer reminders (confirmation and payment only).
    """
    return await orchestrator.on_booking_trigger(booking_id, trigger, options)


@router.get("/{booking_id}/reminders", response_model=list[ReminderResponse])
async def booking_reminders(
    booking_id: UUID,
    pending_only: bool = Query(False),
    db: AsyncSession = Depends(get_db),
):
    reminders = await ReminderScheduler().list_for_booking(db, booking_id)
    if pending_only:
        reminders = [r for r in reminders if r.status == ReminderStatus.PENDING]
    return [ReminderResponse.model_validate(r) for r in reminders]
