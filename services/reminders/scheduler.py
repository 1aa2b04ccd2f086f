"""
services/reminders/scheduler.py
Persists future-dated reminders (7D / 24H / 1H before the service).

Only offsets still in the future are written; one row per
(booking, recipient, reminder type) via uq_reminder_slot. Rows are
consumed by an external time-driven dispatcher through list_due / mark_sent.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import insert_ignoring_conflicts
from config.settings import settings
from shared.models.models import (
    Booking,
    ReminderStatus,
    ScheduledReminder,
    utcnow,
)
from shared.utils.errors import NotFoundError

logger = logging.getLogger(__name__)

CUSTOMER_RECIPIENT_KEY = "customer"


def as_utc(value: datetime) -> datetime:
    """Naive datetimes (SQLite round-trips) are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_reminder_times(
    scheduled_at: datetime,
    now: datetime,
    offsets_hours: Optional[dict[str, int]] = None,
) -> List[tuple[str, datetime]]:
    """(reminder_type, fire_at) for every offset whose fire time is still ahead of `now`."""
    offsets = offsets_hours or settings.REMINDER_OFFSETS_HOURS
    scheduled_at, now = as_utc(scheduled_at), as_utc(now)

    due = []
    for reminder_type, hours in sorted(offsets.items(), key=lambda item: -item[1]):
        fire_at = scheduled_at - timedelta(hours=hours)
        if fire_at <= now:
            logger.debug(f"Reminder {reminder_type} for {scheduled_at.isoformat()} already elapsed, skipped")
            continue
        due.append((reminder_type, fire_at))
    return due


class ReminderScheduler:

    def __init__(self, offsets_hours: Optional[dict[str, int]] = None):
        self.offsets_hours = offsets_hours or dict(settings.REMINDER_OFFSETS_HOURS)

    async def schedule_customer_reminders(
        self, db: AsyncSession, booking: Booking, now: Optional[datetime] = None
    ) -> int:
        """Customer variant: no attribution, no professional. Returns rows created."""
        return await self._schedule(
            db,
            booking,
            recipient_key=CUSTOMER_RECIPIENT_KEY,
            attribution_id=None,
            professional_id=None,
            now=now,
        )

    async def schedule_professional_reminders(
        self,
        db: AsyncSession,
        booking: Booking,
        attribution_id: uuid.UUID,
        professional_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> int:
        """Professional variant, only once an attribution was accepted."""
        return await self._schedule(
            db,
            booking,
            recipient_key=f"professional:{professional_id}",
            attribution_id=attribution_id,
            professional_id=professional_id,
            now=now,
        )

    async def _schedule(
        self,
        db: AsyncSession,
        booking: Booking,
        recipient_key: str,
        attribution_id: Optional[uuid.UUID],
        professional_id: Optional[uuid.UUID],
        now: Optional[datetime],
    ) -> int:
        now = now or utcnow()
        times = compute_reminder_times(booking.scheduled_at, now, self.offsets_hours)
        if not times:
            logger.info(f"No future reminder slots for booking {booking.id} ({recipient_key})")
            return 0

        created = 0
        for reminder_type, fire_at in times:
            new_id = await insert_ignoring_conflicts(
                db,
                ScheduledReminder,
                {
                    "id": uuid.uuid4(),
                    "booking_id": booking.id,
                    "attribution_id": attribution_id,
                    "professional_id": professional_id,
                    "recipient_key": recipient_key,
                    "reminder_type": reminder_type,
                    "scheduled_date": fire_at,
                    "status": ReminderStatus.PENDING,
                    "created_at": now,
                    "updated_at": now,
                },
                returning=ScheduledReminder.id,
            )
            if new_id is not None:
                created += 1

        logger.info(
            f"Reminders for booking {booking.id} ({recipient_key}): "
            f"{created} new of {len(times)} future slot(s)"
        )
        return created

    async def cancel_for_booking(self, db: AsyncSession, booking_id: uuid.UUID) -> int:
        return await self._cancel(db, ScheduledReminder.booking_id == booking_id)

    async def cancel_for_attribution(self, db: AsyncSession, attribution_id: uuid.UUID) -> int:
        return await self._cancel(db, ScheduledReminder.attribution_id == attribution_id)

    async def _cancel(self, db: AsyncSession, condition) -> int:
        result = await db.execute(
            update(ScheduledReminder)
            .where(condition, ScheduledReminder.status == ReminderStatus.PENDING)
            .values(status=ReminderStatus.CANCELLED, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return max(result.rowcount or 0, 0)

    async def list_due(
        self, db: AsyncSession, now: Optional[datetime] = None, limit: int = 100
    ) -> List[ScheduledReminder]:
        """PENDING reminders whose fire time has passed, oldest first."""
        result = await db.execute(
            select(ScheduledReminder)
            .where(
                ScheduledReminder.status == ReminderStatus.PENDING,
                ScheduledReminder.scheduled_date <= (now or utcnow()),
            )
            .order_by(ScheduledReminder.scheduled_date)
            .limit(limit)
        )
        return list(result.scalars())

    async def list_for_booking(self, db: AsyncSession, booking_id: uuid.UUID) -> List[ScheduledReminder]:
        result = await db.execute(
            select(ScheduledReminder)
            .where(ScheduledReminder.booking_id == booking_id)
            .order_by(ScheduledReminder.scheduled_date)
        )
        return list(result.scalars())

    async def mark_sent(self, db: AsyncSession, reminder_id: uuid.UUID) -> bool:
        """PENDING → SENT. False if it was already sent or cancelled."""
        result = await db.execute(
            update(ScheduledReminder)
            .where(
                ScheduledReminder.id == reminder_id,
                ScheduledReminder.status == ReminderStatus.PENDING,
            )
            .values(status=ReminderStatus.SENT, sent_at=utcnow(), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            exists = await db.scalar(select(ScheduledReminder.id).where(ScheduledReminder.id == reminder_id))
            if not exists:
                raise NotFoundError("Reminder not found", reminder_id=reminder_id)
            return False
        return True
