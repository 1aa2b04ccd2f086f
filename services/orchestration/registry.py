"""
services/orchestration/registry.py
Read-only lookups of upstream data (bookings, professionals, staff).

Fetched on every invocation, never cached: the engine's correctness must
not depend on how fresh a process-wide copy of the staff list is.
"""

import uuid
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from shared.models.models import Booking, InternalStaff, Professional, TriggerType
from shared.utils.errors import NotFoundError


class SqlRegistry:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_booking(self, booking_id: uuid.UUID) -> Booking:
        booking = await self.db.scalar(
            select(Booking)
            .options(joinedload(Booking.customer))
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        if not booking:
            raise NotFoundError("Booking not found", booking_id=booking_id)
        return booking

    async def get_professional(self, professional_id: uuid.UUID) -> Professional:
        professional = await self.db.get(Professional, professional_id)
        if not professional:
            raise NotFoundError("Professional not found", professional_id=professional_id)
        return professional

    async def get_professionals(self, professional_ids: List[uuid.UUID]) -> List[Professional]:
        if not professional_ids:
            return []
        result = await self.db.execute(
            select(Professional).where(Professional.id.in_(professional_ids))
        )
        return list(result.scalars())

    async def find_professionals_by_service_type(self, service_type: str) -> List[Professional]:
        """
        Verified, available professionals offering `service_type`.
        The capability list is JSON, filtered here for portability.
        """
        result = await self.db.execute(
            select(Professional)
            .where(Professional.is_verified.is_(True), Professional.is_available.is_(True))
            .order_by(Professional.id)
        )
        return [p for p in result.scalars() if service_type in (p.service_types or [])]

    async def find_active_staff_for_trigger(self, trigger: TriggerType) -> List[InternalStaff]:
        result = await self.db.execute(
            select(InternalStaff)
            .where(InternalStaff.is_active.is_(True))
            .order_by(InternalStaff.id)
        )
        trigger_name = getattr(trigger, "value", trigger)
        return [s for s in result.scalars() if trigger_name in (s.subscribed_triggers or [])]

    async def set_booking_professional(
        self, booking_id: uuid.UUID, professional_id: Optional[uuid.UUID]
    ) -> None:
        booking = await self.get_booking(booking_id)
        booking.professional_id = professional_id
        await self.db.flush()
