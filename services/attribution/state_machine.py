"""
services/attribution/state_machine.py
Lifecycle of one attribution (one broadcast round for one booking).

States: PENDING → BROADCASTING → ACCEPTED | EXPIRED | CANCELLED
        PENDING → EXPIRED | CANCELLED   (no candidates ever found / booking cancelled)

Every transition is a compare-and-set UPDATE on the current status, so two
workers racing on the same attribution cannot both win. Terminal
attributions raise AttributionFinalizedError instead of being mutated.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import insert_ignoring_conflicts
from shared.models.models import (
    TERMINAL_ATTRIBUTION_STATUSES,
    Attribution,
    AttributionStatus,
    utcnow,
)
from shared.utils.errors import AttributionFinalizedError, NotFoundError, StateConflictError

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (AttributionStatus.PENDING, AttributionStatus.BROADCASTING)

ALLOWED_TRANSITIONS: dict[AttributionStatus, frozenset[AttributionStatus]] = {
    AttributionStatus.PENDING: frozenset({
        AttributionStatus.BROADCASTING,
        AttributionStatus.EXPIRED,
        AttributionStatus.CANCELLED,
    }),
    AttributionStatus.BROADCASTING: frozenset({
        AttributionStatus.ACCEPTED,
        AttributionStatus.EXPIRED,
        AttributionStatus.CANCELLED,
    }),
}

# A concurrent writer can move the row between our read and our CAS;
# re-read and re-validate a bounded number of times.
_MAX_CAS_ATTEMPTS = 3


class AttributionStateMachine:

    async def get(self, db: AsyncSession, attribution_id: uuid.UUID) -> Attribution:
        attribution = await db.get(Attribution, attribution_id, populate_existing=True)
        if not attribution:
            raise NotFoundError("Attribution not found", attribution_id=attribution_id)
        return attribution

    async def get_active_for_booking(
        self, db: AsyncSession, booking_id: uuid.UUID
    ) -> Optional[Attribution]:
        return await db.scalar(
            select(Attribution)
            .where(Attribution.booking_id == booking_id, Attribution.status.in_(ACTIVE_STATUSES))
            .execution_options(populate_existing=True)
        )

    async def get_latest_for_booking(
        self, db: AsyncSession, booking_id: uuid.UUID
    ) -> Optional[Attribution]:
        return await db.scalar(
            select(Attribution)
            .where(Attribution.booking_id == booking_id)
            .order_by(Attribution.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )

    async def create_or_reuse(
        self,
        db: AsyncSession,
        booking_id: uuid.UUID,
        service_type: str,
        latitude: float,
        longitude: float,
        max_distance_km: float,
        booking_data: Optional[dict] = None,
    ) -> tuple[Attribution, bool]:
        """
        Return the booking's non-terminal attribution, creating a PENDING one
        if none exists. The partial unique index on booking_id decides races.
        Returns (attribution, created). Caller commits.
        """
        for _ in range(_MAX_CAS_ATTEMPTS):
            existing = await self.get_active_for_booking(db, booking_id)
            if existing:
                return existing, False

            now = utcnow()
            new_id = await insert_ignoring_conflicts(
                db,
                Attribution,
                {
                    "id": uuid.uuid4(),
                    "booking_id": booking_id,
                    "status": AttributionStatus.PENDING,
                    "service_type": service_type,
                    "latitude": latitude,
                    "longitude": longitude,
                    "max_distance_km": max_distance_km,
                    "booking_data": booking_data,
                    "created_at": now,
                    "updated_at": now,
                },
                returning=Attribution.id,
            )
            if new_id is not None:
                logger.info(f"Attribution {new_id} created for booking {booking_id}")
                return await self.get(db, new_id), True

            logger.info(f"Attribution for booking {booking_id} already exists, reusing")

        # Lost the insert race and the winner finalized before we could read it
        raise StateConflictError("Could not create or load an active attribution", booking_id=booking_id)

    async def transition(
        self,
        db: AsyncSession,
        attribution_id: uuid.UUID,
        to_status: AttributionStatus,
        **values,
    ) -> Attribution:
        """
        Move the attribution to `to_status`. Raises AttributionFinalizedError
        for terminal rows, StateConflictError for disallowed moves.
        Caller commits.
        """
        for _ in range(_MAX_CAS_ATTEMPTS):
            attribution = await self.get(db, attribution_id)
            current = AttributionStatus(attribution.status)

            if current in TERMINAL_ATTRIBUTION_STATUSES:
                raise AttributionFinalizedError(attribution_id, current)
            if current == to_status:
                # Replayed PENDING → BROADCASTING
                return attribution
            if to_status not in ALLOWED_TRANSITIONS[current]:
                raise StateConflictError(
                    "Transition not allowed",
                    attribution_id=attribution_id,
                    from_status=current.value,
                    to_status=to_status.value,
                )

            now = utcnow()
            stamps: dict[str, datetime] = {"updated_at": now}
            if to_status == AttributionStatus.BROADCASTING:
                stamps["broadcast_at"] = now
            if to_status in TERMINAL_ATTRIBUTION_STATUSES:
                stamps["finalized_at"] = now

            result = await db.execute(
                update(Attribution)
                .where(Attribution.id == attribution_id, Attribution.status == current)
                .values(status=to_status, **stamps, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                logger.info(
                    f"Attribution {attribution_id}: {current.value} → {to_status.value}"
                )
                return await self.get(db, attribution_id)

            logger.info(f"Attribution {attribution_id} changed concurrently, re-reading")

        raise StateConflictError("Attribution kept changing underneath transition", attribution_id=attribution_id)

    async def start_broadcast(self, db: AsyncSession, attribution_id: uuid.UUID) -> Attribution:
        """PENDING → BROADCASTING; already BROADCASTING is returned unchanged."""
        return await self.transition(db, attribution_id, AttributionStatus.BROADCASTING)

    async def accept(
        self, db: AsyncSession, attribution_id: uuid.UUID, professional_id: uuid.UUID
    ) -> Attribution:
        """First accept wins: BROADCASTING → ACCEPTED, recording the professional."""
        return await self.transition(
            db,
            attribution_id,
            AttributionStatus.ACCEPTED,
            accepted_professional_id=professional_id,
        )

    async def expire(self, db: AsyncSession, attribution_id: uuid.UUID) -> Attribution:
        return await self.transition(db, attribution_id, AttributionStatus.EXPIRED)

    async def cancel(self, db: AsyncSession, attribution_id: uuid.UUID) -> Attribution:
        return await self.transition(db, attribution_id, AttributionStatus.CANCELLED)

    async def find_stale_broadcasts(self, db: AsyncSession, older_than: datetime) -> list[uuid.UUID]:
        result = await db.execute(
            select(Attribution.id).where(
                Attribution.status == AttributionStatus.BROADCASTING,
                Attribution.broadcast_at < older_than,
            )
        )
        return list(result.scalars())
