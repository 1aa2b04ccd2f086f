"""
services/attribution/blacklist.py
Refusal streaks and temporary blacklisting of professionals.

A professional who declines BLACKLIST_REFUSAL_THRESHOLD attributions in a
row for the same service type is excluded from matching for that service
type until the blacklist expires. Accepting an attribution clears the streak.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional, Set

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import insert_ignoring_conflicts
from config.settings import settings
from shared.models.models import ProfessionalBlacklist, utcnow

logger = logging.getLogger(__name__)


class RefusalBlacklist:

    def __init__(
        self,
        threshold: int = settings.BLACKLIST_REFUSAL_THRESHOLD,
        duration: timedelta = timedelta(hours=settings.BLACKLIST_DURATION_HOURS),
    ):
        self.threshold = threshold
        self.duration = duration

    async def record_refusal(
        self,
        db: AsyncSession,
        professional_id: uuid.UUID,
        service_type: str,
        attribution_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Count one refusal for this attribution (a repeated decline on the
        same attribution is not counted again). Returns True when this
        refusal put the professional on the blacklist. The caller commits.
        """
        now = now or utcnow()
        await insert_ignoring_conflicts(
            db,
            ProfessionalBlacklist,
            {
                "id": uuid.uuid4(),
                "professional_id": professional_id,
                "service_type": service_type,
                "consecutive_refusals": 0,
                "total_refusals": 0,
                "is_blacklisted": False,
                "created_at": now,
                "updated_at": now,
            },
        )
        counted = await db.execute(
            update(ProfessionalBlacklist)
            .where(
                ProfessionalBlacklist.professional_id == professional_id,
                ProfessionalBlacklist.service_type == service_type,
                or_(
                    ProfessionalBlacklist.last_attribution_id.is_(None),
                    ProfessionalBlacklist.last_attribution_id != attribution_id,
                ),
            )
            .values(
                consecutive_refusals=ProfessionalBlacklist.consecutive_refusals + 1,
                total_refusals=ProfessionalBlacklist.total_refusals + 1,
                last_refusal_at=now,
                last_attribution_id=attribution_id,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if counted.rowcount == 0:
            logger.info(
                f"Refusal from {professional_id} on attribution {attribution_id} already counted"
            )
            return False

        blacklisted = await db.execute(
            update(ProfessionalBlacklist)
            .where(
                ProfessionalBlacklist.professional_id == professional_id,
                ProfessionalBlacklist.service_type == service_type,
                ProfessionalBlacklist.consecutive_refusals >= self.threshold,
                ProfessionalBlacklist.is_blacklisted.is_(False),
            )
            .values(
                is_blacklisted=True,
                blacklisted_at=now,
                blacklist_expires_at=now + self.duration,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if blacklisted.rowcount:
            logger.warning(
                f"Professional {professional_id} blacklisted for '{service_type}' "
                f"until {now + self.duration:%Y-%m-%d %H:%M} after {self.threshold} refusals"
            )
            return True
        return False

    async def reset(self, db: AsyncSession, professional_id: uuid.UUID, service_type: str) -> None:
        await db.execute(
            update(ProfessionalBlacklist)
            .where(
                ProfessionalBlacklist.professional_id == professional_id,
                ProfessionalBlacklist.service_type == service_type,
            )
            .values(
                consecutive_refusals=0,
                is_blacklisted=False,
                blacklisted_at=None,
                blacklist_expires_at=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    async def blacklisted_ids(
        self, db: AsyncSession, service_type: str, now: Optional[datetime] = None
    ) -> Set[uuid.UUID]:
        now = now or utcnow()
        result = await db.execute(
            select(ProfessionalBlacklist.professional_id).where(
                ProfessionalBlacklist.service_type == service_type,
                ProfessionalBlacklist.is_blacklisted.is_(True),
                or_(
                    ProfessionalBlacklist.blacklist_expires_at.is_(None),
                    ProfessionalBlacklist.blacklist_expires_at > now,
                ),
            )
        )
        return set(result.scalars())

    async def clean_expired(self, db: AsyncSession, now: Optional[datetime] = None) -> int:
        """Lift blacklists whose expiry has passed. The refusal streak starts over."""
        now = now or utcnow()
        result = await db.execute(
            update(ProfessionalBlacklist)
            .where(
                ProfessionalBlacklist.is_blacklisted.is_(True),
                ProfessionalBlacklist.blacklist_expires_at <= now,
            )
            .values(
                is_blacklisted=False,
                consecutive_refusals=0,
                blacklist_expires_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        cleaned = max(result.rowcount or 0, 0)
        if cleaned:
            logger.info(f"Lifted {cleaned} expired blacklist(s)")
        return cleaned
