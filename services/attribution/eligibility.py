"""
services/attribution/eligibility.py
Per-attribution candidacy ledger.

One row per (attribution, professional), guaranteed by uq_eligibility_pair;
recording the same candidates again is a no-op. Only the notified and
responded flags are ever updated.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import List, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import insert_ignoring_conflicts, upsert
from services.matching.geo_matcher import MatchCandidate
from shared.models.models import AttributionResponse, Eligibility, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EligibilitySummary:
    eligible: int
    notified: int
    responded: int
    declined: int

    @property
    def all_declined(self) -> bool:
        return self.eligible > 0 and self.declined >= self.eligible


class EligibilityLedger:

    async def record_candidates(
        self,
        db: AsyncSession,
        attribution_id: uuid.UUID,
        candidates: Sequence[MatchCandidate],
    ) -> int:
        """
        Bulk-insert one eligible row per candidate. Pairs already present
        are skipped by the storage layer. Returns the number of new rows.
        """
        if not candidates:
            return 0

        rows = [
            {
                "id": uuid.uuid4(),
                "attribution_id": attribution_id,
                "professional_id": candidate.professional_id,
                "is_eligible": True,
                "distance_km": candidate.distance_km,
                "notified": False,
                "responded": False,
                "created_at": utcnow(),
            }
            for candidate in candidates
        ]
        inserted = await insert_ignoring_conflicts(db, Eligibility, rows)
        logger.info(
            f"Eligibility for attribution {attribution_id}: "
            f"{inserted} new of {len(rows)} candidate(s)"
        )
        return inserted

    async def mark_notified(
        self, db: AsyncSession, attribution_id: uuid.UUID, professional_id: uuid.UUID
    ) -> bool:
        """Flip notified=true. A missing row is logged, not raised."""
        result = await db.execute(
            update(Eligibility)
            .where(
                Eligibility.attribution_id == attribution_id,
                Eligibility.professional_id == professional_id,
            )
            .values(notified=True, notified_at=func.coalesce(Eligibility.notified_at, utcnow()))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            logger.warning(
                f"mark_notified: no eligibility row for attribution {attribution_id} "
                f"/ professional {professional_id}"
            )
            return False
        return True

    async def mark_responded(
        self,
        db: AsyncSession,
        attribution_id: uuid.UUID,
        professional_id: uuid.UUID,
        accepted: bool,
    ) -> None:
        """Record (or overwrite) the decision and flip responded=true."""
        now = utcnow()
        await upsert(
            db,
            AttributionResponse,
            {
                "id": uuid.uuid4(),
                "attribution_id": attribution_id,
                "professional_id": professional_id,
                "accepted": accepted,
                "responded_at": now,
            },
            index_elements=("attribution_id", "professional_id"),
            update_fields=("accepted", "responded_at"),
        )
        await db.execute(
            update(Eligibility)
            .where(
                Eligibility.attribution_id == attribution_id,
                Eligibility.professional_id == professional_id,
            )
            .values(responded=True, responded_at=now)
            .execution_options(synchronize_session=False)
        )

    async def get(
        self, db: AsyncSession, attribution_id: uuid.UUID, professional_id: uuid.UUID
    ) -> Eligibility | None:
        return await db.scalar(
            select(Eligibility).where(
                Eligibility.attribution_id == attribution_id,
                Eligibility.professional_id == professional_id,
            )
        )

    async def list_for_attribution(
        self, db: AsyncSession, attribution_id: uuid.UUID
    ) -> List[Eligibility]:
        result = await db.execute(
            select(Eligibility)
            .where(Eligibility.attribution_id == attribution_id)
            .order_by(Eligibility.distance_km, Eligibility.professional_id)
        )
        return list(result.scalars())

    async def summary(self, db: AsyncSession, attribution_id: uuid.UUID) -> EligibilitySummary:
        counts = (
            await db.execute(
                select(
                    func.count(Eligibility.id),
                    func.count(Eligibility.id).filter(Eligibility.notified.is_(True)),
                    func.count(Eligibility.id).filter(Eligibility.responded.is_(True)),
                ).where(
                    Eligibility.attribution_id == attribution_id,
                    Eligibility.is_eligible.is_(True),
                )
            )
        ).one()
        declined = await db.scalar(
            select(func.count(AttributionResponse.id)).where(
                AttributionResponse.attribution_id == attribution_id,
                AttributionResponse.accepted.is_(False),
            )
        )
        return EligibilitySummary(
            eligible=counts[0] or 0,
            notified=counts[1] or 0,
            responded=counts[2] or 0,
            declined=declined or 0,
        )
