"""
services/matching/geo_matcher.py
Selects candidate professionals for a service location.

Matching is pure: the registry is queried by the caller (or by
find_candidates) and the filtering/ranking below never touches I/O.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Collection, Iterable, List, Optional, Protocol

from config.settings import settings
from shared.utils.errors import ValidationError
from shared.utils.geo import haversine_km, is_valid_coordinate

logger = logging.getLogger(__name__)


class ProfessionalLike(Protocol):
    id: uuid.UUID
    is_verified: bool
    is_available: bool
    service_types: list
    latitude: Optional[float]
    longitude: Optional[float]
    max_distance_km: Optional[float]


@dataclass(frozen=True)
class MatchCandidate:
    professional: ProfessionalLike
    distance_km: float

    @property
    def professional_id(self) -> uuid.UUID:
        return self.professional.id


class GeoMatcher:
    """
    Filters by verification, availability, exclusion (blacklist),
    service-type capability and haversine distance; returns candidates
    nearest first, ties broken by id.
    """

    def __init__(self, default_max_distance_km: float = settings.DEFAULT_MAX_DISTANCE_KM):
        self.default_max_distance_km = default_max_distance_km

    def match(
        self,
        professionals: Iterable[ProfessionalLike],
        latitude: float,
        longitude: float,
        service_type: str,
        max_distance_km: Optional[float] = None,
        limit: Optional[int] = None,
        excluded: Collection[uuid.UUID] = (),
    ) -> List[MatchCandidate]:
        if not is_valid_coordinate(latitude, longitude):
            raise ValidationError(
                "Malformed service coordinates", latitude=latitude, longitude=longitude
            )
        radius = self.default_max_distance_km if max_distance_km is None else max_distance_km
        if radius <= 0:
            raise ValidationError("Search radius must be positive", max_distance_km=radius)
        if limit is not None and limit < 1:
            raise ValidationError("Result cap must be at least 1", limit=limit)

        scanned = 0
        candidates: dict[uuid.UUID, MatchCandidate] = {}
        for professional in professionals:
            scanned += 1
            if not (professional.is_verified and professional.is_available):
                continue
            if professional.id in excluded:
                continue
            if service_type not in (professional.service_types or ()):
                continue
            if not is_valid_coordinate(professional.latitude, professional.longitude):
                logger.debug(f"Professional {professional.id} has no usable coordinates, skipped")
                continue

            distance = haversine_km(
                latitude, longitude, float(professional.latitude), float(professional.longitude)
            )
            effective_radius = radius
            if professional.max_distance_km:
                effective_radius = min(radius, professional.max_distance_km)
            if distance > effective_radius:
                continue

            # Registry rows can repeat; one candidate per professional
            candidates.setdefault(
                professional.id, MatchCandidate(professional, round(distance, 2))
            )

        ranked = sorted(candidates.values(), key=lambda c: (c.distance_km, str(c.professional_id)))
        if limit is not None:
            ranked = ranked[:limit]

        logger.info(
            f"GeoMatcher: {len(ranked)} candidate(s) for '{service_type}' within "
            f"{radius}km of ({latitude:.4f}, {longitude:.4f}); scanned {scanned}"
        )
        return ranked


async def find_candidates(
    registry,
    matcher: GeoMatcher,
    latitude: float,
    longitude: float,
    service_type: str,
    max_distance_km: Optional[float] = None,
    limit: Optional[int] = None,
    excluded: Collection[uuid.UUID] = (),
) -> List[MatchCandidate]:
    """Fetch the registry for this service type, then match against it."""
    professionals = await registry.find_professionals_by_service_type(service_type)
    return matcher.match(
        professionals, latitude, longitude, service_type, max_distance_km, limit, excluded
    )
