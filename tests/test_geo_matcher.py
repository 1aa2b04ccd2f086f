"""
tests/test_geo_matcher.py
Candidate selection: capability, verification, distance and ranking.
"""

import uuid
from dataclasses import dataclass, field
from typing import Optional

import pytest

from services.matching.geo_matcher import GeoMatcher
from shared.utils.errors import ValidationError
from shared.utils.geo import haversine_km, is_valid_coordinate
from tests.conftest import LYON, MEAUX, PARIS, VERSAILLES


@dataclass
class Pro:
    latitude: Optional[float]
    longitude: Optional[float]
    service_types: list = field(default_factory=lambda: ["plumbing"])
    is_verified: bool = True
    is_available: bool = True
    max_distance_km: Optional[float] = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)


def pro_at(location, **kwargs) -> Pro:
    return Pro(location[0], location[1], **kwargs)


matcher = GeoMatcher(default_max_distance_km=150)


def test_haversine_known_distance():
    assert haversine_km(*PARIS, *LYON) == pytest.approx(392, abs=3)
    assert haversine_km(*PARIS, *PARIS) == 0


def test_coordinate_validation():
    assert is_valid_coordinate(48.85, 2.35)
    assert not is_valid_coordinate(91, 0)
    assert not is_valid_coordinate(0, 181)
    assert not is_valid_coordinate(None, 2.35)


def test_nearest_first_and_out_of_range_dropped():
    near, far, out = pro_at(VERSAILLES), pro_at(MEAUX), pro_at(LYON)

    candidates = matcher.match([out, far, near], *PARIS, "plumbing")

    assert [c.professional_id for c in candidates] == [near.id, far.id]
    assert all(c.distance_km <= 150 for c in candidates)
    assert candidates[0].distance_km == round(candidates[0].distance_km, 2)


def test_filters_capability_verification_and_availability():
    ok = pro_at(VERSAILLES)
    wrong_service = pro_at(VERSAILLES, service_types=["electrical"])
    unverified = pro_at(VERSAILLES, is_verified=False)
    unavailable = pro_at(VERSAILLES, is_available=False)
    no_coords = Pro(None, None)

    candidates = matcher.match([ok, wrong_service, unverified, unavailable, no_coords], *PARIS, "plumbing")

    assert [c.professional_id for c in candidates] == [ok.id]


def test_professional_own_radius_narrows_search():
    picky = pro_at(MEAUX, max_distance_km=20)
    candidates = matcher.match([picky], *PARIS, "plumbing")
    assert candidates == []


def test_radius_boundary_is_inclusive():
    pro = pro_at(VERSAILLES)
    distance = haversine_km(*PARIS, *VERSAILLES)

    assert matcher.match([pro], *PARIS, "plumbing", max_distance_km=distance)
    assert not matcher.match([pro], *PARIS, "plumbing", max_distance_km=distance - 0.01)


def test_ties_broken_by_id_and_limit_applied():
    a, b = pro_at(VERSAILLES), pro_at(VERSAILLES)
    candidates = matcher.match([a, b, pro_at(MEAUX)], *PARIS, "plumbing", limit=2)

    assert len(candidates) == 2
    assert [str(c.professional_id) for c in candidates] == sorted([str(a.id), str(b.id)])


def test_duplicate_registry_rows_collapse():
    pro = pro_at(VERSAILLES)
    assert len(matcher.match([pro, pro], *PARIS, "plumbing")) == 1


@pytest.mark.parametrize(
    "latitude, longitude, radius, limit",
    [(95.0, 2.0, None, None), (48.8, 200.0, None, None), (48.8, 2.3, 0, None), (48.8, 2.3, None, 0)],
)
def test_invalid_input_rejected(latitude, longitude, radius, limit):
    with pytest.raises(ValidationError):
        matcher.match([pro_at(VERSAILLES)], latitude, longitude, "plumbing", radius, limit)


def test_excluded_professionals_are_skipped():
    near, far = pro_at(VERSAILLES), pro_at(MEAUX)
    ranked = matcher.match([near, far], *PARIS, "plumbing", excluded={near.id})
    assert [c.professional_id for c in ranked] == [far.id]
