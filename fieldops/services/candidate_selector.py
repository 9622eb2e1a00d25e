"""Candidate selection for dispatch offers.

The orchestrator only needs ``select_next_candidate``; ranking is a policy
that can be swapped. ``ScoringCandidateSelector`` ranks the technician pool
on proximity, skill match, workload and rating.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from fieldops.config import DispatchConfig, get_settings
from fieldops.db import crud
from fieldops.models import Intervention, Technician

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_000
AVERAGE_SPEED_KMH = 40

# Technicians register skills in French; interventions use English categories.
CATEGORY_SKILL_ALIASES = {
    "plumbing": "plomberie",
    "electricity": "electricite",
    "heating": "chauffage",
    "locksmith": "serrurerie",
    "glazing": "vitrerie",
    "aircon": "climatisation",
}


@dataclass
class Candidate:
    technician_id: str
    score: float
    breakdown: dict[str, float] = field(default_factory=dict)
    distance_km: float | None = None
    estimated_travel_minutes: int | None = None


class CandidateSelector(ABC):
    """Chooses the next technician to offer an intervention to."""

    @abstractmethod
    async def select_next_candidate(
        self, db: AsyncSession, intervention: Intervention, excluded_technician_ids: set[str]
    ) -> Candidate | None:
        """Return the best eligible technician not in the excluded set, or None."""
        ...


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (math.sin(d_lat / 2) ** 2
         + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2)
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def has_skill(skills: list[str], category: str) -> bool:
    return category in skills or CATEGORY_SKILL_ALIASES.get(category, category) in skills


class ScoringCandidateSelector(CandidateSelector):
    """Weighted ranking over the active technician pool."""

    def __init__(self, config: DispatchConfig | None = None):
        self.config = config or get_settings().dispatch

    def score(self, intervention: Intervention, tech: Technician, workload: int) -> Candidate:
        w = self.config.weights

        distance_km = None
        proximity = 0.0
        if intervention.latitude is not None and intervention.longitude is not None:
            distance_km = haversine_m(
                intervention.latitude, intervention.longitude, tech.latitude, tech.longitude
            ) / 1000
            # 0 km scores 100, max_distance_km and beyond score 0
            proximity = max(0.0, 100 - distance_km * (100 / self.config.max_distance_km))

        skills = 100.0 if has_skill(tech.skills or [], intervention.category) else 30.0
        workload_score = max(0.0, 100 - workload * 33.33)
        rating = tech.average_rating if tech.average_rating is not None else self.config.default_rating
        rating_score = rating / 5 * 100

        total = (proximity * w.proximity + skills * w.skills
                 + workload_score * w.workload + rating_score * w.rating)

        return Candidate(
            technician_id=tech.id,
            score=round(total, 2),
            breakdown={
                "proximity": round(proximity, 2),
                "skills": skills,
                "workload": round(workload_score, 2),
                "rating": round(rating_score, 2),
            },
            distance_km=round(distance_km, 1) if distance_km is not None else None,
            estimated_travel_minutes=(
                round(distance_km / AVERAGE_SPEED_KMH * 60) if distance_km is not None else None
            ),
        )

    async def rank(
        self, db: AsyncSession, intervention: Intervention, excluded_technician_ids: set[str]
    ) -> list[Candidate]:
        pool = [
            t for t in await crud.list_technicians(db, active_only=True)
            if t.id not in excluded_technician_ids
            and t.is_available
            and t.latitude is not None and t.longitude is not None
        ]
        workloads = await crud.count_active_assignments(db, [t.id for t in pool])

        ranked = []
        for tech in pool:
            capacity = tech.max_concurrent_interventions or self.config.max_concurrent_interventions
            workload = workloads.get(tech.id, 0)
            if workload >= capacity:
                logger.debug("Technician %s at capacity (%d/%d)", tech.id, workload, capacity)
                continue
            ranked.append(self.score(intervention, tech, workload))

        ranked.sort(key=lambda c: (-c.score, c.technician_id))
        return ranked

    async def select_next_candidate(
        self, db: AsyncSession, intervention: Intervention, excluded_technician_ids: set[str]
    ) -> Candidate | None:
        ranked = await self.rank(db, intervention, excluded_technician_ids)
        if not ranked:
            return None
        best = ranked[0]
        logger.info(
            "Selected technician %s for intervention %s (score=%.2f, %d eligible)",
            best.technician_id, intervention.id, best.score, len(ranked),
        )
        return best
