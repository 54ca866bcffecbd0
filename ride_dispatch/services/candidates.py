"""
Geo-Candidate Selector (service side).

Joins the presence registry's spatial prefilter with the user directory
(role and block state) and hands the result to the pure
``select_candidates`` filter.  Read-only; an empty registry yields ``[]``.
"""

from __future__ import annotations

import logging
from typing import Collection, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ride_dispatch.domain.candidates import select_candidates
from ride_dispatch.domain.entities import Candidate, Location
from ride_dispatch.domain.enums import ActorRole
from ride_dispatch.infrastructure.repositories import UserRepository
from ride_dispatch.services.presence import PresenceRegistry

logger = logging.getLogger(__name__)


class CandidateSelector:
    def __init__(
        self,
        registry: PresenceRegistry,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        radius_km: float = 10.0,
        fallback_radius_km: float = 20.0,
        stale_after_seconds: float = 180.0,
        max_candidates: int = 20,
    ):
        self.registry = registry
        self.session_factory = session_factory
        self.radius_km = radius_km
        self.fallback_radius_km = fallback_radius_km
        self.stale_after_seconds = stale_after_seconds
        self.max_candidates = max_candidates

    async def find_candidates(
        self,
        origin: Location,
        radius_km: Optional[float] = None,
        include_unknown_location: bool = False,
        exclude_ids: Collection[int] = (),
    ) -> list[Candidate]:
        radius = self.radius_km if radius_km is None else radius_km
        pool = [
            p
            for p in self.registry.nearby(origin, radius, include_unknown_location)
            if p.is_online and p.driver_id not in exclude_ids
        ]
        if not pool:
            return []

        async with self.session_factory() as session:
            directory = await UserRepository(session).get_many(
                p.driver_id for p in pool
            )

        excluded = set(exclude_ids)
        for presence in pool:
            user = directory.get(presence.driver_id)
            if user is None or user.is_blocked or user.role != ActorRole.DRIVER:
                excluded.add(presence.driver_id)

        return select_candidates(
            pool,
            origin,
            radius,
            now=self.registry.now(),
            stale_after_seconds=self.stale_after_seconds,
            excluded_ids=excluded,
            include_unknown_location=include_unknown_location,
            limit=self.max_candidates,
        )

    async def find_with_fallback(
        self, origin: Location, exclude_ids: Collection[int] = ()
    ) -> list[Candidate]:
        """
        First pass at the normal radius with located drivers only; if that
        is empty, widen the radius and admit drivers without a GPS fix yet.
        """
        candidates = await self.find_candidates(origin, exclude_ids=exclude_ids)
        if candidates:
            return candidates

        logger.info(
            "No candidates within %.1f km; retrying at %.1f km incl. unknown location",
            self.radius_km,
            self.fallback_radius_km,
        )
        return await self.find_candidates(
            origin,
            radius_km=self.fallback_radius_km,
            include_unknown_location=True,
            exclude_ids=exclude_ids,
        )
